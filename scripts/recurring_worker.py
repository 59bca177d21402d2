from __future__ import annotations

import asyncio

from maintdesk.core.logging import configure_logging
from maintdesk.services.scheduling.worker import run_recurring_generation_loop


async def _main() -> None:
    # Dedicated process so generation cadence is independent from API traffic.
    configure_logging()
    await run_recurring_generation_loop()


if __name__ == "__main__":
    asyncio.run(_main())
