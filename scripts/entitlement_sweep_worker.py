from __future__ import annotations

import asyncio

from maintdesk.core.logging import configure_logging
from maintdesk.services.scheduling.worker import run_entitlement_sweep_loop


async def _main() -> None:
    configure_logging()
    await run_entitlement_sweep_loop()


if __name__ == "__main__":
    asyncio.run(_main())
