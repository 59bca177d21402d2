from __future__ import annotations

import argparse
import asyncio
import json
import sys

from maintdesk.core.logging import configure_logging
from maintdesk.persistence.db import engine
from maintdesk.services.scheduling.worker import JOBS, run_job_once


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one periodic job tick and print its summary")
    parser.add_argument("job", choices=JOBS, help="Job to run once")
    return parser


async def _run(job: str) -> dict:
    try:
        return await run_job_once(job)
    finally:
        await engine.dispose()


def main() -> int:
    args = _build_parser().parse_args()
    configure_logging()
    try:
        summary = asyncio.run(_run(args.job))
    except Exception as exc:  # noqa: BLE001 - surface any DB or lock errors to the operator
        print(f"run_job failed: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(summary, default=str, sort_keys=True))
    return 0 if summary.get("status") in {"ok", "skipped_lock"} else 2


if __name__ == "__main__":
    raise SystemExit(main())
