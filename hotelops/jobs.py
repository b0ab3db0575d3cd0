"""Run one bounded worker invocation from a scheduler.

Example:
    hotelops-jobs booking-imports
"""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import List, Optional

from hotelops.core.config import get_settings
from hotelops.core.logging import configure_logging, init_tracer, shutdown_tracer
from hotelops.services.container import build_services, run_assignment_job, run_import_job

JOBS = {
    "auto-assign": run_assignment_job,
    "booking-imports": run_import_job,
}


async def run_job(name: str) -> dict[str, object]:
    settings = get_settings()
    logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)
    services = await build_services(settings)
    try:
        report = await JOBS[name](services)
    finally:
        await services.close()
        shutdown_tracer(tracer_provider)
    logger.info("Job %s finished: %s", name, report.to_dict())
    return report.to_dict()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Hotel operations background jobs")
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run once")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    report = asyncio.run(run_job(args.job))
    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":  # pragma: no cover
    main()
