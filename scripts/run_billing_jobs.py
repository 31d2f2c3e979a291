import argparse
import asyncio
import json

from supportdesk.core.config import Settings
from supportdesk.core.container import build_container
from supportdesk.core.logging import configure_logging
from supportdesk.services.job_scheduler import JOB_TYPES


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the support desk billing jobs once.")
    parser.add_argument("job_type", nargs="?", default="all", choices=JOB_TYPES)
    parser.add_argument("--year", type=int, help="Report year for monthly-report (defaults to last month)")
    parser.add_argument("--month", type=int, choices=range(1, 13), metavar="1-12", help="Report month for monthly-report")
    return parser.parse_args()


async def main() -> None:
    args = parse_args()
    configure_logging()
    container = build_container(Settings())
    try:
        results = await container.job_scheduler.run_job(args.job_type, year=args.year, month=args.month)
    finally:
        container.persistence.close()
    print(json.dumps(results, indent=2, default=str))


if __name__ == "__main__":
    asyncio.run(main())
