#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

REPO_BACKEND = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_BACKEND))

from chairbook.services.remediation import remediation_scheduler  # noqa: E402


def main() -> int:
    parser = argparse.ArgumentParser(description="Run one auto-assign / auto-reschedule pass over stale bookings.")
    parser.add_argument("--now", type=str, default="", help="Override the UTC clock (ISO timestamp, naive UTC).")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON.")
    parser.add_argument("--verbose", action="store_true", help="Log every skipped booking.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    now = None
    if args.now:
        try:
            now = datetime.fromisoformat(args.now)
        except ValueError:
            print(f"Invalid --now value: {args.now}")
            return 2

    report = remediation_scheduler.run_once(now=now)
    if args.json:
        print(json.dumps(report.model_dump(), indent=2))
    else:
        print(
            f"Remediation at {report.ran_at}: assigned={len(report.assigned)} "
            f"rescheduled={len(report.rescheduled)} skipped={len(report.skipped)} failed={len(report.failed)}"
        )
        for uid in report.assigned:
            print(f"- assigned {uid}")
        for uid in report.rescheduled:
            print(f"- rescheduled {uid}")
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
