#!/usr/bin/env python3
"""
Run KubeHeal's periodic sweeps once, for cron-style deployments.

Usage:
  python kubeheal/scripts/run_sweeps.py                 # all sweeps
  python kubeheal/scripts/run_sweeps.py --only retry    # one sweep

Sweeps:
  reaper     executing commands past COMMAND_EXECUTION_TIMEOUT_SECONDS → failed
  retry      due failed commands → pending
  approvals  stale pending approvals → expired
  retention  telemetry older than TELEMETRY_RETENTION_HOURS → deleted

Every sweep is safe to run concurrently with itself and with the services' own loops.
"""

import argparse
import json
import sys

SWEEPS = ("reaper", "retry", "approvals", "retention")


def run(only: list[str]) -> dict:
    from kubeheal.services.shared.database import session_scope
    from kubeheal.services.detections.analyzer import purge_old_telemetry
    from kubeheal.services.remediation.approvals import expire_stale_approvals
    from kubeheal.services.remediation.retry import reap_stuck_commands, sweep_failed_commands

    results: dict = {}
    with session_scope() as db:
        if "reaper" in only:
            results["reaped"] = reap_stuck_commands(db)
        if "retry" in only:
            results["retry"] = sweep_failed_commands(db)
        if "approvals" in only:
            results["expired_approvals"] = expire_stale_approvals(db)
        if "retention" in only:
            results["purged_telemetry"] = purge_old_telemetry(db)
    return results


def main():
    parser = argparse.ArgumentParser(
        description="Run KubeHeal sweeps once",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--only", action="append", choices=SWEEPS,
                        help="Run only this sweep (repeatable)")
    args = parser.parse_args()

    try:
        results = run(args.only or list(SWEEPS))
    except Exception as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
