#!/usr/bin/env python3
"""
Stand-in ETL program for local runs and the verify_* scripts.

Point PYTHON_SCRIPT at this file. Each step prints a line to stdout and one to
stderr and then sleeps SAMPLE_ETL_STEP_SECONDS (default 1). Setting
SAMPLE_ETL_FAIL_STEP makes that step exit with code 3.
"""
import argparse
import os
import sys
import time


def main() -> int:
    p = argparse.ArgumentParser(description="Sample monthly load.")
    p.add_argument("--period", required=True)
    p.add_argument("--q", required=True)
    p.add_argument("--dry-run", action="store_true")
    p.add_argument("--steps", default="extract,load,enrich")
    args = p.parse_args()

    step_seconds = float(os.getenv("SAMPLE_ETL_STEP_SECONDS", "1"))
    fail_step = os.getenv("SAMPLE_ETL_FAIL_STEP")

    print(f"period={args.period} q={args.q} dry_run={args.dry_run}", flush=True)
    for step in [s for s in args.steps.split(",") if s]:
        print(f"[{step}] start", flush=True)
        print(f"[{step}] progress on stderr", file=sys.stderr, flush=True)
        if step == fail_step:
            print(f"[{step}] failed", file=sys.stderr, flush=True)
            return 3
        time.sleep(step_seconds)
        print(f"[{step}] done", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
