#!/usr/bin/env python3
"""
Checks timeout handling end to end. Start the service with a short
RUN_TIMEOUT_SECONDS (e.g. 2) and PYTHON_SCRIPT=scripts/sample_etl.py with
SAMPLE_ETL_STEP_SECONDS well above it.
"""
import asyncio
import os
import sys
import uuid

import httpx

API_URL = os.getenv("ETL_API_URL", "http://localhost:8000")


async def verify_execution_timeout():
    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        print("1. Submitting a run that outlives the timeout...")
        resp = await client.post("/api/v1/runs", json={
            "period": "202507",
            "q": f"T-{uuid.uuid4().hex[:6]}",
            "job_type": "verify_timeout",
        })
        resp.raise_for_status()
        run_id = resp.json()["run_id"]
        print(f"   Run created: {run_id}")

        print("2. Waiting for it to finish...")
        for _ in range(120):
            job = (await client.get(f"/api/v1/runs/{run_id}")).json()
            if job["status"] not in ("queued", "running"):
                break
            await asyncio.sleep(1)
        print(f"   Status: {job['status']} error: {job['error']}")

        if job["status"] != "failed" or "124" not in (job["error"] or ""):
            print("FAILURE: run did not fail with the timeout exit code")
            sys.exit(1)

        print("3. Fetching log...")
        resp = await client.get(f"/api/v1/runs/{run_id}/logs")
        resp.raise_for_status()
        last_line = resp.text.strip().splitlines()[-1]
        print(f"   Last log line: {last_line}")

        if "timed out" in last_line:
            print("SUCCESS: Execution timeout enforced.")
        else:
            print("FAILURE: timeout diagnostic missing from log")
            sys.exit(1)


if __name__ == "__main__":
    asyncio.run(verify_execution_timeout())
