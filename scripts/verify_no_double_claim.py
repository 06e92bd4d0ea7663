#!/usr/bin/env python3
"""
Floods a running service with distinct runs and checks that every run is
executed exactly once: each ends up with attempt == 1 and its own log file.
"""
import asyncio
import os
import uuid

import httpx

API_URL = os.getenv("ETL_API_URL", "http://localhost:8000")
NUM_RUNS = 20


async def submit(client, i, tag):
    resp = await client.post("/api/v1/runs", json={
        "period": "202507",
        "q": f"{tag}-{i}",
        "steps": ["extract"],
        "job_type": "verify_no_double_claim",
    })
    resp.raise_for_status()
    return resp.json()["run_id"]


async def wait_terminal(client, run_id, timeout=120):
    for _ in range(timeout):
        job = (await client.get(f"/api/v1/runs/{run_id}")).json()
        if job["status"] in ("succeeded", "failed", "canceled"):
            return job
        await asyncio.sleep(1)
    return job


async def verify_no_double_claim():
    tag = uuid.uuid4().hex[:8]
    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        print(f"1. Submitting {NUM_RUNS} runs concurrently...")
        run_ids = await asyncio.gather(*(submit(client, i, tag) for i in range(NUM_RUNS)))
        print(f"   {len(run_ids)} runs accepted.")

        print("2. Waiting for all runs to finish...")
        jobs = await asyncio.gather(*(wait_terminal(client, r) for r in run_ids))

    attempts = [j["attempt"] for j in jobs]
    log_paths = [j["log_path"] for j in jobs if j["log_path"]]
    print(f"3. Statuses: {sorted(set(j['status'] for j in jobs))}")

    if any(a != 1 for a in attempts):
        print(f"FAILURE: some runs were claimed more than once: {attempts}")
    elif len(set(log_paths)) != len(log_paths):
        print("FAILURE: runs share log files.")
    else:
        print("SUCCESS: Every run was claimed exactly once.")


if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
