#!/usr/bin/env python3
"""
Happy path against a running service configured with
PYTHON_SCRIPT=scripts/sample_etl.py: submit, wait, read the log.
"""
import asyncio
import os
import uuid

import httpx

API_URL = os.getenv("ETL_API_URL", "http://localhost:8000")


async def verify():
    print("Waiting for API to be ready...")
    async with httpx.AsyncClient(base_url=API_URL, timeout=5.0) as check_client:
        for i in range(30):
            try:
                resp = await check_client.get("/health")
                if resp.status_code == 200:
                    print("API is ready!")
                    break
            except httpx.HTTPError:
                pass
            await asyncio.sleep(1)
        else:
            print("API failed to become ready.")
            return

    async with httpx.AsyncClient(base_url=API_URL, timeout=30.0) as client:
        print("Submitting run...")
        resp = await client.post("/api/v1/runs", json={
            "period": "202507",
            "q": f"E2E-{uuid.uuid4().hex[:6]}",
            "dryRun": True,
            "steps": ["extract", "load"],
            "requested_by": "verify_e2e",
        })
        if resp.status_code != 201:
            print(f"Failed to create run: {resp.text}")
            return
        run_id = resp.json()["run_id"]
        print(f"Run created: {run_id}")

        for _ in range(60):
            job = (await client.get(f"/api/v1/runs/{run_id}")).json()
            if job["status"] not in ("queued", "running"):
                break
            await asyncio.sleep(1)

        print(f"Run status: {job['status']}")
        print(f"Params: {job['params']}")

        if job["status"] != "succeeded":
            print(f"FAILURE: Run did not succeed: {job['error']}")
            return

        log = (await client.get(f"/api/v1/runs/{run_id}/logs")).text
        print(log)
        print("SUCCESS: Run completed successfully.")


if __name__ == "__main__":
    asyncio.run(verify())
