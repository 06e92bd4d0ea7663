#!/usr/bin/env python3
"""
Submits the same (job_type, period, q) twice, sequentially and then as a
race, and checks that only one active run is ever created.
"""
import asyncio
import os
import uuid

import httpx

API_URL = os.getenv("ETL_API_URL", "http://localhost:8000")


async def verify_idempotency():
    q = f"I-{uuid.uuid4().hex[:6]}"
    body = {"job_type": "monthly_load", "period": "202507", "q": q}

    async with httpx.AsyncClient(base_url=API_URL, timeout=10.0) as client:
        print("1. Submitting run...")
        resp = await client.post("/api/v1/runs", json=body)
        print(f"   -> {resp.status_code} {resp.text}")
        if resp.status_code != 201:
            print("FAILURE: first submission was not accepted")
            return
        run_id = resp.json()["run_id"]

        print("2. Submitting the same run again...")
        resp = await client.post("/api/v1/runs", json=body)
        print(f"   -> {resp.status_code} {resp.text}")
        if resp.status_code != 409:
            print("FAILURE: duplicate active run was accepted")
            return

        print("3. Racing 10 submissions for a fresh key...")
        race_body = dict(body, q=f"{q}-race")
        results = await asyncio.gather(*(client.post("/api/v1/runs", json=race_body) for _ in range(10)))
        codes = sorted(r.status_code for r in results)
        print(f"   -> {codes}")

        # Leave nothing running behind us
        await client.post(f"/api/v1/runs/{run_id}/cancel")
        for r in results:
            if r.status_code == 201:
                await client.post(f"/api/v1/runs/{r.json()['run_id']}/cancel")

    if codes.count(201) == 1 and codes.count(409) == 9:
        print("SUCCESS: Exactly one run created per key.")
    else:
        print(f"FAILURE: Expected one 201 and nine 409s, got {codes}")


if __name__ == "__main__":
    asyncio.run(verify_idempotency())
