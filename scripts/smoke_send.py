"""Simple smoke test against a running waworker instance."""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any

import httpx

APP_URL = os.getenv("WA_URL", "http://localhost:3000").rstrip("/")
TARGET = os.getenv("WA_SMOKE_NUMBER", "").strip()


async def _call(client: httpx.AsyncClient, method: str, path: str, **kwargs: Any) -> None:
    response = await client.request(method, f"{APP_URL}{path}", **kwargs)
    body: Any
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if isinstance(body, dict) and isinstance(body.get("qr"), str):
        body = {**body, "qr": body["qr"][:48] + "..."}
    print(json.dumps({"path": path, "status": response.status_code, "body": body}, ensure_ascii=False))


async def main() -> None:
    async with httpx.AsyncClient(timeout=10.0) as client:
        await _call(client, "GET", "/health")
        await _call(client, "GET", "/v1/status")
        await _call(client, "GET", "/v1/login")
        if TARGET:
            await _call(
                client,
                "POST",
                "/v1/send",
                json={"number": TARGET, "message": "smoke test waworker"},
            )


if __name__ == "__main__":
    asyncio.run(main())
