from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from config import normalize_ip

from .metrics import WA_IP_REJECTED_TOTAL


logger = logging.getLogger("waworker.access")

CallNext = Callable[[Request], Awaitable[Response]]


def client_ip(request: Request) -> str:
    host = request.client.host if request.client else ""
    return normalize_ip(host)


def ip_allowlist_middleware(
    allowed_ips: Iterable[str],
    *,
    exempt_paths: Iterable[str] = ("/health",),
) -> Callable[[Request, CallNext], Awaitable[Response]]:
    allowed = frozenset(normalize_ip(ip) for ip in allowed_ips if ip)
    exempt = frozenset(exempt_paths)

    async def _check_ip(request: Request, call_next: CallNext) -> Response:
        if request.url.path in exempt:
            return await call_next(request)
        ip = client_ip(request)
        if ip not in allowed:
            WA_IP_REJECTED_TOTAL.inc()
            logger.warning(
                "event=ip_rejected ip=%s method=%s path=%s",
                ip,
                request.method,
                request.url.path,
            )
            return JSONResponse(
                {"message": f"Forbidden: IP not allowed. your ip: {ip}", "ip": ip},
                status_code=403,
            )
        return await call_next(request)

    return _check_ip


__all__ = ["client_ip", "ip_allowlist_middleware"]
