"""Liveness and readiness checks."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from handshake.config import get_settings
from handshake.core.rate_limit import get_rate_limit_redis_client
from handshake.core.spool import UploadSpool
from handshake.db.session import get_engine

router = APIRouter(prefix="/health", tags=["health"])


async def check_postgres_ready() -> bool:
    """Return True when Postgres accepts a lightweight query."""
    try:
        async with get_engine().connect() as connection:
            await connection.execute(select(1))
        return True
    except (SQLAlchemyError, OSError):
        return False


async def check_redis_ready() -> bool:
    """Return True when the rate-limit Redis responds to PING."""
    client = get_rate_limit_redis_client()
    try:
        return bool(await client.ping())
    except (RedisError, OSError):
        return False


async def check_spool_ready() -> bool:
    """Return True when upload chunks can be spooled to disk."""
    return UploadSpool(get_settings().upload.spool_dir).is_writable()


@router.get("/live")
async def live() -> dict[str, str]:
    return {"status": "live"}


@router.get("/ready")
async def ready(
    postgres_ready: Annotated[bool, Depends(check_postgres_ready)],
    redis_ready: Annotated[bool, Depends(check_redis_ready)],
    spool_ready: Annotated[bool, Depends(check_spool_ready)],
) -> dict[str, object]:
    """Ready only when every backend a handshake stage depends on is usable."""
    checks = {"postgres": postgres_ready, "redis": redis_ready, "spool": spool_ready}
    failing = sorted(name for name, ok in checks.items() if not ok)
    if failing:
        raise HTTPException(
            status_code=503,
            detail={
                "detail": f"Service not ready: {', '.join(failing)}.",
                "code": "service_unavailable",
            },
        )
    return {"status": "ready", "checks": {name: "ok" for name in checks}}
