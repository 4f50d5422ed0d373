"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

import ssl
from typing import Any

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from relaygate.adapters.outbound.persistence.models import Base
from relaygate.config import Settings


def create_engine(settings: Settings) -> AsyncEngine:
    url = settings.database_url
    kwargs: dict[str, Any] = {"echo": settings.app_debug}

    if url.startswith("sqlite"):
        return create_async_engine(url, **kwargs)

    connect_args: dict[str, Any] = {}
    # asyncpg rejects 'sslmode' in the query string; it wants 'ssl' in connect_args.
    if "sslmode=" in url:
        parsed_url = make_url(url)
        query = dict(parsed_url.query)
        ssl_mode = query.pop("sslmode", "require")
        url = str(parsed_url.set(query=query))
        if ssl_mode in ("require", "verify-full", "verify-ca"):
            ctx = ssl.create_default_context()
            if ssl_mode == "require":
                ctx.check_hostname = False
                ctx.verify_mode = ssl.CERT_NONE
            connect_args["ssl"] = ctx

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        connect_args=connect_args,
        **kwargs,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def create_tables(engine: AsyncEngine) -> None:
    """Create governance tables from ORM metadata (no migrations)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
