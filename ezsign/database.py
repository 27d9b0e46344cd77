"""
Database engine and session factories.

Handles are created explicitly and passed to the services and workers
that need them; nothing connects at import time.
"""
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ezsign.queue import JobQueue


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL."""
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to an engine."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency: one session per request from the app's factory."""
    async with request.app.state.session_factory() as session:
        yield session


def get_job_queue(request: Request) -> JobQueue:
    """FastAPI dependency: the app's JobQueue."""
    return request.app.state.job_queue
