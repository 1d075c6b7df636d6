"""Async engine, session factory and transaction helpers."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pointsweep_api.core.errors import PersistenceError
from pointsweep_api.core.settings import settings

engine = create_async_engine(settings.database_url, future=True)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

SessionFactory = async_sessionmaker[AsyncSession]


def get_session_factory() -> SessionFactory:
    """FastAPI dependency returning the process-wide session factory."""

    return async_session


@asynccontextmanager
async def transaction(session_factory: SessionFactory, *, operation: str) -> AsyncIterator[AsyncSession]:
    """Open a session and a transaction; storage failures roll back and surface as PersistenceError."""

    async with session_factory() as session:
        try:
            async with session.begin():
                yield session
        except SQLAlchemyError as exc:
            logger.exception("Persistence failure", operation=operation, error=str(exc))
            raise PersistenceError(f"{operation} failed: storage error") from exc
