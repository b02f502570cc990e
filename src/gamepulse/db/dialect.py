"""Dialect checks for statements that only exist on PostgreSQL."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession


def dialect_name(db: AsyncSession) -> str:
    return db.get_bind().dialect.name


def is_postgres(db: AsyncSession) -> bool:
    return dialect_name(db) == "postgresql"
