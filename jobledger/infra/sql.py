"""
Dialect-aware server-side update expressions.

Atomic read-modify-write on JSON columns has to happen inside the UPDATE
statement itself; the SQL differs between PostgreSQL and SQLite.
"""

import json
from typing import Any

from sqlalchemy import func, literal, literal_column
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect the session is bound to."""
    return session.get_bind().dialect.name


def json_merge(
    session: AsyncSession, column: ColumnElement[Any], patch: dict[str, Any]
) -> ColumnElement[Any]:
    """
    Expression merging patch into a JSON column, evaluated by the database.

    Shallow merge on every dialect: each top-level key of patch replaces the
    stored value whole (nested objects are not merged, null is stored as
    null). A NULL column is treated as an empty object. PostgreSQL uses
    jsonb ||; SQLite sets each key with json_set.
    """
    if dialect_name(session) == "postgresql":
        return func.coalesce(column, literal_column("'{}'::jsonb")).op("||")(
            literal(patch, type_=JSONB)
        )

    args: list[Any] = []
    for key, value in patch.items():
        args.append(literal(f'$."{key}"'))
        args.append(func.json(literal(json.dumps(value))))
    return func.json_set(func.coalesce(column, literal_column("'{}'")), *args)
