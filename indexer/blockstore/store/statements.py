"""
SQL text builders for the store's primitive operations.

Statements use ``?`` placeholders; drivers adapt them. Identifiers are always
quoted by the driver and checked against the entity's registered columns, so
no caller-supplied text reaches the SQL unquoted.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional, Sequence, Tuple

from ..driver.base import Driver
from ..schema.entity import EntityMeta

Statement = Tuple[str, List[Any]]

_COLLECTION_TYPES = (list, tuple, set, frozenset)


def _placeholders(count: int) -> str:
    return ", ".join("?" * count)


def _where_clause(
    driver: Driver, meta: EntityMeta, where: Optional[Mapping[str, Any]]
) -> Tuple[str, List[Any]]:
    if not where:
        return "", []

    conditions: List[str] = []
    params: List[Any] = []
    for column, value in where.items():
        quoted = driver.quote(meta.check_column(column))
        if value is None:
            conditions.append(f"{quoted} IS NULL")
        elif isinstance(value, _COLLECTION_TYPES):
            values = list(value)
            if not values:
                conditions.append("1 = 0")
                continue
            conditions.append(f"{quoted} IN ({_placeholders(len(values))})")
            params.extend(driver.encode(v) for v in values)
        else:
            conditions.append(f"{quoted} = ?")
            params.append(driver.encode(value))
    return " WHERE " + " AND ".join(conditions), params


def select_by_ids(driver: Driver, meta: EntityMeta, ids: Sequence[str]) -> Statement:
    table = driver.quote(meta.table)
    return (
        f"SELECT * FROM {table} WHERE {driver.quote('id')} IN ({_placeholders(len(ids))})",
        list(ids),
    )


def select_where(
    driver: Driver,
    meta: EntityMeta,
    where: Optional[Mapping[str, Any]] = None,
    order_by: Optional[str] = None,
    limit: Optional[int] = None,
) -> Statement:
    clause, params = _where_clause(driver, meta, where)
    sql = f"SELECT * FROM {driver.quote(meta.table)}{clause}"
    if order_by:
        direction = "DESC" if order_by.startswith("-") else "ASC"
        column = meta.check_column(order_by.lstrip("-"))
        sql += f" ORDER BY {driver.quote(column)} {direction}"
    if limit is not None:
        sql += " LIMIT ?"
        params.append(int(limit))
    return sql, params


def count_where(
    driver: Driver, meta: EntityMeta, where: Optional[Mapping[str, Any]] = None
) -> Statement:
    clause, params = _where_clause(driver, meta, where)
    return f"SELECT COUNT(*) AS cnt FROM {driver.quote(meta.table)}{clause}", params


def insert(driver: Driver, meta: EntityMeta) -> str:
    columns = ", ".join(driver.quote(c) for c in meta.columns)
    return (
        f"INSERT INTO {driver.quote(meta.table)} ({columns}) "
        f"VALUES ({_placeholders(len(meta.columns))})"
    )


def update(driver: Driver, meta: EntityMeta) -> str:
    """UPDATE of every non-id column; the id is the last parameter."""
    assignments = ", ".join(f"{driver.quote(c)} = ?" for c in meta.columns if c != "id")
    return f"UPDATE {driver.quote(meta.table)} SET {assignments} WHERE {driver.quote('id')} = ?"


def delete_by_ids(driver: Driver, meta: EntityMeta, ids: Sequence[str]) -> Statement:
    return (
        f"DELETE FROM {driver.quote(meta.table)} WHERE {driver.quote('id')} IN ({_placeholders(len(ids))})",
        list(ids),
    )
