from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    case,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from pocketbook.report_engine import ReportRow, ReportUnavailable, RowFetcher, Summary

logger = logging.getLogger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), unique=True, nullable=False),
    Column("password_hash", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

Index("uq_users_username_lower", func.lower(users.c.username), unique=True)

sessions = Table(
    "sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(64), unique=True, nullable=False),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("expires_at", DateTime, nullable=False),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    # Nullable so rows created before owners existed stay readable in single-tenant mode.
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE")),
    Column("type", String(10), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("category", String(255), nullable=False),
    Column("date", Date, nullable=False),
    Column("note", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Index("idx_transactions_date", "date"),
    Index("idx_transactions_type", "type"),
    Index("idx_transactions_user", "user_id"),
)

TRANSACTION_COLUMNS = (
    transactions.c.id,
    transactions.c.type,
    transactions.c.amount,
    transactions.c.category,
    transactions.c.date,
    transactions.c.note,
)


def owner_conditions(
    owner_id: int | None,
    start_date: date | None = None,
    end_date: date | None = None,
) -> list:
    conditions = []
    if owner_id is not None:
        conditions.append(transactions.c.user_id == owner_id)
    if start_date is not None:
        conditions.append(transactions.c.date >= start_date)
    if end_date is not None:
        conditions.append(transactions.c.date <= end_date)
    return conditions


def list_transactions(
    conn: Connection,
    owner_id: int | None,
    start_date: date | None,
    end_date: date | None,
    limit: int,
) -> list[dict]:
    rows = conn.execute(
        select(*TRANSACTION_COLUMNS)
        .where(*owner_conditions(owner_id, start_date, end_date))
        .order_by(transactions.c.date.desc(), transactions.c.id.desc())
        .limit(limit)
    ).mappings().all()
    return [dict(row) for row in rows]


def get_transaction(conn: Connection, owner_id: int | None, transaction_id: int) -> dict | None:
    row = conn.execute(
        select(*TRANSACTION_COLUMNS).where(
            transactions.c.id == transaction_id,
            *owner_conditions(owner_id),
        )
    ).mappings().first()
    return dict(row) if row else None


def create_transaction(conn: Connection, owner_id: int | None, values: dict) -> dict:
    result = conn.execute(insert(transactions).values(user_id=owner_id, **values))
    transaction_id = result.inserted_primary_key[0]
    return get_transaction(conn, owner_id, transaction_id)


def update_transaction(
    conn: Connection, owner_id: int | None, transaction_id: int, values: dict
) -> dict | None:
    result = conn.execute(
        update(transactions)
        .where(transactions.c.id == transaction_id, *owner_conditions(owner_id))
        .values(**values)
    )
    if result.rowcount == 0:
        return None
    return get_transaction(conn, owner_id, transaction_id)


def delete_transaction(conn: Connection, owner_id: int | None, transaction_id: int) -> bool:
    result = conn.execute(
        transactions.delete().where(
            transactions.c.id == transaction_id,
            *owner_conditions(owner_id),
        )
    )
    return result.rowcount > 0


def list_categories(conn: Connection, owner_id: int | None) -> list[str]:
    rows = conn.execute(
        select(transactions.c.category)
        .where(*owner_conditions(owner_id))
        .group_by(transactions.c.category)
        .order_by(func.lower(transactions.c.category), transactions.c.category)
    ).scalars().all()
    return list(rows)


def fetch_summary(
    conn: Connection,
    owner_id: int | None,
    start_date: date | None,
    end_date: date | None,
) -> Summary:
    income_expr = func.coalesce(
        func.sum(case((transactions.c.type == "income", transactions.c.amount))), 0
    ).label("income")
    expense_expr = func.coalesce(
        func.sum(case((transactions.c.type == "expense", transactions.c.amount))), 0
    ).label("expense")
    row = conn.execute(
        select(income_expr, expense_expr).where(
            *owner_conditions(owner_id, start_date, end_date)
        )
    ).mappings().first()
    if not row:
        return Summary(income=Decimal("0"), expense=Decimal("0"))
    return Summary(income=_coerce_decimal(row["income"]), expense=_coerce_decimal(row["expense"]))


def fetch_transactions_in_range(
    conn: Connection, owner_id: int | None, start_date: date, end_date: date
) -> list[ReportRow]:
    rows = conn.execute(
        select(transactions.c.date, transactions.c.type, transactions.c.amount).where(
            *owner_conditions(owner_id, start_date, end_date)
        )
    ).mappings().all()
    return [
        ReportRow(date=row["date"], type=row["type"], amount=_coerce_decimal(row["amount"]))
        for row in rows
    ]


def range_fetcher(engine: Engine, owner_id: int | None) -> RowFetcher:
    def fetch(start_date: date, end_date: date) -> list[ReportRow]:
        try:
            with engine.begin() as conn:
                return fetch_transactions_in_range(conn, owner_id, start_date, end_date)
        except SQLAlchemyError as exc:
            logger.exception("Range fetch failed for %s..%s", start_date, end_date)
            raise ReportUnavailable("Aggregation unavailable.") from exc

    return fetch


def _coerce_decimal(value: Decimal | float | int | str) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))
