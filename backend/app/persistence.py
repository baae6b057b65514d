from __future__ import annotations

import json
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    text,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError


class PersistenceError(Exception):
    pass


def dumps_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def loads_json(value: Optional[str], default: Any = None) -> Any:
    if not value:
        return default
    return json.loads(value)


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class Database:
    """
    Shared SQLAlchemy engine and table definitions for the state and ledger stores.

    Supports SQLite and PostgreSQL URLs. Several instances may point at the same
    database; every cross-writer guarantee is enforced by the schema.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        connect_args: dict[str, Any] = {}
        if self.database_url.startswith("sqlite"):
            connect_args["timeout"] = 30
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        self.metadata = MetaData()
        self.profiles = Table(
            "profiles",
            self.metadata,
            Column("user_id", String(255), primary_key=True),
            Column("available_minutes", Integer, nullable=False, default=0),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.campaigns = Table(
            "campaigns",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("user_id", String(255), nullable=False, index=True),
            Column("name", String(200), nullable=False),
            Column("status", String(20), nullable=False),
            Column("launched_at_utc", DateTime, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.batch_calls = Table(
            "batch_calls",
            self.metadata,
            Column("batch_id", String(255), primary_key=True),
            Column("campaign_id", String(255), nullable=True, unique=True),
            Column("user_id", String(255), nullable=False, index=True),
            Column("name", String(200), nullable=True),
            Column("status", String(50), nullable=True),
            Column("total_calls_scheduled", Integer, nullable=False, default=0),
            Column("total_calls_dispatched", Integer, nullable=False, default=0),
            Column("last_updated_at_unix", Integer, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.recipients = Table(
            "recipients",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("provider_recipient_id", String(255), nullable=False, index=True),
            Column("batch_id", String(255), nullable=False, index=True),
            Column("user_id", String(255), nullable=False),
            Column("phone_number", String(32), nullable=True),
            Column("contact_name", String(120), nullable=True),
            Column("status", String(50), nullable=True),
            Column("conversation_id", String(255), nullable=True),
            Column("client_data_json", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
            UniqueConstraint("provider_recipient_id", "batch_id", name="uq_recipient_per_batch"),
        )
        self.conversations = Table(
            "conversations",
            self.metadata,
            Column("conversation_id", String(255), primary_key=True),
            Column("user_id", String(255), nullable=False, index=True),
            Column("campaign_id", String(255), nullable=True, index=True),
            Column("batch_id", String(255), nullable=True, index=True),
            Column("recipient_id", String(255), nullable=True),
            Column("agent_id", String(255), nullable=True),
            Column("phone_number", String(32), nullable=True),
            Column("contact_name", String(120), nullable=True),
            Column("status", String(50), nullable=True),
            Column("call_successful", String(50), nullable=True),
            Column("call_duration_secs", Integer, nullable=False, default=0),
            Column("total_cost", Float, nullable=False, default=0.0),
            Column("start_time_unix", Integer, nullable=True),
            Column("accepted_time_unix", Integer, nullable=True),
            Column("summary", Text, nullable=True),
            Column("analysis_json", Text, nullable=True),
            Column("metadata_json", Text, nullable=True),
            Column("transcript_json", Text, nullable=True),
            Column("dynamic_variables_json", Text, nullable=True),
            Column("has_audio", Boolean, nullable=False, default=False),
            Column("created_at_utc", DateTime, nullable=False),
            Column("updated_at_utc", DateTime, nullable=False),
        )
        self.minutes_transactions = Table(
            "minutes_transactions",
            self.metadata,
            Column("id", String(255), primary_key=True),
            Column("user_id", String(255), nullable=False, index=True),
            Column("campaign_id", String(255), nullable=True, index=True),
            Column("batch_id", String(255), nullable=True),
            Column("transaction_type", String(20), nullable=False),
            Column("minutes", Integer, nullable=False),
            Column("description", Text, nullable=True),
            Column("created_at_utc", DateTime, nullable=False, index=True),
            CheckConstraint("minutes >= 0", name="ck_minutes_non_negative"),
            CheckConstraint(
                "transaction_type IN ('deduction', 'refund', 'purchase', 'bonus')",
                name="ck_transaction_type",
            ),
        )
        # One refund and one deduction per (user, batch); purchases and bonuses are unbounded.
        Index(
            "uq_minutes_refund_per_batch",
            self.minutes_transactions.c.user_id,
            self.minutes_transactions.c.batch_id,
            unique=True,
            sqlite_where=text("transaction_type = 'refund'"),
            postgresql_where=text("transaction_type = 'refund'"),
        )
        Index(
            "uq_minutes_deduction_per_batch",
            self.minutes_transactions.c.user_id,
            self.minutes_transactions.c.batch_id,
            unique=True,
            sqlite_where=text("transaction_type = 'deduction'"),
            postgresql_where=text("transaction_type = 'deduction'"),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Run statements in one database transaction.

        Integrity violations propagate unchanged so callers can treat them as
        "another writer got there first"; any other database failure becomes a
        PersistenceError.
        """
        try:
            with self.engine.begin() as conn:
                yield conn
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    @contextmanager
    def reader(self) -> Iterator[Connection]:
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    def dispose(self) -> None:
        self.engine.dispose()

