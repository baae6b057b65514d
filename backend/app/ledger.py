from __future__ import annotations

import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    MinutesTransactionRecord,
    ProfileRecord,
    TransactionType,
    utc_now,
)
from backend.app.persistence import Database, PersistenceError

logger = logging.getLogger("campaign_minutes.ledger")

_CREDIT_TYPES = {TransactionType.refund, TransactionType.purchase, TransactionType.bonus}


class DuplicateTransactionError(Exception):
    """A once-per-batch transaction already exists for this user and batch."""


class RefundCapExceededError(Exception):
    pass


class InsufficientMinutesError(Exception):
    def __init__(self, user_id: str, required: int, available: int) -> None:
        super().__init__(
            f"user {user_id} needs {required} minutes but has {available}"
        )
        self.user_id = user_id
        self.required = required
        self.available = available


def signed_minutes(transaction_type: TransactionType, minutes: int) -> int:
    if transaction_type in _CREDIT_TYPES:
        return minutes
    return -minutes


class LedgerStore:
    """
    Append-only minute transactions plus the per-user balance they drive.

    The balance is only ever moved by ``apply_transaction`` and
    ``charge_minutes``, each of which writes the log row and the balance delta
    in a single database transaction. Refunds and deductions are unique per
    (user, batch) at the schema level.
    """

    def __init__(self, database: Database) -> None:
        self.database = database

    def ensure_profile(self, user_id: str) -> ProfileRecord:
        table = self.database.profiles
        existing = self.find_profile(user_id)
        if existing:
            return existing
        try:
            with self.database.transaction() as conn:
                conn.execute(
                    table.insert().values(
                        user_id=user_id, available_minutes=0, updated_at_utc=utc_now()
                    )
                )
        except IntegrityError:
            # Created concurrently.
            pass
        profile = self.find_profile(user_id)
        if profile is None:
            raise PersistenceError(f"profile could not be created: {user_id}")
        return profile

    def find_profile(self, user_id: str) -> Optional[ProfileRecord]:
        table = self.database.profiles
        with self.database.reader() as conn:
            row = conn.execute(select(table).where(table.c.user_id == user_id)).first()
        if not row:
            return None
        return ProfileRecord(
            user_id=row.user_id,
            available_minutes=row.available_minutes,
            updated_at_utc=row.updated_at_utc,
        )

    def get_balance(self, user_id: str) -> int:
        profile = self.find_profile(user_id)
        return profile.available_minutes if profile else 0

    def apply_transaction(
        self,
        *,
        user_id: str,
        transaction_type: TransactionType,
        minutes: int,
        campaign_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> MinutesTransactionRecord:
        """Append a transaction and move the balance by its signed amount.

        Raises DuplicateTransactionError when the partial unique index rejects a
        second refund or deduction for the same (user, batch). In that case
        neither the log nor the balance changes.
        """
        if minutes < 0:
            raise ValueError("minutes must be non-negative")
        self.ensure_profile(user_id)
        record = self._new_record(
            user_id, transaction_type, minutes, campaign_id, batch_id, description
        )
        try:
            with self.database.transaction() as conn:
                # Insert first so the unique index decides the race before any balance write.
                self._insert_transaction(conn, record)
                self._apply_delta(conn, user_id, signed_minutes(transaction_type, minutes))
        except IntegrityError as exc:
            raise DuplicateTransactionError(
                f"{transaction_type.value} already recorded for user={user_id} batch={batch_id}"
            ) from exc
        logger.info(
            "ledger_transaction id=%s user_id=%s type=%s minutes=%s batch_id=%s",
            record.id,
            user_id,
            transaction_type.value,
            minutes,
            batch_id,
        )
        return record

    def charge_minutes(
        self,
        conn: Connection,
        *,
        user_id: str,
        batch_id: str,
        minutes: int,
        campaign_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> MinutesTransactionRecord:
        """Append a deduction inside the caller's transaction if the balance covers it.

        The balance update only matches while ``available_minutes >= minutes``,
        so concurrent charges against one profile cannot overdraw it. Raises
        InsufficientMinutesError otherwise, which rolls back the caller's
        transaction together with the deduction row. The profile must exist.
        """
        if minutes < 0:
            raise ValueError("minutes must be non-negative")
        record = self._new_record(
            user_id, TransactionType.deduction, minutes, campaign_id, batch_id, description
        )
        self._insert_transaction(conn, record)
        table = self.database.profiles
        result = conn.execute(
            table.update()
            .where(table.c.user_id == user_id)
            .where(table.c.available_minutes >= minutes)
            .values(
                available_minutes=table.c.available_minutes - minutes,
                updated_at_utc=utc_now(),
            )
        )
        if result.rowcount == 0:
            available = conn.execute(
                select(table.c.available_minutes).where(table.c.user_id == user_id)
            ).scalar()
            raise InsufficientMinutesError(user_id, minutes, int(available or 0))
        return record

    def apply_refund_once(
        self,
        *,
        user_id: str,
        batch_id: str,
        minutes: int,
        campaign_id: Optional[str] = None,
        description: Optional[str] = None,
    ) -> MinutesTransactionRecord:
        deduction = self.find_transaction(user_id, batch_id, TransactionType.deduction)
        if deduction is not None and minutes > deduction.minutes:
            raise RefundCapExceededError(
                f"refund {minutes} exceeds deduction {deduction.minutes} for batch {batch_id}"
            )
        return self.apply_transaction(
            user_id=user_id,
            transaction_type=TransactionType.refund,
            minutes=minutes,
            campaign_id=campaign_id,
            batch_id=batch_id,
            description=description,
        )

    def find_transaction(
        self, user_id: str, batch_id: str, transaction_type: TransactionType
    ) -> Optional[MinutesTransactionRecord]:
        table = self.database.minutes_transactions
        with self.database.reader() as conn:
            row = conn.execute(
                select(table)
                .where(table.c.user_id == user_id)
                .where(table.c.batch_id == batch_id)
                .where(table.c.transaction_type == transaction_type.value)
                .order_by(table.c.created_at_utc)
            ).first()
        return self._transaction_from_row(row) if row else None

    def find_deduction(self, user_id: str, batch_id: str) -> Optional[MinutesTransactionRecord]:
        return self.find_transaction(user_id, batch_id, TransactionType.deduction)

    def find_refund(self, user_id: str, batch_id: str) -> Optional[MinutesTransactionRecord]:
        return self.find_transaction(user_id, batch_id, TransactionType.refund)

    def list_transactions(
        self, user_id: str, *, batch_id: Optional[str] = None
    ) -> list[MinutesTransactionRecord]:
        table = self.database.minutes_transactions
        query = select(table).where(table.c.user_id == user_id)
        if batch_id:
            query = query.where(table.c.batch_id == batch_id)
        with self.database.reader() as conn:
            rows = conn.execute(query.order_by(table.c.created_at_utc)).all()
        return [self._transaction_from_row(row) for row in rows]

    def derived_balance(self, user_id: str) -> int:
        table = self.database.minutes_transactions
        with self.database.reader() as conn:
            rows = conn.execute(
                select(table.c.transaction_type, func.coalesce(func.sum(table.c.minutes), 0))
                .where(table.c.user_id == user_id)
                .group_by(table.c.transaction_type)
            ).all()
        return sum(
            signed_minutes(TransactionType(transaction_type), int(total))
            for transaction_type, total in rows
        )

    @staticmethod
    def _new_record(
        user_id: str,
        transaction_type: TransactionType,
        minutes: int,
        campaign_id: Optional[str],
        batch_id: Optional[str],
        description: Optional[str],
    ) -> MinutesTransactionRecord:
        return MinutesTransactionRecord(
            id=f"mtx_{uuid4().hex[:12]}",
            user_id=user_id,
            campaign_id=campaign_id,
            batch_id=batch_id,
            transaction_type=transaction_type,
            minutes=minutes,
            description=description,
            created_at_utc=utc_now(),
        )

    def _insert_transaction(self, conn: Connection, record: MinutesTransactionRecord) -> None:
        conn.execute(
            self.database.minutes_transactions.insert().values(
                id=record.id,
                user_id=record.user_id,
                campaign_id=record.campaign_id,
                batch_id=record.batch_id,
                transaction_type=record.transaction_type.value,
                minutes=record.minutes,
                description=record.description,
                created_at_utc=record.created_at_utc,
            )
        )

    def _apply_delta(self, conn: Connection, user_id: str, delta: int) -> None:
        table = self.database.profiles
        conn.execute(
            table.update()
            .where(table.c.user_id == user_id)
            .values(
                available_minutes=table.c.available_minutes + delta,
                updated_at_utc=utc_now(),
            )
        )

    @staticmethod
    def _transaction_from_row(row: Row) -> MinutesTransactionRecord:
        return MinutesTransactionRecord(
            id=row.id,
            user_id=row.user_id,
            campaign_id=row.campaign_id,
            batch_id=row.batch_id,
            transaction_type=TransactionType(row.transaction_type),
            minutes=row.minutes,
            description=row.description,
            created_at_utc=row.created_at_utc,
        )
