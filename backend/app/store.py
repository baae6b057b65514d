from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.engine import Connection, Row
from sqlalchemy.exc import IntegrityError

from backend.app.models import (
    BatchCallRecord,
    CampaignRecord,
    CampaignStatus,
    ConversationEvent,
    ConversationRecord,
    RecipientRecord,
    utc_now,
)
from backend.app.persistence import Database, dumps_json, loads_json
from backend.app.services.workflow import ALLOWED_TRANSITIONS


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


class StoreConflictError(Exception):
    pass


class StoreNotFoundError(Exception):
    pass


class CampaignStateStore:
    """Campaigns, batch calls, recipients and conversations."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # Campaigns

    def create_campaign(
        self,
        *,
        user_id: str,
        name: str,
        campaign_id: Optional[str] = None,
    ) -> CampaignRecord:
        now = utc_now()
        campaign = CampaignRecord(
            id=campaign_id or new_id("cmp"),
            user_id=user_id,
            name=name.strip(),
            status=CampaignStatus.draft,
            created_at_utc=now,
            updated_at_utc=now,
        )
        table = self.database.campaigns
        with self.database.transaction() as conn:
            conn.execute(
                table.insert().values(
                    id=campaign.id,
                    user_id=campaign.user_id,
                    name=campaign.name,
                    status=campaign.status.value,
                    launched_at_utc=None,
                    created_at_utc=now,
                    updated_at_utc=now,
                )
            )
        return campaign

    def get_campaign(self, campaign_id: str) -> CampaignRecord:
        table = self.database.campaigns
        with self.database.reader() as conn:
            row = conn.execute(select(table).where(table.c.id == campaign_id)).first()
        if not row:
            raise StoreNotFoundError(f"campaign not found: {campaign_id}")
        return self._campaign_from_row(row)

    def transition_campaign(
        self, campaign_id: str, to_status: CampaignStatus
    ) -> tuple[CampaignRecord, bool]:
        """Move a campaign to ``to_status`` with a compare-and-swap on its current status.

        Returns the stored campaign and whether this call performed the change.
        Re-applying the current status is a no-op; any other transition not in
        ALLOWED_TRANSITIONS raises StoreConflictError.
        """
        table = self.database.campaigns
        campaign = self.get_campaign(campaign_id)
        if campaign.status == to_status:
            return campaign, False
        if to_status not in ALLOWED_TRANSITIONS[campaign.status]:
            raise StoreConflictError(
                f"invalid transition {campaign.status.value} -> {to_status.value}"
            )
        now = utc_now()
        values: dict[str, Any] = {"status": to_status.value, "updated_at_utc": now}
        if to_status == CampaignStatus.launched:
            values["launched_at_utc"] = now
        with self.database.transaction() as conn:
            result = conn.execute(
                table.update()
                .where(table.c.id == campaign_id)
                .where(table.c.status == campaign.status.value)
                .values(**values)
            )
        if result.rowcount == 0:
            # Another writer moved the campaign first; report what it settled on.
            current = self.get_campaign(campaign_id)
            if current.status == to_status:
                return current, False
            raise StoreConflictError(
                f"campaign {campaign_id} changed concurrently to {current.status.value}"
            )
        return self.get_campaign(campaign_id), True

    def list_stale_completed_campaigns(
        self, *, launched_before: datetime, campaign_id: Optional[str] = None
    ) -> list[CampaignRecord]:
        table = self.database.campaigns
        query = (
            select(table)
            .where(table.c.status == CampaignStatus.completed.value)
            .where(table.c.launched_at_utc.is_not(None))
            .where(table.c.launched_at_utc < launched_before)
        )
        if campaign_id:
            query = query.where(table.c.id == campaign_id)
        with self.database.reader() as conn:
            rows = conn.execute(query.order_by(table.c.launched_at_utc)).all()
        return [self._campaign_from_row(row) for row in rows]

    # Batch calls

    def create_batch_call(
        self,
        *,
        batch_id: str,
        user_id: str,
        campaign_id: Optional[str],
        name: Optional[str] = None,
        status: Optional[str] = None,
        total_calls_scheduled: int = 0,
    ) -> BatchCallRecord:
        try:
            with self.database.transaction() as conn:
                self.insert_batch_call(
                    conn,
                    batch_id=batch_id,
                    user_id=user_id,
                    campaign_id=campaign_id,
                    name=name,
                    status=status,
                    total_calls_scheduled=total_calls_scheduled,
                )
        except IntegrityError as exc:
            raise StoreConflictError(f"batch already recorded: {batch_id}") from exc
        return self.get_batch_call(batch_id)

    def insert_batch_call(
        self,
        conn: Connection,
        *,
        batch_id: str,
        user_id: str,
        campaign_id: Optional[str],
        name: Optional[str] = None,
        status: Optional[str] = None,
        total_calls_scheduled: int = 0,
    ) -> None:
        """Insert a batch row within the caller's transaction; IntegrityError on a duplicate."""
        now = utc_now()
        conn.execute(
            self.database.batch_calls.insert().values(
                batch_id=batch_id,
                campaign_id=campaign_id,
                user_id=user_id,
                name=name,
                status=status,
                total_calls_scheduled=total_calls_scheduled,
                total_calls_dispatched=0,
                last_updated_at_unix=None,
                created_at_utc=now,
                updated_at_utc=now,
            )
        )

    def find_batch_call(self, batch_id: str) -> Optional[BatchCallRecord]:
        table = self.database.batch_calls
        with self.database.reader() as conn:
            row = conn.execute(select(table).where(table.c.batch_id == batch_id)).first()
        return self._batch_from_row(row) if row else None

    def get_batch_call(self, batch_id: str) -> BatchCallRecord:
        batch = self.find_batch_call(batch_id)
        if not batch:
            raise StoreNotFoundError(f"batch not found: {batch_id}")
        return batch

    def find_batch_for_campaign(self, campaign_id: str) -> Optional[BatchCallRecord]:
        table = self.database.batch_calls
        with self.database.reader() as conn:
            row = conn.execute(select(table).where(table.c.campaign_id == campaign_id)).first()
        return self._batch_from_row(row) if row else None

    def update_batch_status(
        self,
        batch_id: str,
        *,
        status: Optional[str],
        total_calls_dispatched: Optional[int] = None,
        last_updated_at_unix: Optional[int] = None,
        total_calls_scheduled: Optional[int] = None,
    ) -> BatchCallRecord:
        table = self.database.batch_calls
        values: dict[str, Any] = {"updated_at_utc": utc_now()}
        if status is not None:
            values["status"] = status
        if total_calls_dispatched is not None:
            values["total_calls_dispatched"] = total_calls_dispatched
        if last_updated_at_unix is not None:
            values["last_updated_at_unix"] = last_updated_at_unix
        if total_calls_scheduled is not None:
            values["total_calls_scheduled"] = total_calls_scheduled
        with self.database.transaction() as conn:
            result = conn.execute(
                table.update().where(table.c.batch_id == batch_id).values(**values)
            )
        if result.rowcount == 0:
            raise StoreNotFoundError(f"batch not found: {batch_id}")
        return self.get_batch_call(batch_id)

    # Recipients

    def find_recipient(
        self, provider_recipient_id: str, batch_id: Optional[str] = None
    ) -> Optional[RecipientRecord]:
        table = self.database.recipients
        query = select(table).where(table.c.provider_recipient_id == provider_recipient_id)
        if batch_id:
            query = query.where(table.c.batch_id == batch_id)
        with self.database.reader() as conn:
            row = conn.execute(query.order_by(table.c.created_at_utc)).first()
        return self._recipient_from_row(row) if row else None

    def upsert_recipient(
        self,
        *,
        provider_recipient_id: str,
        batch_id: str,
        user_id: str,
        phone_number: Optional[str] = None,
        contact_name: Optional[str] = None,
        status: Optional[str] = None,
        conversation_id: Optional[str] = None,
        client_data: Optional[dict[str, Any]] = None,
    ) -> RecipientRecord:
        table = self.database.recipients
        reported = {
            "phone_number": phone_number,
            "contact_name": contact_name,
            "status": status,
            "conversation_id": conversation_id,
            "client_data_json": dumps_json(client_data),
        }
        changes = {key: value for key, value in reported.items() if value is not None}
        now = utc_now()

        def _update(conn: Connection) -> bool:
            result = conn.execute(
                table.update()
                .where(table.c.provider_recipient_id == provider_recipient_id)
                .where(table.c.batch_id == batch_id)
                .values(updated_at_utc=now, **changes)
            )
            return result.rowcount > 0

        with self.database.transaction() as conn:
            updated = _update(conn)
        if not updated:
            try:
                with self.database.transaction() as conn:
                    conn.execute(
                        table.insert().values(
                            id=new_id("rcp"),
                            provider_recipient_id=provider_recipient_id,
                            batch_id=batch_id,
                            user_id=user_id,
                            created_at_utc=now,
                            updated_at_utc=now,
                            **reported,
                        )
                    )
            except IntegrityError:
                # Inserted by a concurrent writer between our update and insert.
                with self.database.transaction() as conn:
                    _update(conn)
        recipient = self.find_recipient(provider_recipient_id, batch_id)
        if recipient is None:
            raise StoreNotFoundError(
                f"recipient not found: {provider_recipient_id} in batch {batch_id}"
            )
        return recipient

    def list_recipients(self, batch_id: str) -> list[RecipientRecord]:
        table = self.database.recipients
        with self.database.reader() as conn:
            rows = conn.execute(
                select(table).where(table.c.batch_id == batch_id).order_by(table.c.created_at_utc)
            ).all()
        return [self._recipient_from_row(row) for row in rows]

    # Conversations

    def upsert_conversation(
        self,
        event: ConversationEvent,
        *,
        user_id: str,
        campaign_id: Optional[str],
    ) -> ConversationRecord:
        """Insert or update a conversation keyed by its provider conversation id.

        Only fields present in the event are written. Duration and cost are stored
        as reported and never accumulated, so repeated delivery is harmless.
        """
        table = self.database.conversations
        metadata = event.parsed_metadata()
        analysis = event.analysis
        reported: dict[str, Any] = {
            "campaign_id": campaign_id,
            "batch_id": event.batch_id,
            "recipient_id": event.provider_recipient_id,
            "agent_id": event.agent_id,
            "phone_number": event.phone_number,
            "contact_name": event.contact_name,
            "status": event.status,
            "has_audio": event.has_audio,
            "transcript_json": dumps_json(event.transcript),
            "dynamic_variables_json": dumps_json(event.dynamic_variables),
        }
        if metadata is not None:
            reported.update(
                {
                    "call_duration_secs": metadata.call_duration_secs or 0,
                    "total_cost": metadata.cost or 0.0,
                    "start_time_unix": metadata.start_time_unix_secs,
                    "accepted_time_unix": metadata.accepted_time_unix_secs,
                    "metadata_json": dumps_json(event.metadata),
                }
            )
        if analysis is not None:
            call_successful = analysis.get("call_successful")
            reported.update(
                {
                    "analysis_json": dumps_json(analysis),
                    "summary": analysis.get("transcript_summary"),
                    "call_successful": str(call_successful) if call_successful else None,
                }
            )
        changes = {key: value for key, value in reported.items() if value is not None}
        now = utc_now()

        def _update(conn: Connection) -> bool:
            result = conn.execute(
                table.update()
                .where(table.c.conversation_id == event.conversation_id)
                .values(user_id=user_id, updated_at_utc=now, **changes)
            )
            return result.rowcount > 0

        with self.database.transaction() as conn:
            updated = _update(conn)
        if not updated:
            values: dict[str, Any] = {
                "call_duration_secs": 0,
                "total_cost": 0.0,
                "has_audio": False,
            }
            values.update(changes)
            try:
                with self.database.transaction() as conn:
                    conn.execute(
                        table.insert().values(
                            conversation_id=event.conversation_id,
                            user_id=user_id,
                            created_at_utc=now,
                            updated_at_utc=now,
                            **values,
                        )
                    )
            except IntegrityError:
                with self.database.transaction() as conn:
                    _update(conn)
        return self.get_conversation(event.conversation_id)

    def find_conversation(self, conversation_id: str) -> Optional[ConversationRecord]:
        table = self.database.conversations
        with self.database.reader() as conn:
            row = conn.execute(
                select(table).where(table.c.conversation_id == conversation_id)
            ).first()
        return self._conversation_from_row(row) if row else None

    def get_conversation(self, conversation_id: str) -> ConversationRecord:
        conversation = self.find_conversation(conversation_id)
        if not conversation:
            raise StoreNotFoundError(f"conversation not found: {conversation_id}")
        return conversation

    def list_campaign_conversations(self, campaign_id: str) -> list[ConversationRecord]:
        table = self.database.conversations
        with self.database.reader() as conn:
            rows = conn.execute(
                select(table)
                .where(table.c.campaign_id == campaign_id)
                .order_by(table.c.created_at_utc)
            ).all()
        return [self._conversation_from_row(row) for row in rows]

    def list_batch_conversations(self, batch_id: str) -> list[ConversationRecord]:
        table = self.database.conversations
        with self.database.reader() as conn:
            rows = conn.execute(
                select(table)
                .where(table.c.batch_id == batch_id)
                .order_by(table.c.created_at_utc)
            ).all()
        return [self._conversation_from_row(row) for row in rows]

    # Row mapping

    @staticmethod
    def _campaign_from_row(row: Row) -> CampaignRecord:
        return CampaignRecord(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            status=CampaignStatus(row.status),
            launched_at_utc=row.launched_at_utc,
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
        )

    @staticmethod
    def _batch_from_row(row: Row) -> BatchCallRecord:
        return BatchCallRecord(
            batch_id=row.batch_id,
            campaign_id=row.campaign_id,
            user_id=row.user_id,
            name=row.name,
            status=row.status,
            total_calls_scheduled=row.total_calls_scheduled or 0,
            total_calls_dispatched=row.total_calls_dispatched or 0,
            last_updated_at_unix=row.last_updated_at_unix,
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
        )

    @staticmethod
    def _recipient_from_row(row: Row) -> RecipientRecord:
        return RecipientRecord(
            id=row.id,
            provider_recipient_id=row.provider_recipient_id,
            batch_id=row.batch_id,
            user_id=row.user_id,
            phone_number=row.phone_number,
            contact_name=row.contact_name,
            status=row.status,
            conversation_id=row.conversation_id,
            client_data=loads_json(row.client_data_json),
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
        )

    @staticmethod
    def _conversation_from_row(row: Row) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=row.conversation_id,
            user_id=row.user_id,
            campaign_id=row.campaign_id,
            batch_id=row.batch_id,
            recipient_id=row.recipient_id,
            agent_id=row.agent_id,
            phone_number=row.phone_number,
            contact_name=row.contact_name,
            status=row.status,
            call_successful=row.call_successful,
            call_duration_secs=row.call_duration_secs or 0,
            total_cost=row.total_cost or 0.0,
            start_time_unix=row.start_time_unix,
            accepted_time_unix=row.accepted_time_unix,
            summary=row.summary,
            analysis=loads_json(row.analysis_json, {}),
            metadata=loads_json(row.metadata_json, {}),
            transcript=loads_json(row.transcript_json, []),
            dynamic_variables=loads_json(row.dynamic_variables_json),
            has_audio=bool(row.has_audio),
            created_at_utc=row.created_at_utc,
            updated_at_utc=row.updated_at_utc,
        )
