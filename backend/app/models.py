from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.utcnow()


class CampaignStatus(str, Enum):
    draft = "Draft"
    launched = "Launched"
    completed = "Completed"
    failed = "Failed"


class CampaignTransition(str, Enum):
    completed = "completed"
    failed = "failed"
    no_change = "no_change"


class TransactionType(str, Enum):
    deduction = "deduction"
    refund = "refund"
    purchase = "purchase"
    bonus = "bonus"


class SettlementStatus(str, Enum):
    refunded = "refunded"
    nothing_to_refund = "nothing_to_refund"
    already_settled = "already_settled"
    no_deduction = "no_deduction"


class WebhookEventType(str, Enum):
    post_call_transcription = "post_call_transcription"
    batch_status_update = "batch_status_update"


# Provider payloads


class BatchCallLink(BaseModel):
    batch_call_id: Optional[str] = None
    batch_call_recipient_id: Optional[str] = None


class PhoneCallInfo(BaseModel):
    external_number: Optional[str] = None


class ConversationMetadata(BaseModel):
    call_duration_secs: Optional[int] = None
    cost: Optional[float] = None
    start_time_unix_secs: Optional[int] = None
    accepted_time_unix_secs: Optional[int] = None


class ConversationEvent(BaseModel):
    """A single call attempt as reported by the provider.

    Webhook deliveries carry the full payload. Poll-derived events only carry
    identity and status, so every optional field left as ``None`` is treated
    as "not reported" and never overwrites stored data.
    """

    conversation_id: str = Field(min_length=1)
    agent_id: Optional[str] = None
    status: Optional[str] = None
    contact_name: Optional[str] = None
    has_audio: Optional[bool] = None
    batch_call: Optional[BatchCallLink] = None
    phone_call: Optional[PhoneCallInfo] = None
    metadata: Optional[dict[str, Any]] = None
    analysis: Optional[dict[str, Any]] = None
    transcript: Optional[list[Any]] = None
    dynamic_variables: Optional[dict[str, Any]] = None

    @property
    def batch_id(self) -> Optional[str]:
        return self.batch_call.batch_call_id if self.batch_call else None

    @property
    def provider_recipient_id(self) -> Optional[str]:
        return self.batch_call.batch_call_recipient_id if self.batch_call else None

    @property
    def phone_number(self) -> Optional[str]:
        return self.phone_call.external_number if self.phone_call else None

    def parsed_metadata(self) -> Optional[ConversationMetadata]:
        if self.metadata is None:
            return None
        return ConversationMetadata.model_validate(self.metadata)


class BatchStatusEvent(BaseModel):
    batch_id: str = Field(min_length=1)
    status: Optional[str] = None
    total_calls_dispatched: Optional[int] = None
    last_updated_at_unix: Optional[int] = None


class WebhookEnvelope(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class BatchRecipientSnapshot(BaseModel):
    id: str = Field(min_length=1)
    phone_number: Optional[str] = None
    contact_name: Optional[str] = None
    status: Optional[str] = None
    conversation_id: Optional[str] = None
    conversation_initiation_client_data: Optional[dict[str, Any]] = None


class BatchSnapshot(BaseModel):
    id: str = Field(min_length=1)
    name: Optional[str] = None
    status: Optional[str] = None
    total_calls_scheduled: Optional[int] = None
    total_calls_dispatched: Optional[int] = None
    last_updated_at_unix: Optional[int] = None
    recipients: list[BatchRecipientSnapshot] = Field(default_factory=list)


# Stored records


class CampaignRecord(BaseModel):
    id: str
    user_id: str
    name: str
    status: CampaignStatus = CampaignStatus.draft
    launched_at_utc: Optional[datetime] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class BatchCallRecord(BaseModel):
    batch_id: str
    campaign_id: Optional[str]
    user_id: str
    name: Optional[str]
    status: Optional[str]
    total_calls_scheduled: int = 0
    total_calls_dispatched: int = 0
    last_updated_at_unix: Optional[int] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class RecipientRecord(BaseModel):
    id: str
    provider_recipient_id: str
    batch_id: str
    user_id: str
    phone_number: Optional[str]
    contact_name: Optional[str]
    status: Optional[str]
    conversation_id: Optional[str]
    client_data: Optional[dict[str, Any]] = None
    created_at_utc: datetime
    updated_at_utc: datetime


class ConversationRecord(BaseModel):
    conversation_id: str
    user_id: str
    campaign_id: Optional[str]
    batch_id: Optional[str]
    recipient_id: Optional[str]
    agent_id: Optional[str]
    phone_number: Optional[str]
    contact_name: Optional[str]
    status: Optional[str]
    call_successful: Optional[str]
    call_duration_secs: int = 0
    total_cost: float = 0.0
    start_time_unix: Optional[int]
    accepted_time_unix: Optional[int]
    summary: Optional[str]
    analysis: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    transcript: list[Any] = Field(default_factory=list)
    dynamic_variables: Optional[dict[str, Any]] = None
    has_audio: bool = False
    created_at_utc: datetime
    updated_at_utc: datetime


class MinutesTransactionRecord(BaseModel):
    id: str
    user_id: str
    campaign_id: Optional[str]
    batch_id: Optional[str]
    transaction_type: TransactionType
    minutes: int = Field(ge=0)
    description: Optional[str]
    created_at_utc: datetime


class ProfileRecord(BaseModel):
    user_id: str
    available_minutes: int
    updated_at_utc: datetime


# Engine results


class SettlementResult(BaseModel):
    batch_id: str
    user_id: str
    status: SettlementStatus
    failed: bool = False
    original_minutes: int = 0
    minutes_used: int = 0
    refund_minutes: int = 0
    transaction_id: Optional[str] = None


class BatchStatusOutcome(BaseModel):
    batch_id: str
    provider_status: Optional[str]
    transition: CampaignTransition
    campaign_id: Optional[str] = None
    campaign_status: Optional[CampaignStatus] = None
    settlement: Optional[SettlementResult] = None

    @property
    def is_terminal(self) -> bool:
        return self.transition != CampaignTransition.no_change


class SnapshotOutcome(BaseModel):
    batch: BatchStatusOutcome
    recipients_processed: int = 0
    recipient_errors: int = 0
    conversations_ingested: int = 0


class PollResult(BaseModel):
    batch_id: str
    completed: bool
    timed_out: bool
    iterations: int
    errors: int = 0
    last_status: Optional[str] = None
    transition: CampaignTransition = CampaignTransition.no_change


class CleanupCampaignDetail(BaseModel):
    campaign_id: str
    campaign_name: str
    batch_id: Optional[str]
    expected_calls: int
    successful_calls: int
    failed_calls: int
    refunded_minutes: int
    outcome: str


class CleanupReport(BaseModel):
    total_refunded: int
    processed_campaigns: int
    details: list[CleanupCampaignDetail]


# API payloads


class LaunchRecipient(BaseModel):
    phone_number: str = Field(min_length=4, max_length=32)
    contact_name: Optional[str] = Field(default=None, max_length=120)
    dynamic_variables: dict[str, Any] = Field(default_factory=dict)


class CampaignLaunchRequest(BaseModel):
    agent_id: str = Field(min_length=1)
    phone_number_id: str = Field(min_length=1)
    call_name: Optional[str] = Field(default=None, max_length=200)
    scheduled_time_unix: Optional[int] = None
    recipients: list[LaunchRecipient] = Field(min_length=1)


class CampaignLaunchResponse(BaseModel):
    campaign_id: str
    batch_id: str
    status: CampaignStatus
    minutes_deducted: int
    polling: bool


class CampaignSummaryResponse(BaseModel):
    campaign: CampaignRecord
    batch: Optional[BatchCallRecord]
    recipients: int
    conversations: int
    billable_conversations: int
    minutes_used: int


class PollRequest(BaseModel):
    wait: bool = False
    user_id: Optional[str] = None


class PollStartedResponse(BaseModel):
    batch_id: str
    status: str


class SettleRequest(BaseModel):
    failed: bool = False


class CleanupRequest(BaseModel):
    campaign_id: Optional[str] = None


class CreditRequest(BaseModel):
    transaction_type: TransactionType = TransactionType.purchase
    minutes: int = Field(ge=1, le=1_000_000)
    description: Optional[str] = Field(default=None, max_length=200)


class MinutesBalanceResponse(BaseModel):
    user_id: str
    available_minutes: int
    derived_minutes: int
    transactions: list[MinutesTransactionRecord]


class CampaignCreateRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=255)
    name: str = Field(min_length=1, max_length=200)
