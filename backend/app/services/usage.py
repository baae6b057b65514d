from __future__ import annotations

import math
from typing import Iterable, Optional

from backend.app.models import ConversationRecord

BILLABLE_STATUSES = {"done", "completed"}
FINAL_STATUSES = BILLABLE_STATUSES | {"failed", "error", "cancelled"}


def is_billable_status(status: Optional[str]) -> bool:
    if not status:
        return False
    return status.strip().lower() in BILLABLE_STATUSES


def is_final_status(status: Optional[str]) -> bool:
    """True once a conversation can no longer change, billable or not."""
    if not status:
        return False
    return status.strip().lower() in FINAL_STATUSES


def billable_minutes(duration_secs: Optional[int], status: Optional[str]) -> int:
    """Whole minutes charged for one conversation.

    Any connected call is charged at least one minute; longer calls round up.
    Calls that never reached a billable status cost nothing.
    """
    if not is_billable_status(status):
        return 0
    seconds = duration_secs or 0
    if seconds <= 0:
        return 0
    if seconds <= 60:
        return 1
    return math.ceil(seconds / 60)


def minutes_used(conversations: Iterable[ConversationRecord]) -> int:
    return sum(
        billable_minutes(conversation.call_duration_secs, conversation.status)
        for conversation in conversations
    )


def estimate_campaign_minutes(recipient_count: int, per_recipient: int = 2) -> int:
    return max(0, recipient_count) * max(0, per_recipient)
