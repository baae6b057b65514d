from __future__ import annotations

import pytest

from backend.app.services.usage import (
    billable_minutes,
    estimate_campaign_minutes,
    is_billable_status,
    is_final_status,
)


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(0, 0), (1, 1), (45, 1), (60, 1), (61, 2), (120, 2), (121, 3), (-5, 0), (None, 0)],
)
def test_billable_minutes_for_done_calls(seconds, expected) -> None:
    assert billable_minutes(seconds, "done") == expected


def test_non_billable_statuses_cost_nothing() -> None:
    assert billable_minutes(300, "failed") == 0
    assert billable_minutes(300, "in_progress") == 0
    assert billable_minutes(300, None) == 0


def test_billable_predicate_is_case_insensitive() -> None:
    assert is_billable_status("DONE")
    assert is_billable_status(" Completed ")
    assert not is_billable_status("success")
    assert not is_billable_status("")


def test_launch_estimate_is_two_minutes_per_recipient() -> None:
    assert estimate_campaign_minutes(10, 2) == 20
    assert estimate_campaign_minutes(0, 2) == 0


def test_final_statuses_cover_failed_calls_too() -> None:
    assert is_final_status("done")
    assert is_final_status("Failed")
    assert is_final_status("cancelled")
    assert not is_final_status("in_progress")
    assert not is_final_status(None)
