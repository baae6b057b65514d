from __future__ import annotations

from backend.app.models import CampaignStatus

ALLOWED_TRANSITIONS = {
    CampaignStatus.draft: {CampaignStatus.launched},
    CampaignStatus.launched: {CampaignStatus.completed, CampaignStatus.failed},
    CampaignStatus.completed: set(),
    CampaignStatus.failed: set(),
}
