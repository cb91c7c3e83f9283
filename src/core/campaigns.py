"""Campaign selection (core domain)."""

from __future__ import annotations

import logging
from typing import Optional

from core.errors import RuleSetValidationError
from core.keyword_matcher import build_rule_set, match_keywords
from core.models import CampaignMatch, CampaignStats
from core.ports import CampaignStore

LOGGER = logging.getLogger(__name__)


class CampaignSelector:
    """Picks the highest-priority active campaign whose rules match."""

    def __init__(self, campaigns: CampaignStore) -> None:
        self._campaigns = campaigns

    def detect_campaign(self, message_text: Optional[str]) -> Optional[CampaignMatch]:
        """Return the first matching campaign, or None.

        Campaigns are evaluated in the store's priority order and the first
        hit wins; there is no scoring across campaigns. A campaign with a
        malformed rule set is logged and skipped.
        """

        if not message_text or not message_text.strip():
            return None

        campaigns = self._campaigns.list_active()
        if not campaigns:
            LOGGER.info("No active campaigns")
            return None

        LOGGER.info("Evaluating %s active campaigns", len(campaigns))
        for campaign in campaigns:
            try:
                rule_set = build_rule_set(campaign.trigger_keywords)
            except RuleSetValidationError as exc:
                LOGGER.error("Skipping campaign %s (%s): invalid rule set: %s", campaign.id, campaign.name, exc)
                continue

            match = match_keywords(message_text, rule_set)
            if match is None:
                continue

            LOGGER.info(
                "Campaign matched: %s (id=%s) keyword=%r type=%s",
                campaign.name,
                campaign.id,
                match.matched,
                match.match_type.value,
            )
            return CampaignMatch(
                campaign_id=campaign.id,
                campaign_name=campaign.name,
                matched_keyword=match.matched,
                match_type=match.match_type,
                priority=campaign.priority,
            )

        LOGGER.info("No campaign matched the message")
        return None

    def campaign_stats(self, campaign_id: int) -> CampaignStats:
        return self._campaigns.campaign_stats(campaign_id)
