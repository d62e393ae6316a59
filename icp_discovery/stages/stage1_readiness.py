"""
Stage 1: Data Readiness
=======================
Selects the analysis mode a workspace's closed-deal corpus can support.

Policy (first match wins):
- fewer than 30 closed deals             -> abort
- enrichment and 200+ role-tagged deals  -> regression (reserved)
- enrichment and 100+ role-tagged deals  -> point_based (reserved)
- 20+ role-tagged deals                  -> descriptive
- otherwise                              -> abort
"""

import logging
import time
from typing import Optional

from ..models.schemas import AnalysisMode, DataReadiness, ReadinessCounts
from ..models.icp_config import ReadinessConfig

logger = logging.getLogger(__name__)


class DataReadinessClassifier:
    """
    Stage 1: Classify corpus size into an analysis mode.
    """

    def __init__(self, config: Optional[ReadinessConfig] = None):
        self.config = config or ReadinessConfig()

    def process(
        self,
        counts: ReadinessCounts,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> DataReadiness:
        """
        Classify the corpus.

        Args:
            counts: Aggregate closed-deal and contact-role counts
            log: Run logger

        Returns:
            DataReadiness with the selected mode and the reasons behind it
        """
        start_time = time.time()
        log = log or logger
        cfg = self.config

        total_closed = counts.total_closed
        with_contacts = counts.deals_with_contacts
        reasons = []

        if total_closed < cfg.min_closed_deals:
            mode = AnalysisMode.ABORT
            reasons.append(
                f"Insufficient closed deals ({total_closed} < {cfg.min_closed_deals} required)"
            )
        elif counts.has_enrichment and with_contacts >= cfg.regression_min_deals_with_contacts:
            mode = AnalysisMode.REGRESSION
            reasons.append(f"Sufficient enriched deals for regression ({with_contacts})")
        elif counts.has_enrichment and with_contacts >= cfg.point_based_min_deals_with_contacts:
            mode = AnalysisMode.POINT_BASED
            reasons.append(f"Sufficient enriched deals for point-based scoring ({with_contacts})")
        elif with_contacts >= cfg.descriptive_min_deals_with_contacts:
            mode = AnalysisMode.DESCRIPTIVE
            reasons.append(
                f"Using descriptive mode: {total_closed} closed deals, "
                f"{counts.total_contact_roles} contact roles"
            )
            if not counts.has_enrichment:
                reasons.append("No API enrichment - using CRM roles + custom fields + activity patterns")
        else:
            mode = AnalysisMode.ABORT
            reasons.append(
                f"Insufficient contact role coverage ({with_contacts} deals with contacts "
                f"< {cfg.descriptive_min_deals_with_contacts} required)"
            )

        log.info(
            "Readiness mode %s: %d closed (%d won / %d lost), %d deals with contact roles",
            mode.value.upper(), total_closed, counts.won_count, counts.lost_count, with_contacts,
        )

        processing_time = (time.time() - start_time) * 1000

        return DataReadiness(
            mode=mode,
            won_count=counts.won_count,
            lost_count=counts.lost_count,
            total_closed=total_closed,
            deals_with_contacts=with_contacts,
            total_contact_roles=counts.total_contact_roles,
            unique_contacts=counts.unique_contacts,
            custom_fields_available=counts.custom_fields_available,
            has_conversations=counts.has_conversations,
            has_enrichment=counts.has_enrichment,
            reasons=reasons,
            processing_time_ms=round(processing_time, 2),
        )
