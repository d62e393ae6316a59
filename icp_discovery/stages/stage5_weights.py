"""
Stage 5: Scoring Weights
========================
Turns discovery output into heuristic point weights.

- Persona: min(10, round(lift x 3)), keyed persona_<seniority>_<department>
- Custom field value: round(win rate / best win rate for the field x 10),
  grouped by entity type so deal and account fields sharing a key stay apart
- Industry: round(win rate / best industry win rate x 10)

Rounding is half-up. These weights are descriptive, not validated.
"""

import logging
import time
from typing import Dict, List, Optional

from ..config.settings import WEIGHTS_METHOD, WEIGHTS_NOTE
from ..models.icp_config import DiscoveryConfig
from ..models.schemas import CompanyProfile, PersonaPattern, ScoringWeights
from ..utils import round_half_up

logger = logging.getLogger(__name__)


def persona_weight_key(seniority: str, department: str) -> str:
    return f"persona_{seniority}_{department}"


class ScoringWeightSynthesizer:
    """
    Stage 5: Synthesize point weights from personas and company segments.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None):
        self.config = config or DiscoveryConfig()

    def process(
        self,
        personas: List[PersonaPattern],
        company: CompanyProfile,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> ScoringWeights:
        """
        Build scoring weights.

        Args:
            personas: Significant personas
            company: Company profile from Stage 4
            log: Run logger

        Returns:
            ScoringWeights with persona, custom-field and industry tables
        """
        start_time = time.time()
        log = log or logger
        cap = self.config.max_point_weight

        persona_weights = {
            persona_weight_key(p.seniority, p.department):
                min(cap, round_half_up(p.lift * self.config.persona_lift_multiplier))
            for p in personas
        }

        field_weights: Dict[str, Dict[str, Dict[str, int]]] = {}
        for segment in company.custom_field_segments:
            best = max((s.win_rate for s in segment.segments), default=0)
            if best <= 0:
                continue
            field_weights.setdefault(segment.entity_type, {})[segment.field_key] = {
                s.value: round_half_up(s.win_rate / best * cap) for s in segment.segments
            }

        industry_weights = {}
        best_industry = max((i.win_rate for i in company.industry_win_rates), default=0)
        if best_industry > 0:
            industry_weights = {
                i.industry: round_half_up(i.win_rate / best_industry * cap)
                for i in company.industry_win_rates
            }

        log.info(
            "Scoring weights: %d personas, %d custom fields, %d industries in %.1fms",
            len(persona_weights), sum(len(fields) for fields in field_weights.values()), len(industry_weights),
            (time.time() - start_time) * 1000,
        )

        return ScoringWeights(
            method=WEIGHTS_METHOD,
            personas=persona_weights,
            custom_fields=field_weights,
            industries=industry_weights,
            note=WEIGHTS_NOTE,
        )
