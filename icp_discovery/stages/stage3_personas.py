"""
Stage 3: Persona and Committee Patterns
=======================================
Mines the closed feature matrix for the people who show up on won deals.

- Personas: contacts clustered by (seniority x department), with how often the
  cluster appears on won vs lost deals and the deal size it brings
- Committees: pairs of significant personas that co-occur on a deal, ranked
  by win rate
"""

import logging
import time
from collections import Counter
from itertools import combinations
from typing import Dict, List, Optional, Set

from ..config.settings import CONFIDENCE_TIERS, MAX_LIFT
from ..models.icp_config import DiscoveryConfig
from ..models.schemas import ClosedDealFeatures, CommitteeCombo, PersonaPattern
from ..utils import lift_ratio, mean, safe_ratio

logger = logging.getLogger(__name__)


def display_name(token: str) -> str:
    """c_level -> "C level" """
    if not token:
        return token
    return token[0].upper() + token[1:].replace("_", " ")


def confidence_for(sample_size: int) -> float:
    for minimum, confidence in CONFIDENCE_TIERS:
        if sample_size >= minimum:
            return confidence
    return CONFIDENCE_TIERS[-1][1]


class _Cluster:
    def __init__(self, seniority: str, department: str):
        self.seniority = seniority
        self.department = department
        self.titles: List[str] = []
        self.buying_roles: List[str] = []
        self.won_deals: Dict[str, float] = {}
        self.lost_deals: Dict[str, float] = {}

    @property
    def deal_count(self) -> int:
        return len(self.won_deals) + len(self.lost_deals)


# =============================================================================
# Personas
# =============================================================================

class PersonaPatternMiner:
    """
    Stage 3A: Cluster contacts into personas and measure win/loss lift.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None):
        self.config = config or DiscoveryConfig()

    def process(
        self,
        matrix: List[ClosedDealFeatures],
        log: Optional[logging.LoggerAdapter] = None,
    ) -> List[PersonaPattern]:
        """
        Compute every persona cluster present in the matrix.

        Args:
            matrix: Closed deal feature vectors
            log: Run logger

        Returns:
            All personas sorted by lift descending; use significant() to keep
            the ones with enough deals behind them
        """
        start_time = time.time()
        log = log or logger

        total_won = sum(1 for deal in matrix if deal.won)
        total_lost = len(matrix) - total_won

        clusters: Dict[str, _Cluster] = {}
        for deal in matrix:
            for contact in deal.committee.contacts:
                key = contact.persona_key
                cluster = clusters.get(key)
                if cluster is None:
                    cluster = clusters[key] = _Cluster(contact.seniority, contact.department)
                if contact.title:
                    cluster.titles.append(contact.title)
                if contact.buying_role:
                    cluster.buying_roles.append(contact.buying_role)
                if deal.won:
                    cluster.won_deals[deal.deal_id] = deal.amount
                else:
                    cluster.lost_deals[deal.deal_id] = deal.amount

        personas = [
            self._pattern(key, cluster, total_won, total_lost)
            for key, cluster in clusters.items()
        ]
        personas.sort(key=lambda p: p.lift, reverse=True)

        log.info(
            "Discovered %d personas (%d significant) in %.1fms",
            len(personas),
            len(self.significant(personas)),
            (time.time() - start_time) * 1000,
        )
        return personas

    def significant(self, personas: List[PersonaPattern]) -> List[PersonaPattern]:
        """Keep personas seen on at least min_persona_deals closed deals."""
        return [p for p in personas if p.deal_count >= self.config.min_persona_deals]

    def _pattern(self, key: str, cluster: _Cluster, total_won: int, total_lost: int) -> PersonaPattern:
        """Compute frequency, lift and deal-size metrics for one cluster"""
        freq_won = safe_ratio(len(cluster.won_deals), total_won)
        freq_lost = safe_ratio(len(cluster.lost_deals), total_lost)

        avg_won = mean(cluster.won_deals.values())
        avg_lost = mean(cluster.lost_deals.values())

        top_titles = [title for title, _ in Counter(cluster.titles).most_common(self.config.top_titles)]
        top_roles = [role for role, _ in Counter(cluster.buying_roles).most_common(self.config.top_buying_roles)]

        return PersonaPattern(
            key=key,
            name=f"{display_name(cluster.seniority)} {display_name(cluster.department)}",
            seniority=cluster.seniority,
            department=cluster.department,
            top_titles=top_titles,
            top_buying_roles=top_roles,
            frequency_in_won=freq_won,
            frequency_in_lost=freq_lost,
            lift=lift_ratio(freq_won, freq_lost, MAX_LIFT),
            deal_count=cluster.deal_count,
            won_deal_count=len(cluster.won_deals),
            lost_deal_count=len(cluster.lost_deals),
            avg_deal_size_won=avg_won,
            avg_deal_size_lost=avg_lost,
            deal_size_lift=lift_ratio(avg_won, avg_lost, MAX_LIFT),
            confidence=confidence_for(cluster.deal_count),
        )


# =============================================================================
# Buying committees
# =============================================================================

class CommitteeComboMiner:
    """
    Stage 3B: Find persona pairs that co-occur on closed deals.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None):
        self.config = config or DiscoveryConfig()

    def process(
        self,
        matrix: List[ClosedDealFeatures],
        personas: List[PersonaPattern],
        log: Optional[logging.LoggerAdapter] = None,
    ) -> List[CommitteeCombo]:
        """
        Rank persona pairs by win rate.

        Args:
            matrix: Closed deal feature vectors
            personas: Significant personas; contacts outside them are ignored
            log: Run logger

        Returns:
            At most max_committee_combos combos, win rate descending then
            support descending
        """
        start_time = time.time()
        log = log or logger

        by_key = {p.key: p for p in personas}
        baseline = safe_ratio(sum(1 for deal in matrix if deal.won), len(matrix))

        pairs: Dict[tuple, Dict[str, list]] = {}
        for deal in matrix:
            present: Set[str] = {c.persona_key for c in deal.committee.contacts if c.persona_key in by_key}
            for pair in combinations(sorted(present), 2):
                stats = pairs.setdefault(pair, {"won": [], "lost": []})
                stats["won" if deal.won else "lost"].append(deal.amount)

        combos = []
        for pair, stats in pairs.items():
            won, lost = len(stats["won"]), len(stats["lost"])
            total = won + lost
            if total < self.config.min_committee_support:
                continue
            win_rate = won / total
            combos.append(CommitteeCombo(
                personas=list(pair),
                persona_names=[by_key[key].name for key in pair],
                won_count=won,
                lost_count=lost,
                total_count=total,
                win_rate=win_rate,
                avg_deal_size=mean(stats["won"] + stats["lost"]),
                lift=safe_ratio(win_rate, baseline),
            ))

        combos.sort(key=lambda c: (-c.win_rate, -c.total_count))
        combos = combos[:self.config.max_committee_combos]

        log.info(
            "Discovered %d committee combinations from %d candidate pairs in %.1fms",
            len(combos), len(pairs), (time.time() - start_time) * 1000,
        )
        return combos
