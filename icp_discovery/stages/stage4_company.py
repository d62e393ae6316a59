"""
Stage 4: Company Patterns
=========================
Segment-level win rates over the closed feature matrix.

Segments:
- Industry (normalized display names)
- Company size buckets (1-50, 51-200, 201-1000, 1001-5000, 5000+)
- Values of high-relevance custom fields (deal and account)
- Lead source funnel (lead -> converted -> won)
- Sweet spots: industry or custom-field segments well above baseline
"""

import logging
import time
from typing import Dict, List, Optional

from ..config.settings import SIZE_BUCKETS, SIZE_BUCKET_OVERFLOW
from ..models.icp_config import DiscoveryConfig
from ..models.records import DiscoveredField, LeadRecord
from ..models.schemas import (
    ClosedDealFeatures,
    CompanyProfile,
    CustomFieldSegment,
    FieldValueSegment,
    IndustryWinRate,
    LeadSourceFunnel,
    SizeWinRate,
    SweetSpot,
)
from ..storage.repositories import CLOSED_LOST, CLOSED_WON
from ..utils import mean, safe_ratio, value_key

logger = logging.getLogger(__name__)


def size_bucket(employee_count: Optional[int]) -> Optional[str]:
    if employee_count is None:
        return None
    for upper, label in SIZE_BUCKETS:
        if employee_count <= upper:
            return label
    return SIZE_BUCKET_OVERFLOW


class _Tally:
    """Won/lost counter for one segment"""

    def __init__(self):
        self.won = 0
        self.lost = 0
        self.won_amounts: List[float] = []

    def add(self, deal: ClosedDealFeatures):
        if deal.won:
            self.won += 1
            self.won_amounts.append(deal.amount)
        else:
            self.lost += 1

    @property
    def count(self) -> int:
        return self.won + self.lost

    @property
    def win_rate(self) -> float:
        return safe_ratio(self.won, self.count)

    @property
    def avg_won(self) -> float:
        return mean(self.won_amounts)


class CompanyPatternMiner:
    """
    Stage 4: Compute company-level segment win rates.
    """

    def __init__(self, config: Optional[DiscoveryConfig] = None):
        self.config = config or DiscoveryConfig()

    def process(
        self,
        matrix: List[ClosedDealFeatures],
        fields: Optional[List[DiscoveredField]] = None,
        leads: Optional[List[LeadRecord]] = None,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> CompanyProfile:
        """
        Build the company profile.

        Args:
            matrix: Closed deal feature vectors
            fields: Latest custom-field discovery entries (may be empty)
            leads: Workspace leads joined to their converted deals
            log: Run logger

        Returns:
            CompanyProfile with every segment list populated
        """
        start_time = time.time()
        log = log or logger

        baseline = safe_ratio(sum(1 for deal in matrix if deal.won), len(matrix))

        industries = self._industry_win_rates(matrix)
        sizes = self._size_win_rates(matrix)
        segments = self._custom_field_segments(matrix, fields or [])
        funnel = self._lead_source_funnel(leads or [])
        sweet_spots = self._sweet_spots(baseline, industries, segments)

        log.info(
            "Company patterns: %d industries, %d size buckets, %d field segments, "
            "%d lead sources, %d sweet spots in %.1fms",
            len(industries), len(sizes), len(segments), len(funnel), len(sweet_spots),
            (time.time() - start_time) * 1000,
        )

        return CompanyProfile(
            baseline_win_rate=baseline,
            industry_win_rates=industries,
            size_win_rates=sizes,
            custom_field_segments=segments,
            lead_source_funnel=funnel,
            sweet_spots=sweet_spots,
        )

    def _industry_win_rates(self, matrix: List[ClosedDealFeatures]) -> List[IndustryWinRate]:
        """Win rate per normalized industry"""
        tallies: Dict[str, _Tally] = {}
        for deal in matrix:
            industry = deal.account.industry
            if industry:
                tallies.setdefault(industry, _Tally()).add(deal)

        rates = [
            IndustryWinRate(industry=industry, win_rate=t.win_rate, avg_deal=t.avg_won, count=t.count)
            for industry, t in tallies.items()
            if t.count >= self.config.min_segment_deals
        ]
        rates.sort(key=lambda r: r.win_rate, reverse=True)
        return rates

    def _size_win_rates(self, matrix: List[ClosedDealFeatures]) -> List[SizeWinRate]:
        """Win rate per employee-count bucket, smallest bucket first"""
        tallies: Dict[str, _Tally] = {}
        for deal in matrix:
            bucket = size_bucket(deal.account.employee_count)
            if bucket:
                tallies.setdefault(bucket, _Tally()).add(deal)

        order = [label for _, label in SIZE_BUCKETS] + [SIZE_BUCKET_OVERFLOW]
        return [
            SizeWinRate(bucket=bucket, win_rate=tallies[bucket].win_rate,
                        avg_deal=tallies[bucket].avg_won, count=tallies[bucket].count)
            for bucket in order
            if bucket in tallies and tallies[bucket].count >= self.config.min_segment_deals
        ]

    def _custom_field_segments(
        self,
        matrix: List[ClosedDealFeatures],
        fields: List[DiscoveredField],
    ) -> List[CustomFieldSegment]:
        """Win rate per value of each relevant deal or account field"""
        segments = []
        for field in fields:
            if field.entity_type not in ("deal", "account"):
                continue
            if field.icp_relevance_score < self.config.segment_field_min_relevance:
                continue

            tallies: Dict[str, _Tally] = {}
            for deal in matrix:
                source = deal.custom_fields if field.entity_type == "deal" else deal.account.custom_fields
                value = source.get(field.field_key)
                if value is None:
                    continue
                tallies.setdefault(value_key(value), _Tally()).add(deal)

            values = [
                FieldValueSegment(value=value, win_rate=t.win_rate, avg_deal=t.avg_won, count=t.count)
                for value, t in sorted(tallies.items(), key=lambda item: (-item[1].won, item[0]))
                if t.count >= self.config.min_segment_deals
            ]
            if values:
                segments.append(CustomFieldSegment(
                    field_key=field.field_key,
                    entity_type=field.entity_type,
                    field_label=field.field_key,
                    segments=values,
                ))
        return segments

    def _lead_source_funnel(self, leads: List[LeadRecord]) -> List[LeadSourceFunnel]:
        """Lead to won-deal conversion per lead source"""
        grouped: Dict[str, List[LeadRecord]] = {}
        for lead in leads:
            grouped.setdefault(lead.source or "Unknown", []).append(lead)

        funnel = []
        for source, records in grouped.items():
            total = len(records)
            if total < self.config.min_lead_source_leads:
                continue

            won_amounts: Dict[str, Optional[float]] = {}
            lost_ids = set()
            for record in records:
                if not record.deal_id:
                    continue
                if record.deal_stage == CLOSED_WON:
                    won_amounts[record.deal_id] = record.deal_amount
                elif record.deal_stage == CLOSED_LOST:
                    lost_ids.add(record.deal_id)

            converted = sum(1 for record in records if record.is_converted)
            funnel.append(LeadSourceFunnel(
                source=source,
                leads=total,
                converted=converted,
                conversion_rate=converted / total,
                won_deals=len(won_amounts),
                lost_deals=len(lost_ids),
                full_funnel_rate=len(won_amounts) / total,
                avg_won_amount=mean(a for a in won_amounts.values() if a is not None),
            ))

        funnel.sort(key=lambda f: (-f.leads, f.source))
        return funnel

    def _sweet_spots(
        self,
        baseline: float,
        industries: List[IndustryWinRate],
        segments: List[CustomFieldSegment],
    ) -> List[SweetSpot]:
        """Segments beating the baseline win rate by the sweet-spot multiplier"""
        threshold = baseline * self.config.sweet_spot_multiplier
        minimum = self.config.min_sweet_spot_deals
        spots = []

        for industry in industries:
            if industry.win_rate > threshold and industry.count >= minimum:
                spots.append(SweetSpot(
                    description=f"{industry.industry} industry",
                    win_rate=industry.win_rate,
                    avg_deal=industry.avg_deal,
                    count=industry.count,
                    lift=safe_ratio(industry.win_rate, baseline),
                ))

        for segment in segments:
            for value in segment.segments:
                if value.win_rate > threshold and value.count >= minimum:
                    spots.append(SweetSpot(
                        description=f"{segment.field_label} = {value.value}",
                        win_rate=value.win_rate,
                        avg_deal=value.avg_deal,
                        count=value.count,
                        lift=safe_ratio(value.win_rate, baseline),
                    ))

        spots.sort(key=lambda s: s.lift, reverse=True)
        return spots
