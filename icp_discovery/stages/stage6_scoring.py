"""
Stage 6: Point-Based Lead Scoring
=================================
Scores open deals and the contacts on them against fixed point dimensions.

Deal dimensions:
- Engagement: recent activity, volume, channels, active days
- Threading: contacts, champion, economic buyer, role diversity
- Deal quality: amount, amount tier, probability, stage, close date
- Velocity: inactivity penalty, age of the deal
- Conversations: only when a call-platform connector is installed

Custom-field dimensions are appended per discovered field the record has a
value for, and an active ICP profile adds company size, industry, persona
fit, committee and lead-source dimensions. Total = round(100 x points / sum
of |max weight|), clamped to [0, 100].
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..config.settings import (
    AMOUNT_TIER_FLOOR,
    AMOUNT_TIERS,
    CONVERSATION_DIMENSIONS,
    CUSTOM_FIELD_DIMENSION_WEIGHT,
    GRADE_MAPPING,
    HIGH_SENIORITY,
    ICP_COMMITTEE_LIFT_POINTS,
    ICP_COMMITTEE_MIN_LIFT,
    ICP_COMMITTEE_WEIGHT,
    ICP_COMPANY_SIZE_WEIGHT,
    ICP_DEFAULT_BASELINE,
    ICP_INDUSTRY_WEIGHT,
    ICP_LEAD_SOURCE_WEIGHT,
    ICP_PERSONA_FIT_WEIGHT,
    ICP_SEGMENT_LIFT_POINTS,
    LEAD_SOURCE_FIELD_KEYS,
    POWER_ROLES,
    SCORING_ECONOMIC_BUYER_ROLES,
)
from ..models.icp_config import ScoringConfig
from ..models.records import DiscoveredField
from ..models.schemas import (
    CustomFieldContribution,
    CustomFieldWeight,
    EntityType,
    Grade,
    ICPProfile,
    LeadScore,
    OpenContactFeatures,
    OpenDealFeatures,
    RankedDeal,
    RepScore,
    ScoreComponent,
    ScoreMover,
    ScoringMethod,
    ScoringSummary,
)
from ..utils import clamp, mean, round_half_up, safe_ratio, value_key
from .stage4_company import size_bucket
from .stage5_weights import persona_weight_key

logger = logging.getLogger(__name__)

BOTTOM_DEAL_MIN_AMOUNT = 10000
MOVER_MIN_CHANGE = 10


def map_to_grade(score: int) -> Grade:
    for low, _high, grade, _label in GRADE_MAPPING:
        if score >= low:
            return Grade(grade)
    return Grade.F


def normalize_points(points: float, max_possible: float) -> int:
    if max_possible <= 0:
        return 0
    return int(clamp(round_half_up(points / max_possible * 100), 0, 100))


def build_custom_field_weights(
    fields: List[DiscoveredField],
    min_relevance: float,
    max_points: int = CUSTOM_FIELD_DIMENSION_WEIGHT,
) -> List[CustomFieldWeight]:
    """
    Convert custom-field discovery entries into per-value scoring points.

    Fields below min_relevance, lead fields, fields without a win-rate table
    and fields whose best value never won are skipped.
    """
    weights = []
    for field in fields:
        if field.icp_relevance_score < min_relevance:
            continue
        if field.entity_type not in ("deal", "account"):
            continue
        if not field.win_rate_by_value:
            continue
        best = max(stats.win_rate for stats in field.win_rate_by_value.values())
        if best <= 0:
            continue
        weights.append(CustomFieldWeight(
            field_key=field.field_key,
            entity_type=field.entity_type,
            value_scores={
                value: round_half_up(stats.win_rate / best * max_points)
                for value, stats in field.win_rate_by_value.items()
            },
            max_points=max_points,
        ))
    return weights


def custom_field_dimension_keys(field_weights: List[CustomFieldWeight]) -> List[str]:
    """
    Breakdown key per custom-field weight, in order.

    A field is keyed custom_<field>; a later field reusing an earlier key
    gets custom_<entity type>_<field>. Keys depend only on the weight list,
    so every deal in a run uses the same key for the same field.
    """
    keys: List[str] = []
    for cfw in field_weights:
        key = f"custom_{cfw.field_key}"
        if key in keys:
            key = f"custom_{cfw.entity_type}_{cfw.field_key}"
        keys.append(key)
    return keys


class _Breakdown:
    """Accumulates dimensions for one record"""

    def __init__(self):
        self.components: Dict[str, ScoreComponent] = {}
        self.points = 0.0
        self.max_possible = 0.0

    def add(self, key: str, value, points: float, weight: float):
        self.components[key] = ScoreComponent(value=value, points=points, weight=weight)
        self.points += points
        self.max_possible += abs(weight)

    @property
    def total(self) -> int:
        return normalize_points(self.points, self.max_possible)


class PointBasedScorer:
    """
    Stage 6: Score open deals, then the contacts attached to them.
    """

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def process(
        self,
        deals: List[OpenDealFeatures],
        contacts: List[OpenContactFeatures],
        field_weights: Optional[List[CustomFieldWeight]] = None,
        has_conversation_connector: bool = False,
        profile: Optional[ICPProfile] = None,
        as_of: Optional[datetime] = None,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> Tuple[List[LeadScore], List[LeadScore]]:
        """
        Score every deal, then every contact.

        Args:
            deals: Open deal feature vectors
            contacts: Open contact feature vectors
            field_weights: Custom-field value points
            has_conversation_connector: Evaluate call dimensions
            profile: Active ICP profile, if the workspace has one
            as_of: Scoring timestamp (default: now)
            log: Run logger

        Returns:
            (deal scores, contact scores)
        """
        start_time = time.time()
        log = log or logger
        as_of = as_of or datetime.utcnow()
        field_weights = field_weights or []

        deal_scores = [
            self.score_deal(deal, field_weights, has_conversation_connector, profile, as_of)
            for deal in deals
        ]
        by_deal = {score.entity_id: score.total_score for score in deal_scores}
        contact_scores = [self.score_contact(contact, by_deal, as_of) for contact in contacts]

        log.info(
            "Scored %d deals and %d contacts (avg deal score %d) in %.1fms",
            len(deal_scores),
            len(contact_scores),
            round_half_up(mean(s.total_score for s in deal_scores)),
            (time.time() - start_time) * 1000,
        )
        return deal_scores, contact_scores

    # -------------------------------------------------------------------------
    # Deals
    # -------------------------------------------------------------------------

    def score_deal(
        self,
        deal: OpenDealFeatures,
        field_weights: List[CustomFieldWeight],
        has_conversation_connector: bool,
        profile: Optional[ICPProfile] = None,
        as_of: Optional[datetime] = None,
    ) -> LeadScore:
        """
        Score one open deal.

        Args:
            deal: Open deal feature vector
            field_weights: Custom-field value points
            has_conversation_connector: Evaluate call dimensions
            profile: Active ICP profile whose weights add icp_* dimensions
            as_of: Scoring timestamp

        Returns:
            LeadScore with one breakdown entry per evaluated dimension
        """
        as_of = as_of or datetime.utcnow()
        breakdown = _Breakdown()

        for dimension, weight in self.config.deal_weights.items():
            if dimension in CONVERSATION_DIMENSIONS and not has_conversation_connector:
                continue
            value, points = self._evaluate_deal_dimension(dimension, deal, weight, as_of)
            breakdown.add(dimension, value, points, weight)

        for cfw, key in zip(field_weights, custom_field_dimension_keys(field_weights)):
            source = deal.custom_fields if cfw.entity_type == "deal" else deal.account.custom_fields
            value = source.get(cfw.field_key)
            if value is None:
                continue
            breakdown.add(key, value, cfw.value_scores.get(value_key(value), 0), cfw.max_points)

        use_profile = profile is not None and self.config.use_active_profile
        if use_profile:
            self._add_profile_dimensions(breakdown, deal, profile)

        total = breakdown.total
        return LeadScore(
            entity_type=EntityType.DEAL,
            entity_id=deal.deal_id,
            total_score=total,
            score_breakdown=breakdown.components,
            score_grade=map_to_grade(total),
            scoring_method=ScoringMethod.ICP_POINT_BASED if use_profile else ScoringMethod.POINT_BASED,
            icp_profile_id=profile.id if use_profile else None,
            scored_at=as_of,
        )

    def _add_profile_dimensions(self, breakdown: _Breakdown, deal: OpenDealFeatures, profile: ICPProfile):
        """
        Dimensions from an active profile.

        Company size and industry earn points for win-rate lift over the
        profile baseline and are added only when the deal falls in a known
        segment. Persona fit sums persona weights. The committee bonus comes
        from the first strong combo fully present on the deal, and lead
        source points scale with the source's full-funnel rate.
        """
        company = profile.company_profile
        baseline = (
            company.baseline_win_rate
            or safe_ratio(profile.won_deals, profile.deals_analyzed)
            or ICP_DEFAULT_BASELINE
        )

        bucket = size_bucket(deal.account.employee_count)
        size_rate = next((s for s in company.size_win_rates if s.bucket == bucket), None)
        if bucket and size_rate:
            breakdown.add(
                "icp_company_size",
                bucket,
                _lift_points(size_rate.win_rate / baseline, ICP_SEGMENT_LIFT_POINTS, ICP_COMPANY_SIZE_WEIGHT),
                ICP_COMPANY_SIZE_WEIGHT,
            )

        industry = deal.account.industry
        industry_rate = None
        if industry:
            industry_rate = next(
                (r for r in company.industry_win_rates if r.industry.lower() == industry.lower()), None
            )
        if industry_rate:
            breakdown.add(
                "icp_industry",
                industry,
                _lift_points(industry_rate.win_rate / baseline, ICP_SEGMENT_LIFT_POINTS, ICP_INDUSTRY_WEIGHT),
                ICP_INDUSTRY_WEIGHT,
            )

        weights = profile.scoring_weights
        if weights.personas:
            matched = []
            points = 0
            for persona_key in deal.threading.persona_keys:
                seniority, _, department = persona_key.partition("__")
                weight = weights.personas.get(persona_weight_key(seniority, department), 0)
                if weight:
                    matched.append(persona_key)
                    points += weight
            breakdown.add(
                "icp_persona_fit",
                ", ".join(matched),
                min(ICP_PERSONA_FIT_WEIGHT, points),
                ICP_PERSONA_FIT_WEIGHT,
            )

        present = set(deal.threading.persona_keys)
        combo = next(
            (
                c for c in profile.buying_committees
                if c.lift >= ICP_COMMITTEE_MIN_LIFT and c.personas and set(c.personas) <= present
            ),
            None,
        )
        if combo:
            breakdown.add(
                "icp_committee",
                " + ".join(combo.persona_names),
                _lift_points(combo.lift, ICP_COMMITTEE_LIFT_POINTS, ICP_COMMITTEE_WEIGHT),
                ICP_COMMITTEE_WEIGHT,
            )

        source = _lead_source(deal)
        top_rate = max((f.full_funnel_rate for f in company.lead_source_funnel), default=0)
        if source and top_rate > 0:
            funnel = next((f for f in company.lead_source_funnel if f.source.lower() == source), None)
            points = round_half_up(funnel.full_funnel_rate / top_rate * ICP_LEAD_SOURCE_WEIGHT) if funnel else 0
            if points:
                breakdown.add("icp_lead_source", source, points, ICP_LEAD_SOURCE_WEIGHT)

    def _evaluate_deal_dimension(
        self,
        dimension: str,
        deal: OpenDealFeatures,
        weight: int,
        as_of: datetime,
    ):
        """Return (raw value, points) for one deal dimension"""
        cfg = self.config
        engagement = deal.engagement
        threading = deal.threading
        calls = deal.conversations.total_calls if deal.conversations else 0

        if dimension == "has_recent_activity":
            return engagement.recent_activities, weight if engagement.recent_activities > 0 else 0

        if dimension == "activity_volume":
            return engagement.total_activities, min(weight, engagement.total_activities // cfg.activities_per_point)

        if dimension == "multi_channel":
            channels = sum(1 for count in (engagement.emails, engagement.calls, engagement.meetings) if count > 0)
            share = {3: 1.0, 2: 0.6, 1: 0.2}.get(channels, 0)
            return channels, round_half_up(weight * share)

        if dimension == "active_days":
            return engagement.active_days, min(weight, engagement.active_days // cfg.active_days_per_point)

        if dimension == "multi_threaded":
            contacts = threading.total_contacts
            share = 1.0 if contacts >= 3 else 0.5 if contacts == 2 else 0
            return contacts, round_half_up(weight * share)

        if dimension == "has_champion":
            return threading.champions, weight if threading.champions > 0 else 0

        if dimension == "has_economic_buyer":
            present = any(role in SCORING_ECONOMIC_BUYER_ROLES for role in threading.roles_present)
            return present, weight if present else 0

        if dimension == "role_diversity":
            roles = threading.unique_roles
            share = 1.0 if roles >= 3 else 0.5 if roles == 2 else 0
            return roles, round_half_up(weight * share)

        if dimension == "amount_present":
            return deal.amount, weight if deal.amount and deal.amount > 0 else 0

        if dimension == "amount_tier":
            if not deal.amount or deal.amount <= 0:
                return 0, 0
            share = AMOUNT_TIER_FLOOR
            for minimum, tier_share in AMOUNT_TIERS:
                if deal.amount >= minimum:
                    share = tier_share
                    break
            return deal.amount, round_half_up(weight * share)

        if dimension == "probability":
            if not deal.probability:
                return deal.probability, 0
            return deal.probability, round_half_up(deal.probability / 100 * weight)

        if dimension == "stage_advanced":
            if deal.stage not in cfg.stage_order:
                return deal.stage, 0
            index = cfg.stage_order.index(deal.stage)
            last = max(len(cfg.stage_order) - 1, 1)
            return deal.stage, round_half_up(index / last * weight)

        if dimension == "close_date_set":
            return deal.close_date is not None, weight if deal.close_date else 0

        if dimension == "close_date_reasonable":
            days = deal.days_until_close
            reasonable = days is not None and 0 < days < cfg.close_horizon_days
            return reasonable, weight if reasonable else 0

        if dimension == "days_since_activity":
            days = deal.days_since_last_activity
            if days is None:
                return None, weight
            weeks = max(0, days // 7)
            return days, max(weight, cfg.penalties.inactivity_points_per_week * weeks)

        if dimension == "stage_velocity":
            age = deal.days_since_creation
            share = 1.0 if age < cfg.velocity_fast_days else 0.5 if age < cfg.velocity_slow_days else 0
            return age, round_half_up(weight * share)

        if dimension == "has_calls":
            return calls, weight if calls > 0 else 0

        if dimension == "recent_call":
            last_call = deal.conversations.last_call if deal.conversations else None
            recent = last_call is not None and as_of - last_call < timedelta(days=cfg.recent_window_days)
            return recent, weight if recent else 0

        if dimension == "call_volume":
            return calls, weight if calls >= cfg.min_call_volume else 0

        if dimension == "no_calls_late_stage":
            flagged = deal.stage in cfg.penalties.late_stages and calls == 0
            penalty = cfg.penalties.no_calls_late_stage_points
            return flagged, (penalty if penalty is not None else weight) if flagged else 0

        logger.warning("Unknown deal dimension %s scored as 0", dimension)
        return None, 0

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def score_contact(
        self,
        contact: OpenContactFeatures,
        deal_scores: Dict[str, int],
        as_of: Optional[datetime] = None,
    ) -> LeadScore:
        """
        Score one contact using its own attributes and its deals' scores.

        Args:
            contact: Open contact feature vector
            deal_scores: Total score per deal id from this run
            as_of: Scoring timestamp

        Returns:
            LeadScore for the contact
        """
        cfg = self.config
        weights = cfg.contact_weights
        breakdown = _Breakdown()

        def flag(key: str, present: bool):
            weight = weights.get(key, 0)
            breakdown.add(key, present, weight if present else 0, weight)

        flag("has_email", bool(contact.email))
        flag("has_phone", bool(contact.phone))
        flag("has_title", bool(contact.title))
        flag("role_assigned", bool(contact.buying_role))
        flag("is_power_role", contact.buying_role in POWER_ROLES)
        flag("seniority_high", contact.seniority in HIGH_SENIORITY)

        weight = weights.get("activity_on_deals", 0)
        breakdown.add(
            "activity_on_deals",
            contact.activities_on_deals,
            min(weight, contact.activities_on_deals * cfg.contact_activity_points),
            weight,
        )

        weight = weights.get("multi_deal_contact", 0)
        deal_count = len(contact.deal_ids)
        breakdown.add("multi_deal_contact", deal_count, weight if deal_count >= 2 else 0, weight)

        weight = weights.get("deal_quality", 0)
        scored = [deal_scores[deal_id] for deal_id in contact.deal_ids if deal_id in deal_scores]
        best = max(scored) if scored else None
        breakdown.add(
            "deal_quality",
            best,
            round_half_up(best / 100 * weight) if best else 0,
            weight,
        )

        total = breakdown.total
        return LeadScore(
            entity_type=EntityType.CONTACT,
            entity_id=contact.contact_id,
            total_score=total,
            score_breakdown=breakdown.components,
            score_grade=map_to_grade(total),
            scoring_method=ScoringMethod.POINT_BASED,
            scored_at=as_of or datetime.utcnow(),
        )

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def summarize(
        self,
        deals: List[OpenDealFeatures],
        deal_scores: List[LeadScore],
        contact_scores: List[LeadScore],
        field_weights: Optional[List[CustomFieldWeight]] = None,
    ) -> ScoringSummary:
        """
        Aggregate statistics over a scoring run.

        Movers use previous_score and score_change, so call this after the
        scores have been persisted.
        """
        deals_by_id = {deal.deal_id: deal for deal in deals}
        summary = ScoringSummary(total_deals=len(deal_scores), total_contacts=len(contact_scores))

        for score in deal_scores:
            summary.grade_distribution[score.score_grade.value] += 1
        summary.avg_deal_score = round_half_up(mean(s.total_score for s in deal_scores))

        ranked = sorted(
            (
                RankedDeal(
                    id=s.entity_id,
                    name=_deal_name(deals_by_id.get(s.entity_id)),
                    score=s.total_score,
                    grade=s.score_grade,
                )
                for s in deal_scores
            ),
            key=lambda r: r.score,
            reverse=True,
        )
        summary.top_deals = ranked[:10]
        sizable = [
            r for r in ranked
            if (deals_by_id[r.id].amount or 0) > BOTTOM_DEAL_MIN_AMOUNT
        ]
        summary.bottom_deals = list(reversed(sizable[-5:]))

        movers = [
            ScoreMover(
                id=s.entity_id,
                name=_deal_name(deals_by_id.get(s.entity_id)),
                change=s.score_change or 0,
                previous=s.previous_score or 0,
                current=s.total_score,
            )
            for s in deal_scores
            if abs(s.score_change or 0) > MOVER_MIN_CHANGE
        ]
        movers.sort(key=lambda m: abs(m.change), reverse=True)
        summary.movers = movers[:5]

        totals: Dict[str, List[int]] = {}
        scores_by_id = {s.entity_id: s.total_score for s in deal_scores}
        for deal in deals:
            owner = deal.owner or "Unknown"
            bucket = totals.setdefault(owner, [])
            if deal.deal_id in scores_by_id:
                bucket.append(scores_by_id[deal.deal_id])
        summary.rep_scores = {
            owner: RepScore(avg_score=round_half_up(mean(values)), deal_count=len(values))
            for owner, values in totals.items()
        }

        summary.custom_field_contributions = self._field_contributions(deal_scores, field_weights or [])
        return summary

    def _field_contributions(
        self,
        deal_scores: List[LeadScore],
        field_weights: List[CustomFieldWeight],
    ) -> List[CustomFieldContribution]:
        """Average points per custom field and its best-scoring value"""
        contributions = []
        for cfw, key in zip(field_weights, custom_field_dimension_keys(field_weights)):
            components = [s.score_breakdown[key] for s in deal_scores if key in s.score_breakdown]
            if not components:
                continue

            by_value: Dict[str, List[float]] = {}
            for component in components:
                by_value.setdefault(value_key(component.value), []).append(component.points)

            top_value, top_score = "", 0.0
            for value, points in by_value.items():
                avg = mean(points)
                if avg > top_score:
                    top_value, top_score = value, avg

            contributions.append(CustomFieldContribution(
                field_key=cfw.field_key,
                entity_type=cfw.entity_type,
                avg_points=round_half_up(mean(c.points for c in components) * 10) / 10,
                top_value=top_value,
                top_value_score=round_half_up(top_score * 10) / 10,
            ))
        return contributions


def _deal_name(deal: Optional[OpenDealFeatures]) -> str:
    return (deal.deal_name if deal else None) or ""


def _lift_points(lift: float, per_unit: float, cap: int) -> int:
    """Points for lift above 1.0, capped at the dimension weight"""
    return min(cap, round_half_up(max(0.0, (lift - 1) * per_unit)))


def _lead_source(deal: OpenDealFeatures) -> Optional[str]:
    for key in LEAD_SOURCE_FIELD_KEYS:
        value = deal.custom_fields.get(key)
        if value not in (None, ""):
            return str(value).strip().lower()
    return None
