"""
Stage 2: Feature Matrix
=======================
Flattens deals and their related records into per-deal feature vectors.

- Closed deals (discovery): outcome, amount, sales cycle, account attributes,
  buying committee composition, activity counters, custom fields
- Open deals (scoring): the same joins plus threading counts, optional call
  statistics and temporal fields measured against the run timestamp
- Open contacts (scoring): each contact on an open deal with its role,
  seniority and activity on those deals

Contacts, activities and calls are fetched with one batched query per
category for the whole run. Missing related records yield zeroed fields.
"""

import logging
import re
import time
from datetime import date, datetime, time as dt_time, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.settings import (
    CONVERSATION_TIER_THRESHOLDS,
    DEPARTMENT_KEYWORDS,
    ECONOMIC_BUYER_ROLES,
    INDUSTRY_NORMALIZATION,
    POWER_ROLES,
    SENIORITY_PATTERNS,
    SENIORITY_RANK,
)
from ..models.records import ActivityStats, CallRecord, ConversationStats
from ..models.schemas import (
    AccountFeatures,
    CallMetadataFeatures,
    ClosedDealFeatures,
    CommitteeFeatures,
    ContactRoleFeatures,
    ConversationCoverage,
    ConversationFeatures,
    DealOutcome,
    EngagementFeatures,
    EnrichmentFeatures,
    OpenContactFeatures,
    OpenDealFeatures,
    ThreadingFeatures,
)
from ..storage import repositories
from ..storage.models import Account, Contact, Deal, DealContact
from ..utils import days_between, mean, safe_ratio

logger = logging.getLogger(__name__)


# =============================================================================
# Title and industry parsing
# =============================================================================

_SENIORITY_REGEXES = [(level, re.compile(pattern)) for level, pattern in SENIORITY_PATTERNS]
_DEPARTMENT_REGEXES = [
    (department, re.compile(r"\b(?:" + "|".join(keywords) + ")"))
    for department, keywords in DEPARTMENT_KEYWORDS.items()
]
_C_LEVEL_TITLE = re.compile(r"\b(chief|ceo|cto|cfo|coo|cmo|cio|ciso|cpo|cro)\b")

# Seniorities that count toward a committee's max seniority, highest first
_MAX_SENIORITY_LADDER = ["c_level", "svp", "vp", "director", "manager"]


def parse_seniority(title: Optional[str]) -> str:
    """Map a free-text job title to a seniority level."""
    if not title:
        return "unknown"
    text = title.lower()
    for level, regex in _SENIORITY_REGEXES:
        if regex.search(text):
            return level
    return "unknown"


def parse_department(
    title: Optional[str],
    custom_patterns: Optional[Dict[str, List[str]]] = None,
) -> str:
    """
    Map a free-text job title to a department.

    Args:
        title: Contact job title
        custom_patterns: Workspace overrides {department: [keyword]}, matched
            as whole words before the default keyword table

    Returns:
        Department name, or "unknown"
    """
    if not title:
        return "unknown"
    text = title.lower()

    for department, keywords in (custom_patterns or {}).items():
        for keyword in keywords:
            if re.search(r"\b" + re.escape(keyword.lower()) + r"\b", text):
                return department

    for department, regex in _DEPARTMENT_REGEXES:
        if regex.search(text):
            return department
    return "unknown"


def normalize_industry(raw: Optional[str]) -> Optional[str]:
    """Normalize CRM industry codes ("COMPUTER_SOFTWARE", "oil & gas") to display names."""
    if not raw:
        return None
    trimmed = raw.strip()
    if not trimmed:
        return None

    key = re.sub(r"[\s&,]+", "_", trimmed.lower())
    key = re.sub(r"_+", "_", key).strip("_")
    if key in INDUSTRY_NORMALIZATION:
        return INDUSTRY_NORMALIZATION[key]

    lowered = trimmed.lower()
    for normalized in INDUSTRY_NORMALIZATION.values():
        if normalized.lower() == lowered:
            return normalized

    if re.fullmatch(r"[A-Z_]+", trimmed):
        words = [word.capitalize() for word in trimmed.split("_")]
        return " ".join(words).replace(" And ", " & ")

    return trimmed[0].upper() + trimmed[1:]


def max_seniority(seniorities: Sequence[str]) -> str:
    present = set(seniorities)
    if "senior_manager" in present:
        present.add("manager")
    for level in _MAX_SENIORITY_LADDER:
        if level in present:
            return level
    return "ic"


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _account_features(account: Optional[Account]) -> AccountFeatures:
    if account is None:
        return AccountFeatures()
    return AccountFeatures(
        account_id=account.id,
        name=account.name,
        industry=normalize_industry(account.industry),
        employee_count=account.employee_count,
        annual_revenue=account.annual_revenue,
        custom_fields=repositories.normalize_custom_fields(account.custom_fields),
    )


def _engagement(stats: Optional[ActivityStats], sales_cycle_days: int = 0) -> EngagementFeatures:
    stats = stats or ActivityStats()
    velocity = safe_ratio(stats.total_activities, sales_cycle_days / 7) if sales_cycle_days > 0 else 0
    return EngagementFeatures(
        total_activities=stats.total_activities,
        emails=stats.emails,
        calls=stats.calls,
        meetings=stats.meetings,
        tasks=stats.tasks,
        active_days=stats.active_days,
        last_activity=_naive_utc(stats.last_activity),
        recent_activities=stats.recent_activities,
        engagement_velocity=velocity,
    )


def _fractional_days(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / 86400


def call_metadata(
    calls: List[CallRecord],
    created_at: Optional[datetime],
    close_date: Optional[date],
    sales_cycle_days: int,
) -> Optional[CallMetadataFeatures]:
    """Summarize a closed deal's calls, or None when it has none."""
    if not calls:
        return None
    dates = sorted(_naive_utc(call.call_date) for call in calls)
    total_minutes = sum(call.duration_seconds or 0 for call in calls) / 60

    gap_avg = None
    if len(dates) > 1:
        gap_avg = mean(_fractional_days(b, a) for a, b in zip(dates, dates[1:]))

    closed_at = datetime.combine(close_date, dt_time.min) if close_date else None
    return CallMetadataFeatures(
        call_count=len(calls),
        total_call_minutes=total_minutes,
        avg_call_duration_minutes=total_minutes / len(calls),
        days_between_calls_avg=gap_avg,
        first_call_timing=_fractional_days(dates[0], created_at) if created_at else None,
        last_call_to_close=_fractional_days(closed_at, dates[-1]) if closed_at else None,
        call_density=len(calls) / sales_cycle_days if sales_cycle_days > 0 else 0,
    )


def conversation_coverage(matrix: List[ClosedDealFeatures]) -> ConversationCoverage:
    """Share of closed deals with linked calls, bucketed into a tier 0-3."""
    with_calls = [d for d in matrix if d.calls is not None]
    total_calls = sum(d.calls.call_count for d in with_calls)
    coverage_pct = safe_ratio(len(with_calls), len(matrix)) * 100

    low, high = CONVERSATION_TIER_THRESHOLDS
    if coverage_pct == 0:
        tier = 0
    elif coverage_pct < low:
        tier = 1
    elif coverage_pct < high:
        tier = 2
    else:
        tier = 3

    return ConversationCoverage(
        deals_with_conversations=len(with_calls),
        deals_without_conversations=len(matrix) - len(with_calls),
        coverage_pct=coverage_pct,
        total_conversations=total_calls,
        avg_conversations_per_deal=safe_ratio(total_calls, len(with_calls)),
        tier=tier,
    )


# =============================================================================
# Feature matrix builder
# =============================================================================

class FeatureMatrixBuilder:
    """
    Stage 2: Build closed and open feature matrices for one workspace.
    """

    def __init__(self, chunk_size: int = repositories.QUERY_CHUNK_SIZE, recent_window_days: int = 14):
        self.chunk_size = chunk_size
        self.recent_window_days = recent_window_days

    # -------------------------------------------------------------------------
    # Closed deals
    # -------------------------------------------------------------------------

    def build_closed(
        self,
        session: Session,
        workspace_id: str,
        log: Optional[logging.LoggerAdapter] = None,
        as_of: Optional[datetime] = None,
    ) -> List[ClosedDealFeatures]:
        """
        Build feature vectors for every closed deal in the workspace.

        Args:
            session: Database session
            workspace_id: Workspace to read
            log: Run logger
            as_of: Reference time for recency counters (default: now)

        Returns:
            One ClosedDealFeatures per closed deal, most recently closed first
        """
        start_time = time.time()
        log = log or logger
        as_of = as_of or datetime.utcnow()

        department_patterns = repositories.get_department_patterns(session, workspace_id)
        if department_patterns:
            log.info("Using %d custom department patterns", len(department_patterns))

        deals = repositories.get_closed_deals(session, workspace_id)
        deal_ids = [deal.id for deal, _ in deals]
        contacts_by_deal = repositories.get_deal_contacts(
            session, workspace_id, deal_ids, chunk_size=self.chunk_size
        )
        activity_by_deal = repositories.get_activity_stats(
            session, workspace_id, deal_ids, as_of,
            recent_days=self.recent_window_days, chunk_size=self.chunk_size,
        )
        calls_by_deal = self._load_closed_calls(session, workspace_id, deal_ids, log) or {}

        matrix = [
            self.closed_vector(
                deal,
                account,
                contacts_by_deal.get(deal.id, []),
                activity_by_deal.get(deal.id),
                department_patterns,
                calls_by_deal.get(deal.id),
            )
            for deal, account in deals
        ]

        log.info(
            "Built closed feature matrix: %d deals (%d won), %d with contacts, %d with calls in %.1fms",
            len(matrix),
            sum(1 for d in matrix if d.won),
            sum(1 for d in matrix if d.committee.size > 0),
            sum(1 for d in matrix if d.calls is not None),
            (time.time() - start_time) * 1000,
        )
        return matrix

    def _load_closed_calls(
        self,
        session: Session,
        workspace_id: str,
        deal_ids: List[str],
        log: logging.LoggerAdapter,
    ) -> Optional[Dict[str, List[CallRecord]]]:
        """Load linked calls for closed deals; a failing lookup is logged and treated as no calls"""
        try:
            calls = repositories.get_deal_calls(session, workspace_id, deal_ids, chunk_size=self.chunk_size)
        except SQLAlchemyError as exc:
            log.warning("Conversation lookup failed, skipping call metadata: %s", exc)
            return None
        if calls is None:
            log.debug("No conversations table, skipping call metadata for closed deals")
        return calls

    def closed_vector(
        self,
        deal: Deal,
        account: Optional[Account],
        contact_rows: List[Tuple[DealContact, Contact]],
        activity: Optional[ActivityStats],
        department_patterns: Optional[Dict[str, List[str]]] = None,
        calls: Optional[List[CallRecord]] = None,
    ) -> ClosedDealFeatures:
        """Assemble one closed-deal vector from its already-loaded records."""
        created = _naive_utc(deal.created_at)
        sales_cycle_days = 0
        if deal.close_date and created:
            sales_cycle_days = (deal.close_date - created.date()).days

        roles = self._contact_roles(contact_rows, department_patterns)
        committee = self._committee(roles)

        enriched = [r for r in roles if r.enriched]
        role_tagged = [r for r in roles if r.buying_role]
        c_level_present = any(
            dc.seniority_verified == "c_level"
            or (not dc.seniority_verified and bool(_C_LEVEL_TITLE.search((contact.title or "").lower())))
            for dc, contact in contact_rows
        )

        return ClosedDealFeatures(
            deal_id=deal.id,
            deal_name=deal.name,
            outcome=DealOutcome.WON if deal.stage_normalized == repositories.CLOSED_WON else DealOutcome.LOST,
            amount=float(deal.amount or 0),
            sales_cycle_days=sales_cycle_days,
            owner=deal.owner,
            close_date=deal.close_date,
            account=_account_features(account),
            committee=committee,
            engagement=_engagement(activity, sales_cycle_days),
            enrichment=EnrichmentFeatures(
                has_enrichment_data=bool(enriched),
                roles_identified=len(role_tagged),
                decision_maker_count=sum(1 for r in roles if r.buying_role == "decision_maker"),
                c_level_present=c_level_present,
                buying_committee_complete=len(roles) >= 3 and len(role_tagged) >= 3,
            ),
            calls=call_metadata(calls or [], created, deal.close_date, sales_cycle_days),
            custom_fields=repositories.normalize_custom_fields(deal.custom_fields),
        )

    def _contact_roles(
        self,
        contact_rows: List[Tuple[DealContact, Contact]],
        department_patterns: Optional[Dict[str, List[str]]],
    ) -> List[ContactRoleFeatures]:
        """Resolve seniority/department per contact, preferring verified values"""
        roles = []
        for deal_contact, contact in contact_rows:
            roles.append(ContactRoleFeatures(
                contact_id=contact.id,
                title=contact.title or None,
                buying_role=deal_contact.buying_role or None,
                seniority=deal_contact.seniority_verified or parse_seniority(contact.title),
                department=deal_contact.department_verified or parse_department(contact.title, department_patterns),
                enriched=deal_contact.enrichment_status == "enriched",
            ))
        return roles

    def _committee(self, roles: List[ContactRoleFeatures]) -> CommitteeFeatures:
        """Summarize buying committee composition"""
        buying_roles = [r.buying_role for r in roles if r.buying_role]
        role_set = set(buying_roles)
        return CommitteeFeatures(
            size=len(roles),
            contacts=roles,
            titles=[r.title for r in roles if r.title],
            buying_roles=buying_roles,
            unique_roles=len(role_set),
            has_champion="champion" in role_set,
            has_economic_buyer=bool(role_set & set(ECONOMIC_BUYER_ROLES)),
            has_decision_maker="decision_maker" in role_set,
            has_technical_evaluator="technical_evaluator" in role_set,
            max_seniority=max_seniority([r.seniority for r in roles]),
        )

    # -------------------------------------------------------------------------
    # Open deals and contacts
    # -------------------------------------------------------------------------

    def build_open(
        self,
        session: Session,
        workspace_id: str,
        as_of: Optional[datetime] = None,
        include_conversations: bool = False,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> Tuple[List[OpenDealFeatures], List[OpenContactFeatures]]:
        """
        Build feature vectors for open deals and the contacts attached to them.

        Args:
            session: Database session
            workspace_id: Workspace to read
            as_of: Reference time for temporal fields (default: now)
            include_conversations: Load call statistics for each deal
            log: Run logger

        Returns:
            (open deal vectors, open contact vectors)
        """
        start_time = time.time()
        log = log or logger
        as_of = as_of or datetime.utcnow()

        department_patterns = repositories.get_department_patterns(session, workspace_id)
        deals = repositories.get_open_deals(session, workspace_id)
        deal_ids = [deal.id for deal, _ in deals]

        contacts_by_deal = repositories.get_deal_contacts(
            session, workspace_id, deal_ids, chunk_size=self.chunk_size
        )
        activity_by_deal = repositories.get_activity_stats(
            session, workspace_id, deal_ids, as_of,
            recent_days=self.recent_window_days, chunk_size=self.chunk_size,
        )
        contact_activity = repositories.get_contact_activity_counts(
            session, workspace_id, deal_ids, chunk_size=self.chunk_size
        )

        calls_by_deal: Optional[Dict[str, ConversationStats]] = None
        if include_conversations:
            calls_by_deal = self._load_conversations(session, workspace_id, deal_ids, as_of, log)

        deal_vectors = [
            self.open_deal_vector(
                deal,
                account,
                contacts_by_deal.get(deal.id, []),
                activity_by_deal.get(deal.id),
                calls_by_deal,
                as_of,
                department_patterns,
            )
            for deal, account in deals
        ]
        contact_vectors = self.open_contact_vectors(contacts_by_deal, contact_activity)

        log.info(
            "Built open feature matrix: %d deals (%d with activity, %d with contacts), "
            "%d contacts in %.1fms",
            len(deal_vectors),
            sum(1 for d in deal_vectors if d.engagement.total_activities > 0),
            sum(1 for d in deal_vectors if d.threading.total_contacts > 0),
            len(contact_vectors),
            (time.time() - start_time) * 1000,
        )
        return deal_vectors, contact_vectors

    def _load_conversations(
        self,
        session: Session,
        workspace_id: str,
        deal_ids: List[str],
        as_of: datetime,
        log: logging.LoggerAdapter,
    ) -> Optional[Dict[str, ConversationStats]]:
        """Load call stats; a failing lookup is logged and treated as no calls"""
        try:
            stats = repositories.get_conversation_stats(
                session, workspace_id, deal_ids, as_of,
                recent_days=self.recent_window_days, chunk_size=self.chunk_size,
            )
        except SQLAlchemyError as exc:
            log.warning("Conversation lookup failed, skipping call signals: %s", exc)
            return None
        if stats is None:
            log.debug("No conversations table, skipping call signals for all deals")
        return stats

    def open_deal_vector(
        self,
        deal: Deal,
        account: Optional[Account],
        contact_rows: List[Tuple[DealContact, Contact]],
        activity: Optional[ActivityStats],
        calls_by_deal: Optional[Dict[str, ConversationStats]],
        as_of: datetime,
        department_patterns: Optional[Dict[str, List[str]]] = None,
    ) -> OpenDealFeatures:
        """Assemble one open-deal vector from its already-loaded records."""
        roles = self._contact_roles(contact_rows, department_patterns)
        buying_roles = [r.buying_role for r in roles if r.buying_role]
        engagement = _engagement(activity)

        conversations = None
        if calls_by_deal is not None:
            call_stats = calls_by_deal.get(deal.id) or ConversationStats()
            conversations = ConversationFeatures(
                total_calls=call_stats.total_calls,
                last_call=_naive_utc(call_stats.last_call),
                avg_duration_seconds=call_stats.avg_duration_seconds,
                recent_calls=call_stats.recent_calls,
            )

        created = _naive_utc(deal.created_at)
        close_at = datetime.combine(deal.close_date, dt_time.min) if deal.close_date else None

        return OpenDealFeatures(
            deal_id=deal.id,
            deal_name=deal.name,
            amount=deal.amount,
            stage=deal.stage_normalized,
            close_date=deal.close_date,
            probability=deal.probability,
            owner=deal.owner,
            created_at=created,
            account=_account_features(account),
            custom_fields=repositories.normalize_custom_fields(deal.custom_fields),
            engagement=engagement,
            threading=ThreadingFeatures(
                total_contacts=len(roles),
                unique_roles=len(set(buying_roles)),
                power_contacts=sum(1 for role in buying_roles if role in POWER_ROLES),
                champions=sum(1 for role in buying_roles if role == "champion"),
                roles_present=sorted(set(buying_roles)),
                persona_keys=sorted({r.persona_key for r in roles}),
            ),
            conversations=conversations,
            days_since_creation=max(0, days_between(as_of, created) or 0),
            days_until_close=days_between(close_at, as_of),
            days_since_last_activity=days_between(as_of, engagement.last_activity),
        )

    def open_contact_vectors(
        self,
        contacts_by_deal: Dict[str, List[Tuple[DealContact, Contact]]],
        contact_activity: Dict[Tuple[str, str], int],
    ) -> List[OpenContactFeatures]:
        """Collapse contact-role rows into one vector per contact."""
        vectors: Dict[str, OpenContactFeatures] = {}
        verified: Dict[str, str] = {}
        for deal_id, rows in contacts_by_deal.items():
            for deal_contact, contact in rows:
                vector = vectors.get(contact.id)
                if vector is None:
                    vector = OpenContactFeatures(
                        contact_id=contact.id,
                        first_name=contact.first_name,
                        last_name=contact.last_name,
                        email=contact.email or None,
                        phone=contact.phone or None,
                        title=contact.title or None,
                        seniority=parse_seniority(contact.title),
                    )
                    vectors[contact.id] = vector

                # Verified seniority replaces the parsed one; across deals the highest verified wins
                if deal_contact.seniority_verified:
                    best = _higher_seniority(verified.get(contact.id), deal_contact.seniority_verified)
                    verified[contact.id] = vector.seniority = best
                vector.buying_role = _stronger_role(vector.buying_role, deal_contact.buying_role)
                if deal_id not in vector.deal_ids:
                    vector.deal_ids.append(deal_id)
                    vector.activities_on_deals += contact_activity.get((contact.id, deal_id), 0)

        return sorted(vectors.values(), key=lambda v: v.contact_id)


def _stronger_role(current: Optional[str], candidate: Optional[str]) -> Optional[str]:
    if not candidate:
        return current
    if not current:
        return candidate
    if candidate in POWER_ROLES and current not in POWER_ROLES:
        return candidate
    return current


def _higher_seniority(current: Optional[str], candidate: str) -> str:
    if current is None or SENIORITY_RANK.get(candidate, 0) >= SENIORITY_RANK.get(current, 0):
        return candidate
    return current
