"""Read-only repositories over the CRM tables.

Every query is scoped to one workspace. Per-deal lookups take the full set
of deal ids for the run and issue one query per chunk of ids.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import and_, case, distinct, func, inspect, select
from sqlalchemy.orm import Session

from ..config.settings import QUERY_CHUNK_SIZE
from ..models.records import (
    ActivityStats,
    CallRecord,
    ClosedCorpusCounts,
    ConversationStats,
    DiscoveredField,
    FieldDiscoveryResult,
    LeadRecord,
)
from ..models.schemas import CustomFields
from .models import (
    Account,
    Activity,
    Connection,
    Contact,
    Conversation,
    CustomFieldDiscovery,
    Deal,
    DealContact,
    Lead,
    WorkspaceConfig,
)

logger = logging.getLogger(__name__)

CLOSED_WON = "closed_won"
CLOSED_LOST = "closed_lost"
CLOSED_STAGES = (CLOSED_WON, CLOSED_LOST)


def _chunks(ids: Sequence[str], size: int) -> Iterator[List[str]]:
    ids = list(ids)
    for start in range(0, len(ids), size):
        yield ids[start:start + size]


def normalize_custom_fields(raw: Optional[Dict[str, Any]]) -> CustomFields:
    """Coerce a stored custom-field blob into scalar values.

    Nulls are dropped and nested values are serialized to JSON text.
    """
    fields: CustomFields = {}
    for key, value in (raw or {}).items():
        if value is None:
            continue
        if isinstance(value, (bool, int, float, str)):
            fields[str(key)] = value
        else:
            fields[str(key)] = json.dumps(value, sort_keys=True, default=str)
    return fields


# ---------------------------------------------------------------------------
# Corpus counts
# ---------------------------------------------------------------------------


def count_closed_corpus(session: Session, workspace_id: str) -> ClosedCorpusCounts:
    """Return won/lost deal counts plus contact-role coverage of closed deals."""
    outcome_rows = session.execute(
        select(Deal.stage_normalized, func.count(distinct(Deal.id)))
        .where(Deal.workspace_id == workspace_id, Deal.stage_normalized.in_(CLOSED_STAGES))
        .group_by(Deal.stage_normalized)
    ).all()
    by_stage = {stage: count for stage, count in outcome_rows}

    role_row = session.execute(
        select(func.count(distinct(DealContact.id)), func.count(distinct(DealContact.contact_id)))
        .select_from(DealContact)
        .join(Deal, and_(Deal.id == DealContact.deal_id, Deal.workspace_id == DealContact.workspace_id))
        .where(Deal.workspace_id == workspace_id, Deal.stage_normalized.in_(CLOSED_STAGES))
    ).one()

    deals_with_contacts = session.execute(
        select(func.count(distinct(Deal.id)))
        .select_from(Deal)
        .join(DealContact, and_(Deal.id == DealContact.deal_id, Deal.workspace_id == DealContact.workspace_id))
        .where(
            Deal.workspace_id == workspace_id,
            Deal.stage_normalized.in_(CLOSED_STAGES),
            DealContact.buying_role.is_not(None),
        )
    ).scalar_one()

    enriched = session.execute(
        select(func.count(DealContact.id)).where(
            DealContact.workspace_id == workspace_id,
            DealContact.enrichment_status == "enriched",
        )
    ).scalar_one()

    return ClosedCorpusCounts(
        won_count=by_stage.get(CLOSED_WON, 0),
        lost_count=by_stage.get(CLOSED_LOST, 0),
        deals_with_contacts=deals_with_contacts or 0,
        total_contact_roles=role_row[0] or 0,
        unique_contacts=role_row[1] or 0,
        enriched_contacts=enriched or 0,
    )


def has_conversation_connector(session: Session, workspace_id: str, sources: Iterable[str]) -> bool:
    """Return True if an active call-platform connector is installed."""
    count = session.execute(
        select(func.count(Connection.id)).where(
            Connection.workspace_id == workspace_id,
            Connection.connector_name.in_(list(sources)),
            Connection.status == "active",
        )
    ).scalar_one()
    return bool(count)


# ---------------------------------------------------------------------------
# Deals, contacts, activities
# ---------------------------------------------------------------------------


def _deals_with_accounts():
    return select(Deal, Account).outerjoin(
        Account,
        and_(Deal.account_id == Account.id, Account.workspace_id == Deal.workspace_id),
    )


def get_closed_deals(session: Session, workspace_id: str) -> List[Tuple[Deal, Optional[Account]]]:
    """Return closed deals with their accounts, most recently closed first."""
    result = session.execute(
        _deals_with_accounts()
        .where(Deal.workspace_id == workspace_id, Deal.stage_normalized.in_(CLOSED_STAGES))
        .order_by(Deal.close_date.desc(), Deal.id)
    )
    return [(deal, account) for deal, account in result.all()]


def get_open_deals(session: Session, workspace_id: str) -> List[Tuple[Deal, Optional[Account]]]:
    """Return open deals with their accounts, largest amount first."""
    result = session.execute(
        _deals_with_accounts()
        .where(Deal.workspace_id == workspace_id, Deal.stage_normalized.not_in(CLOSED_STAGES))
        .order_by(Deal.amount.desc().nulls_last(), Deal.id)
    )
    return [(deal, account) for deal, account in result.all()]


def get_deal_contacts(
    session: Session,
    workspace_id: str,
    deal_ids: Sequence[str],
    chunk_size: int = QUERY_CHUNK_SIZE,
) -> Dict[str, List[Tuple[DealContact, Contact]]]:
    """Return contact-role rows grouped by deal id."""
    grouped: Dict[str, List[Tuple[DealContact, Contact]]] = {}
    for chunk in _chunks(deal_ids, chunk_size):
        result = session.execute(
            select(DealContact, Contact)
            .join(
                Contact,
                and_(Contact.id == DealContact.contact_id, Contact.workspace_id == DealContact.workspace_id),
            )
            .where(DealContact.workspace_id == workspace_id, DealContact.deal_id.in_(chunk))
            .order_by(DealContact.deal_id, DealContact.id)
        )
        for deal_contact, contact in result.all():
            grouped.setdefault(deal_contact.deal_id, []).append((deal_contact, contact))
    return grouped


def _count_type(activity_type: str):
    return func.sum(case((Activity.activity_type == activity_type, 1), else_=0))


def get_activity_stats(
    session: Session,
    workspace_id: str,
    deal_ids: Sequence[str],
    as_of: datetime,
    recent_days: int = 14,
    chunk_size: int = QUERY_CHUNK_SIZE,
) -> Dict[str, ActivityStats]:
    """Return activity counters keyed by deal id.

    Rows dated after as_of (scheduled tasks) count toward the totals but not
    toward last_activity or recent_activities.
    """
    cutoff = as_of - timedelta(days=recent_days)
    stats: Dict[str, ActivityStats] = {}
    for chunk in _chunks(deal_ids, chunk_size):
        rows = session.execute(
            select(
                Activity.deal_id,
                func.count(Activity.id),
                _count_type("email"),
                _count_type("call"),
                _count_type("meeting"),
                _count_type("task"),
                func.count(distinct(func.date(Activity.timestamp))),
                func.max(case((Activity.timestamp <= as_of, Activity.timestamp), else_=None)),
                func.sum(case((and_(Activity.timestamp >= cutoff, Activity.timestamp <= as_of), 1), else_=0)),
            )
            .where(Activity.workspace_id == workspace_id, Activity.deal_id.in_(chunk))
            .group_by(Activity.deal_id)
        ).all()
        for deal_id, total, emails, calls, meetings, tasks, active_days, last, recent in rows:
            stats[deal_id] = ActivityStats(
                total_activities=total or 0,
                emails=emails or 0,
                calls=calls or 0,
                meetings=meetings or 0,
                tasks=tasks or 0,
                active_days=active_days or 0,
                last_activity=last,
                recent_activities=recent or 0,
            )
    return stats


def get_contact_activity_counts(
    session: Session,
    workspace_id: str,
    deal_ids: Sequence[str],
    chunk_size: int = QUERY_CHUNK_SIZE,
) -> Dict[Tuple[str, str], int]:
    """Return activity counts keyed by (contact_id, deal_id)."""
    counts: Dict[Tuple[str, str], int] = {}
    for chunk in _chunks(deal_ids, chunk_size):
        rows = session.execute(
            select(Activity.contact_id, Activity.deal_id, func.count(Activity.id))
            .where(
                Activity.workspace_id == workspace_id,
                Activity.deal_id.in_(chunk),
                Activity.contact_id.is_not(None),
            )
            .group_by(Activity.contact_id, Activity.deal_id)
        ).all()
        for contact_id, deal_id, count in rows:
            counts[(contact_id, deal_id)] = count
    return counts


def get_conversation_stats(
    session: Session,
    workspace_id: str,
    deal_ids: Sequence[str],
    as_of: datetime,
    recent_days: int = 14,
    chunk_size: int = QUERY_CHUNK_SIZE,
) -> Optional[Dict[str, ConversationStats]]:
    """Return call statistics keyed by deal id, or None if the workspace has no call table.

    Query errors propagate; the statements run inside a savepoint so a
    failure leaves the surrounding transaction usable.
    """
    if not inspect(session.connection()).has_table(Conversation.__tablename__):
        logger.debug("No %s table; skipping call statistics", Conversation.__tablename__)
        return None

    cutoff = as_of - timedelta(days=recent_days)
    stats: Dict[str, ConversationStats] = {}
    with session.begin_nested():
        for chunk in _chunks(deal_ids, chunk_size):
            rows = session.execute(
                select(
                    Conversation.deal_id,
                    func.count(Conversation.id),
                    func.max(Conversation.call_date),
                    func.avg(Conversation.duration_seconds),
                    func.sum(case((Conversation.call_date >= cutoff, 1), else_=0)),
                )
                .where(Conversation.workspace_id == workspace_id, Conversation.deal_id.in_(chunk))
                .group_by(Conversation.deal_id)
            ).all()
            for deal_id, total, last_call, avg_duration, recent in rows:
                stats[deal_id] = ConversationStats(
                    total_calls=total or 0,
                    last_call=last_call,
                    avg_duration_seconds=float(avg_duration) if avg_duration is not None else None,
                    recent_calls=recent or 0,
                )
    return stats



def get_deal_calls(
    session: Session,
    workspace_id: str,
    deal_ids: Sequence[str],
    chunk_size: int = QUERY_CHUNK_SIZE,
) -> Optional[Dict[str, List[CallRecord]]]:
    """Return linked calls keyed by deal id in call order, or None if the workspace has no call table.

    Runs inside a savepoint like get_conversation_stats.
    """
    if not inspect(session.connection()).has_table(Conversation.__tablename__):
        logger.debug("No %s table; skipping call metadata", Conversation.__tablename__)
        return None

    calls: Dict[str, List[CallRecord]] = {}
    with session.begin_nested():
        for chunk in _chunks(deal_ids, chunk_size):
            rows = session.execute(
                select(Conversation.deal_id, Conversation.call_date, Conversation.duration_seconds)
                .where(Conversation.workspace_id == workspace_id, Conversation.deal_id.in_(chunk))
                .order_by(Conversation.deal_id, Conversation.call_date)
            ).all()
            for deal_id, call_date, duration in rows:
                calls.setdefault(deal_id, []).append(
                    CallRecord(call_date=call_date, duration_seconds=duration)
                )
    return calls


# ---------------------------------------------------------------------------
# Leads and workspace context
# ---------------------------------------------------------------------------


def get_leads(session: Session, workspace_id: str) -> List[LeadRecord]:
    """Return every lead with the stage and amount of its converted deal."""
    result = session.execute(
        select(Lead, Deal.stage_normalized, Deal.amount)
        .outerjoin(Deal, and_(Deal.id == Lead.converted_deal_id, Deal.workspace_id == Lead.workspace_id))
        .where(Lead.workspace_id == workspace_id)
    )
    return [
        LeadRecord(
            lead_id=lead.id,
            source=lead.lead_source,
            is_converted=bool(lead.is_converted),
            deal_id=lead.converted_deal_id,
            deal_stage=stage,
            deal_amount=amount,
        )
        for lead, stage, amount in result.all()
    ]


def get_latest_field_discovery(session: Session, workspace_id: str) -> Optional[FieldDiscoveryResult]:
    """Return the most recent completed custom-field discovery, or None."""
    row = session.execute(
        select(CustomFieldDiscovery)
        .where(
            CustomFieldDiscovery.workspace_id == workspace_id,
            CustomFieldDiscovery.status == "completed",
        )
        .order_by(CustomFieldDiscovery.completed_at.desc().nulls_last())
        .limit(1)
    ).scalar_one_or_none()
    if row is None:
        logger.debug("No completed custom field discovery for workspace %s", workspace_id)
        return None

    payload = row.result or {}
    top_fields = payload.get("topFields") or (payload.get("discovery_result") or {}).get("topFields") or []
    return FieldDiscoveryResult(
        fields=[DiscoveredField.from_payload(field) for field in top_fields],
        completed_at=row.completed_at,
    )


def get_department_patterns(session: Session, workspace_id: str) -> Dict[str, List[str]]:
    """Return workspace department keyword overrides ({department: [keyword]})."""
    config = session.get(WorkspaceConfig, workspace_id)
    if config is None or not config.department_patterns:
        return {}
    return {
        str(department): [str(keyword) for keyword in keywords or []]
        for department, keywords in config.department_patterns.items()
    }
