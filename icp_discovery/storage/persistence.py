"""Profile and score persistence.

ICP profiles are immutable snapshots; the version number is allocated in
the same transaction that inserts the row, and the unique
(workspace_id, version) constraint rejects a concurrent duplicate.

Lead scores are upserted per (workspace_id, entity_type, entity_id). On
conflict the stored total moves into previous_score and score_change holds
the delta; a first score records previous_score = total and change 0.
"""
import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from ..exceptions import ProfileNotFoundError
from ..models.schemas import (
    CommitteeCombo,
    CompanyProfile,
    EntityType,
    Grade,
    ICPProfile,
    LeadScore,
    PersonaPattern,
    ProfileMetadata,
    ProfileStatus,
    ScoreComponent,
    ScoringMethod,
    ScoringWeights,
)
from .models import IcpProfileRow, LeadScoreRow

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# ---------------------------------------------------------------------------
# ICP profiles
# ---------------------------------------------------------------------------


def allocate_profile_version(session: Session, workspace_id: str) -> int:
    """Return MAX(version) + 1 for the workspace, starting at 1."""
    current = session.execute(
        select(func.coalesce(func.max(IcpProfileRow.version), 0)).where(
            IcpProfileRow.workspace_id == workspace_id
        )
    ).scalar_one()
    return int(current) + 1


def save_profile(session: Session, profile: ICPProfile) -> ICPProfile:
    """Insert a profile as a new draft version and return it with id and version set."""
    version = allocate_profile_version(session, profile.workspace_id)
    row = IcpProfileRow(
        workspace_id=profile.workspace_id,
        version=version,
        status=ProfileStatus.DRAFT.value,
        personas=[p.model_dump(mode="json") for p in profile.personas],
        buying_committees=[c.model_dump(mode="json") for c in profile.buying_committees],
        company_profile=profile.company_profile.model_dump(mode="json"),
        scoring_weights=profile.scoring_weights.model_dump(mode="json"),
        scoring_method=profile.scoring_method,
        model_metadata=profile.model_metadata.model_dump(mode="json"),
        deals_analyzed=profile.deals_analyzed,
        won_deals=profile.won_deals,
        lost_deals=profile.lost_deals,
        contacts_enriched=profile.contacts_enriched,
        generated_at=profile.generated_at,
        generated_by=profile.generated_by,
    )
    session.add(row)
    session.flush()
    logger.info(
        "Saved ICP profile %s version %d for workspace %s",
        row.id, version, profile.workspace_id,
    )
    return _profile_from_row(row)


def get_profile(session: Session, workspace_id: str, profile_id: str) -> ICPProfile:
    """Load one profile by id. Raises ProfileNotFoundError."""
    row = session.execute(
        select(IcpProfileRow).where(
            IcpProfileRow.workspace_id == workspace_id,
            IcpProfileRow.id == profile_id,
        )
    ).scalar_one_or_none()
    if row is None:
        raise ProfileNotFoundError(profile_id, workspace_id)
    return _profile_from_row(row)


def list_profiles(
    session: Session,
    workspace_id: str,
    status: Optional[ProfileStatus] = None,
) -> List[ICPProfile]:
    """Return the workspace's profiles, newest version first."""
    stmt = select(IcpProfileRow).where(IcpProfileRow.workspace_id == workspace_id)
    if status is not None:
        stmt = stmt.where(IcpProfileRow.status == status.value)
    rows = session.execute(stmt.order_by(IcpProfileRow.version.desc())).scalars().all()
    return [_profile_from_row(row) for row in rows]


def get_active_profile(session: Session, workspace_id: str) -> Optional[ICPProfile]:
    """Return the most recently generated active profile, if one was activated."""
    row = session.execute(
        select(IcpProfileRow)
        .where(
            IcpProfileRow.workspace_id == workspace_id,
            IcpProfileRow.status == ProfileStatus.ACTIVE.value,
        )
        .order_by(IcpProfileRow.generated_at.desc(), IcpProfileRow.version.desc())
        .limit(1)
    ).scalar_one_or_none()
    return _profile_from_row(row) if row is not None else None


def _profile_from_row(row: IcpProfileRow) -> ICPProfile:
    return ICPProfile(
        id=row.id,
        workspace_id=row.workspace_id,
        version=row.version,
        status=ProfileStatus(row.status),
        personas=[PersonaPattern.model_validate(p) for p in row.personas or []],
        buying_committees=[CommitteeCombo.model_validate(c) for c in row.buying_committees or []],
        company_profile=CompanyProfile.model_validate(row.company_profile or {}),
        scoring_weights=ScoringWeights.model_validate(row.scoring_weights or {}),
        scoring_method=row.scoring_method,
        model_metadata=ProfileMetadata.model_validate(row.model_metadata or {}),
        deals_analyzed=row.deals_analyzed or 0,
        won_deals=row.won_deals or 0,
        lost_deals=row.lost_deals or 0,
        contacts_enriched=row.contacts_enriched or 0,
        generated_at=row.generated_at,
        generated_by=row.generated_by,
    )


# ---------------------------------------------------------------------------
# Lead scores
# ---------------------------------------------------------------------------


def upsert_score(session: Session, workspace_id: str, score: LeadScore) -> Tuple[int, int]:
    """Insert or update a lead score. Returns (previous_score, score_change)."""
    dialect = session.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Score upsert is not supported on dialect '{dialect}'")

    now = datetime.utcnow()
    breakdown = {key: comp.model_dump(mode="json") for key, comp in score.score_breakdown.items()}
    stmt = insert(LeadScoreRow).values(
        workspace_id=workspace_id,
        entity_type=score.entity_type.value,
        entity_id=score.entity_id,
        total_score=score.total_score,
        score_breakdown=breakdown,
        score_grade=score.score_grade.value,
        scoring_method=score.scoring_method.value,
        icp_profile_id=score.icp_profile_id,
        previous_score=score.total_score,
        score_change=0,
        scored_at=score.scored_at,
        created_at=now,
        updated_at=now,
    )
    table = LeadScoreRow.__table__
    stmt = stmt.on_conflict_do_update(
        index_elements=["workspace_id", "entity_type", "entity_id"],
        set_={
            "total_score": stmt.excluded.total_score,
            "score_breakdown": stmt.excluded.score_breakdown,
            "score_grade": stmt.excluded.score_grade,
            "scoring_method": stmt.excluded.scoring_method,
            "icp_profile_id": stmt.excluded.icp_profile_id,
            "previous_score": table.c.total_score,
            "score_change": stmt.excluded.total_score - table.c.total_score,
            "scored_at": stmt.excluded.scored_at,
            "updated_at": stmt.excluded.updated_at,
        },
    ).returning(table.c.previous_score, table.c.score_change)

    previous, change = session.execute(stmt).one()
    return int(previous), int(change)


def list_scores(
    session: Session,
    workspace_id: str,
    entity_type: Optional[EntityType] = None,
    grade: Optional[Grade] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[LeadScore]:
    """Return stored scores, highest first."""
    stmt = select(LeadScoreRow).where(LeadScoreRow.workspace_id == workspace_id)
    if entity_type is not None:
        stmt = stmt.where(LeadScoreRow.entity_type == entity_type.value)
    if grade is not None:
        stmt = stmt.where(LeadScoreRow.score_grade == grade.value)
    stmt = stmt.order_by(LeadScoreRow.total_score.desc(), LeadScoreRow.entity_id).limit(limit).offset(offset)
    return [_score_from_row(row) for row in session.execute(stmt).scalars().all()]


def get_score(
    session: Session,
    workspace_id: str,
    entity_type: EntityType,
    entity_id: str,
) -> Optional[LeadScore]:
    row = session.execute(
        select(LeadScoreRow).where(
            LeadScoreRow.workspace_id == workspace_id,
            LeadScoreRow.entity_type == entity_type.value,
            LeadScoreRow.entity_id == entity_id,
        )
    ).scalar_one_or_none()
    return _score_from_row(row) if row is not None else None


def _score_from_row(row: LeadScoreRow) -> LeadScore:
    return LeadScore(
        entity_type=EntityType(row.entity_type),
        entity_id=row.entity_id,
        total_score=row.total_score,
        score_breakdown={
            key: ScoreComponent.model_validate(value)
            for key, value in (row.score_breakdown or {}).items()
        },
        score_grade=Grade(row.score_grade),
        scoring_method=ScoringMethod(row.scoring_method),
        icp_profile_id=row.icp_profile_id,
        previous_score=row.previous_score,
        score_change=row.score_change,
        scored_at=row.scored_at,
    )
