"""
ICP Discovery Engine - Main Orchestrator
========================================
Two batch pipelines over one workspace's CRM data:

  Discovery: Stage 1 Readiness -> Stage 2 Closed Features ->
             Stage 3 Personas/Committees -> Stage 4 Company Patterns ->
             Stage 5 Scoring Weights -> persisted draft ICP profile

  Scoring:   Stage 2 Open Features -> Stage 6 Point-Based Scoring ->
             score upsert with change tracking -> run summary

Each run gets its own run id and logs through a RunLogger carrying the
workspace and run ids.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .exceptions import InsufficientDataError
from .logging_config import RunLogger, get_run_logger
from .config.settings import GENERATED_BY
from .models.icp_config import EngineConfig, create_default_engine_config
from .models.records import DiscoveredField, FieldDiscoveryResult, LeadRecord
from .models.schemas import (
    AnalysisMode,
    ClosedDealFeatures,
    CommitteeCombo,
    CompanyProfile,
    CustomFieldWeight,
    DataReadiness,
    DiscoveryResult,
    ICPProfile,
    PersonaPattern,
    ProfileMetadata,
    ReadinessCounts,
    ScoringRunResult,
    ScoringWeights,
)
from .stages.stage1_readiness import DataReadinessClassifier
from .stages.stage2_features import FeatureMatrixBuilder, conversation_coverage
from .stages.stage3_personas import CommitteeComboMiner, PersonaPatternMiner
from .stages.stage4_company import CompanyPatternMiner
from .stages.stage5_weights import ScoringWeightSynthesizer
from .stages.stage6_scoring import PointBasedScorer, build_custom_field_weights
from .storage import repositories
from .storage.connection import get_session_factory, session_scope
from .storage.persistence import get_active_profile, save_profile, upsert_score

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def _load_field_discovery(
    session: Session,
    workspace_id: str,
    log: logging.LoggerAdapter,
) -> Optional[FieldDiscoveryResult]:
    """Latest custom-field discovery; a failing lookup is logged and skipped"""
    try:
        with session.begin_nested():
            result = repositories.get_latest_field_discovery(session, workspace_id)
    except SQLAlchemyError as exc:
        log.warning("Custom field discovery lookup failed, continuing without it: %s", exc)
        return None
    if result is None:
        log.info("No custom field discovery found, using default weights only")
    return result


class ICPDiscoveryEngine:
    """
    Discovers the ideal customer profile from a workspace's closed deals.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        """
        Initialize the discovery engine.

        Args:
            config: Engine configuration (uses defaults if not provided)
            session_factory: Session factory (uses the DATABASE_URL engine if not provided)
        """
        self.config = config or create_default_engine_config()
        self.session_factory = session_factory or get_session_factory()

        self.stage1 = DataReadinessClassifier(self.config.readiness)
        self.stage2 = FeatureMatrixBuilder(
            chunk_size=self.config.query_chunk_size,
            recent_window_days=self.config.scoring.recent_window_days,
        )
        self.stage3_personas = PersonaPatternMiner(self.config.discovery)
        self.stage3_committees = CommitteeComboMiner(self.config.discovery)
        self.stage4 = CompanyPatternMiner(self.config.discovery)
        self.stage5 = ScoringWeightSynthesizer(self.config.discovery)

        self._stats_lock = threading.Lock()
        self.stats = self._empty_stats()

    def check_readiness(self, workspace_id: str, log: Optional[RunLogger] = None) -> DataReadiness:
        """
        Classify the workspace's closed-deal corpus without running discovery.

        Args:
            workspace_id: Workspace to inspect
            log: Run logger (a readiness run logger is created if omitted)

        Returns:
            DataReadiness with mode and reasons
        """
        log = log or get_run_logger(workspace_id, "readiness")
        with session_scope(self.session_factory) as session:
            field_discovery = _load_field_discovery(session, workspace_id, log)
            return self._readiness(session, workspace_id, field_discovery, log)

    def discover(self, workspace_id: str, as_of: Optional[datetime] = None) -> DiscoveryResult:
        """
        Run the discovery pipeline and persist a new draft profile version.

        Args:
            workspace_id: Workspace to analyze
            as_of: Reference time for recency counters (default: now)

        Returns:
            DiscoveryResult with the saved profile id and version

        Raises:
            InsufficientDataError: The corpus is too small for any mode
        """
        start_time = time.time()
        self._count(discovery_runs=1)
        log = get_run_logger(workspace_id, "discovery")
        log.info("Starting ICP discovery")

        # =====================================================================
        # STAGE 1: Data Readiness / STAGE 2: Feature Matrix
        # =====================================================================
        with session_scope(self.session_factory) as session:
            field_discovery = _load_field_discovery(session, workspace_id, log)
            readiness = self._readiness(session, workspace_id, field_discovery, log.for_stage("readiness"))
            if readiness.mode == AnalysisMode.ABORT:
                self._count(aborted_runs=1)
                log.warning("Discovery aborted: %s", "; ".join(readiness.reasons))
                raise InsufficientDataError(readiness.reasons, workspace_id)

            matrix = self.stage2.build_closed(session, workspace_id, log.for_stage("features"), as_of)
            leads = repositories.get_leads(session, workspace_id)

        fields = field_discovery.fields if field_discovery else []

        # =====================================================================
        # STAGES 3-5: Pattern Mining and Weights
        # =====================================================================
        personas, committees, company, weights = self._run_mode_analysis(
            readiness.mode, matrix, fields, leads, log
        )

        # =====================================================================
        # Persist
        # =====================================================================
        total_time = (time.time() - start_time) * 1000
        won = sum(1 for deal in matrix if deal.won)
        profile = ICPProfile(
            workspace_id=workspace_id,
            personas=personas,
            buying_committees=committees,
            company_profile=company,
            scoring_weights=weights,
            scoring_method=weights.method,
            model_metadata=ProfileMetadata(
                deals_analyzed=len(matrix),
                won_count=won,
                lost_count=len(matrix) - won,
                contact_roles_used=readiness.total_contact_roles,
                custom_fields_used=len(company.custom_field_segments),
                analysis_mode=readiness.mode,
                readiness_reasons=readiness.reasons,
                execution_ms=round(total_time, 2),
                conversation_coverage=conversation_coverage(matrix),
            ),
            deals_analyzed=len(matrix),
            won_deals=won,
            lost_deals=len(matrix) - won,
            contacts_enriched=readiness.total_contact_roles,
            generated_by=GENERATED_BY,
        )

        with session_scope(self.session_factory) as session:
            saved = save_profile(session, profile)

        self._count(profiles_saved=1, total_processing_time_ms=total_time)

        log.info(
            "ICP discovery complete: profile %s v%d, %d personas, %d committees, %d sweet spots",
            saved.id, saved.version, len(personas), len(committees), len(company.sweet_spots),
            extra={"duration_ms": round(total_time, 2)},
        )

        return DiscoveryResult(
            workspace_id=workspace_id,
            run_id=log.run_id,
            mode=readiness.mode,
            profile_id=saved.id,
            version=saved.version,
            readiness=readiness,
            deals_analyzed=len(matrix),
            personas_found=len(personas),
            committees_found=len(committees),
            sweet_spots_found=len(company.sweet_spots),
            processing_time_ms=round(total_time, 2),
        )

    def _run_mode_analysis(
        self,
        mode: AnalysisMode,
        matrix: List[ClosedDealFeatures],
        fields: List[DiscoveredField],
        leads: List[LeadRecord],
        log: RunLogger,
    ) -> Tuple[List[PersonaPattern], List[CommitteeCombo], CompanyProfile, ScoringWeights]:
        """
        Run the analysis for the classified mode.

        point_based and regression have no dedicated analysis yet and run
        the descriptive one; the classified mode is still recorded.
        """
        if mode != AnalysisMode.DESCRIPTIVE:
            log.info("Mode %s runs the descriptive analysis", mode.value)

        all_personas = self.stage3_personas.process(matrix, log.for_stage("personas"))
        personas = self.stage3_personas.significant(all_personas)
        committees = self.stage3_committees.process(matrix, personas, log.for_stage("committees"))
        company = self.stage4.process(matrix, fields, leads, log.for_stage("company"))
        weights = self.stage5.process(personas, company, log.for_stage("weights"))
        return personas, committees, company, weights

    def _readiness(
        self,
        session: Session,
        workspace_id: str,
        field_discovery: Optional[FieldDiscoveryResult],
        log: logging.LoggerAdapter,
    ) -> DataReadiness:
        corpus = repositories.count_closed_corpus(session, workspace_id)
        counts = ReadinessCounts(
            won_count=corpus.won_count,
            lost_count=corpus.lost_count,
            deals_with_contacts=corpus.deals_with_contacts,
            total_contact_roles=corpus.total_contact_roles,
            unique_contacts=corpus.unique_contacts,
            custom_fields_available=sum(
                1 for f in (field_discovery.fields if field_discovery else [])
                if f.entity_type in ("deal", "account")
            ),
            has_conversations=repositories.has_conversation_connector(
                session, workspace_id, self.config.scoring.conversation_sources
            ),
            has_enrichment=corpus.enriched_contacts > 0,
        )
        return self.stage1.process(counts, log)

    def _count(self, **increments):
        with self._stats_lock:
            for key, amount in increments.items():
                self.stats[key] += amount

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics"""
        with self._stats_lock:
            stats = self.stats.copy()
        if stats["discovery_runs"] > 0:
            stats["abort_rate"] = round(stats["aborted_runs"] / stats["discovery_runs"] * 100, 1)
        if stats["profiles_saved"] > 0:
            stats["avg_processing_time_ms"] = round(
                stats["total_processing_time_ms"] / stats["profiles_saved"], 2
            )
        return stats

    def reset_stats(self):
        """Reset engine statistics"""
        with self._stats_lock:
            self.stats = self._empty_stats()

    @staticmethod
    def _empty_stats() -> Dict[str, Any]:
        return {
            "discovery_runs": 0,
            "aborted_runs": 0,
            "profiles_saved": 0,
            "total_processing_time_ms": 0,
        }


class LeadScoringEngine:
    """
    Scores a workspace's open deals and contacts and tracks score changes.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        session_factory: Optional[SessionFactory] = None,
    ):
        self.config = config or create_default_engine_config()
        self.session_factory = session_factory or get_session_factory()

        self.features = FeatureMatrixBuilder(
            chunk_size=self.config.query_chunk_size,
            recent_window_days=self.config.scoring.recent_window_days,
        )
        self.scorer = PointBasedScorer(self.config.scoring)

        self._stats_lock = threading.Lock()
        self.stats = {
            "scoring_runs": 0,
            "deals_scored": 0,
            "contacts_scored": 0,
            "total_processing_time_ms": 0,
        }

    def score(self, workspace_id: str, as_of: Optional[datetime] = None) -> ScoringRunResult:
        """
        Score every open deal, then every contact on them, and persist the scores.

        Args:
            workspace_id: Workspace to score
            as_of: Scoring timestamp (default: now)

        Returns:
            ScoringRunResult with scores (previous_score and score_change
            filled from storage) and the run summary
        """
        start_time = time.time()
        as_of = as_of or datetime.utcnow()
        cfg = self.config.scoring
        log = get_run_logger(workspace_id, "scoring")
        log.info("Starting lead scoring")

        with session_scope(self.session_factory) as session:
            has_connector = repositories.has_conversation_connector(
                session, workspace_id, cfg.conversation_sources
            )
            field_weights = self._field_weights(session, workspace_id, log)
            profile = get_active_profile(session, workspace_id) if cfg.use_active_profile else None

            log.info(
                "Workspace scoring context: conversation connector=%s, %d custom field weights, active profile=%s",
                has_connector, len(field_weights), profile.id if profile else None,
            )

            deals, contacts = self.features.build_open(
                session, workspace_id, as_of,
                include_conversations=has_connector,
                log=log.for_stage("features"),
            )
            deal_scores, contact_scores = self.scorer.process(
                deals, contacts, field_weights, has_connector, profile, as_of,
                log=log.for_stage("scoring"),
            )

            # Deals are persisted before contacts
            for score in deal_scores + contact_scores:
                score.previous_score, score.score_change = upsert_score(session, workspace_id, score)

        summary = self.scorer.summarize(deals, deal_scores, contact_scores, field_weights)
        total_time = (time.time() - start_time) * 1000

        self._count(
            scoring_runs=1,
            deals_scored=len(deal_scores),
            contacts_scored=len(contact_scores),
            total_processing_time_ms=total_time,
        )

        log.info(
            "Lead scoring complete: %d deals (avg %d), %d contacts, grades %s",
            len(deal_scores), summary.avg_deal_score, len(contact_scores), summary.grade_distribution,
            extra={"duration_ms": round(total_time, 2)},
        )

        return ScoringRunResult(
            workspace_id=workspace_id,
            run_id=log.run_id,
            icp_profile_id=profile.id if profile else None,
            deal_scores=deal_scores,
            contact_scores=contact_scores,
            summary=summary,
            processing_time_ms=round(total_time, 2),
        )

    def _field_weights(self, session: Session, workspace_id: str, log: RunLogger) -> List[CustomFieldWeight]:
        discovery = _load_field_discovery(session, workspace_id, log)
        if discovery is None:
            return []
        return build_custom_field_weights(discovery.fields, self.config.scoring.custom_field_min_relevance)

    def _count(self, **increments):
        with self._stats_lock:
            for key, amount in increments.items():
                self.stats[key] += amount

    def get_stats(self) -> Dict[str, Any]:
        """Get engine statistics"""
        with self._stats_lock:
            stats = self.stats.copy()
        if stats["scoring_runs"] > 0:
            stats["avg_processing_time_ms"] = round(
                stats["total_processing_time_ms"] / stats["scoring_runs"], 2
            )
        return stats


# =============================================================================
# Factories
# =============================================================================

def create_discovery_engine(
    config: Optional[EngineConfig] = None,
    session_factory: Optional[SessionFactory] = None,
) -> ICPDiscoveryEngine:
    """Factory function to create a discovery engine"""
    return ICPDiscoveryEngine(config=config, session_factory=session_factory)


def create_scoring_engine(
    config: Optional[EngineConfig] = None,
    session_factory: Optional[SessionFactory] = None,
) -> LeadScoringEngine:
    """Factory function to create a lead scoring engine"""
    return LeadScoringEngine(config=config, session_factory=session_factory)
