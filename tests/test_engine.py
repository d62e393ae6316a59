"""
End-to-end tests for the discovery and scoring engines
"""

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from icp_discovery.engine import create_discovery_engine, create_scoring_engine
from icp_discovery.exceptions import InsufficientDataError
from icp_discovery.models.schemas import (
    AnalysisMode,
    EntityType,
    Grade,
    ProfileStatus,
    ScoringMethod,
)
from icp_discovery.storage import repositories, session_scope
from icp_discovery.storage.models import Deal, IcpProfileRow
from icp_discovery.storage.persistence import get_profile, list_profiles, list_scores


@pytest.fixture
def discovery(session_factory):
    return create_discovery_engine(session_factory=session_factory)


@pytest.fixture
def scoring(session_factory):
    return create_scoring_engine(session_factory=session_factory)


# =============================================================================
# DISCOVERY
# =============================================================================

class TestDiscovery:

    def test_small_corpus_aborts(self, discovery, session_factory, seeder):
        for i in range(10):
            seeder.deal("closed_won", amount=1000)
        seeder.commit()

        with pytest.raises(InsufficientDataError) as exc_info:
            discovery.discover(seeder.workspace_id)

        assert exc_info.value.reasons == ["Insufficient closed deals (10 < 30 required)"]
        assert discovery.get_stats()["aborted_runs"] == 1
        with session_scope(session_factory) as session:
            assert list_profiles(session, seeder.workspace_id) == []

    def test_discovery_saves_draft_profile(self, discovery, session_factory, descriptive_workspace, as_of):
        result = discovery.discover(descriptive_workspace, as_of=as_of)

        assert result.mode == AnalysisMode.DESCRIPTIVE
        assert result.version == 1
        assert result.deals_analyzed == 40
        assert result.run_id

        with session_scope(session_factory) as session:
            profile = get_profile(session, descriptive_workspace, result.profile_id)

        assert profile.status == ProfileStatus.DRAFT
        assert (profile.deals_analyzed, profile.won_deals, profile.lost_deals) == (40, 25, 15)
        assert profile.scoring_method == "descriptive_heuristic"
        assert profile.model_metadata.analysis_mode == AnalysisMode.DESCRIPTIVE
        assert profile.model_metadata.custom_fields_used == 1
        assert profile.model_metadata.conversation_coverage.tier == 0

    def test_conversation_coverage_recorded(self, discovery, session_factory, seeder, descriptive_workspace, as_of):
        names = [f"Won deal {i}" for i in range(10)]
        for deal in seeder.session.scalars(select(Deal).where(Deal.name.in_(names))).all():
            seeder.conversation(deal, as_of - timedelta(days=200))
        seeder.commit()

        result = discovery.discover(descriptive_workspace, as_of=as_of)
        with session_scope(session_factory) as session:
            coverage = get_profile(session, descriptive_workspace, result.profile_id).model_metadata.conversation_coverage

        assert coverage.deals_with_conversations == 10
        assert coverage.coverage_pct == pytest.approx(25)
        assert coverage.tier == 1

    def test_personas_committees_and_weights(self, discovery, session_factory, descriptive_workspace, as_of):
        result = discovery.discover(descriptive_workspace, as_of=as_of)
        with session_scope(session_factory) as session:
            profile = get_profile(session, descriptive_workspace, result.profile_id)

        personas = {p.key: p for p in profile.personas}
        assert set(personas) == {"vp__engineering", "director__finance", "manager__sales", "ic__engineering"}
        assert profile.personas[0].key == "vp__engineering"
        assert personas["vp__engineering"].lift == pytest.approx(2.4)
        assert personas["vp__engineering"].confidence == 0.7
        assert personas["director__finance"].lift == pytest.approx(1.8)
        assert personas["director__finance"].confidence == 0.5

        assert len(profile.buying_committees) == 1
        combo = profile.buying_committees[0]
        assert combo.personas == ["director__finance", "vp__engineering"]
        assert combo.win_rate == pytest.approx(0.75)

        weights = profile.scoring_weights
        assert weights.personas["persona_vp_engineering"] == 7
        assert weights.personas["persona_director_finance"] == 5
        assert weights.personas["persona_manager_sales"] == 0
        assert weights.custom_fields == {"deal": {"segment": {"enterprise": 10, "smb": 3}}}
        assert weights.industries == {"Financial Services": 10, "Computer Software": 7, "Retail": 0}
        assert [s.description for s in profile.company_profile.sweet_spots] == [
            "Financial Services industry", "segment = enterprise",
        ]

    def test_each_run_adds_a_version(self, discovery, session_factory, descriptive_workspace, as_of):
        first = discovery.discover(descriptive_workspace, as_of=as_of)
        second = discovery.discover(descriptive_workspace, as_of=as_of)
        assert (first.version, second.version) == (1, 2)
        assert first.profile_id != second.profile_id
        assert discovery.get_stats()["profiles_saved"] == 2

    def test_failed_field_discovery_lookup_is_skipped(self, discovery, descriptive_workspace, as_of, monkeypatch, caplog):
        def boom(*args, **kwargs):
            raise OperationalError("SELECT ...", {}, Exception("relation does not exist"))

        monkeypatch.setattr(repositories, "get_latest_field_discovery", boom)
        result = discovery.discover(descriptive_workspace, as_of=as_of)

        assert result.readiness.custom_fields_available == 0
        assert result.sweet_spots_found == 1
        assert "Custom field discovery lookup failed" in caplog.text


# =============================================================================
# SCORING
# =============================================================================

class TestScoring:

    def test_scores_deal_and_contacts(self, scoring, session_factory, scoring_workspace, as_of):
        deal, _ = scoring_workspace
        result = scoring.score("ws_test", as_of=as_of)

        assert len(result.deal_scores) == 1
        assert len(result.contact_scores) == 3
        assert result.icp_profile_id is None
        score = result.deal_scores[0]
        assert (score.entity_id, score.total_score, score.score_grade) == (deal.id, 77, Grade.B)
        assert (score.previous_score, score.score_change) == (77, 0)

        summary = result.summary
        assert summary.total_deals == 1
        assert summary.grade_distribution["B"] == 1
        assert summary.rep_scores["Dana"].avg_score == 77
        assert [r.id for r in summary.bottom_deals] == [deal.id]

        with session_scope(session_factory) as session:
            stored = list_scores(session, "ws_test")
        assert len(stored) == 4
        assert {s.entity_type for s in stored} == {EntityType.DEAL, EntityType.CONTACT}

    def test_rescore_is_idempotent(self, scoring, scoring_workspace, as_of):
        scoring.score("ws_test", as_of=as_of)
        result = scoring.score("ws_test", as_of=as_of)
        assert all(s.score_change == 0 for s in result.deal_scores + result.contact_scores)
        assert result.summary.movers == []

    def test_score_change_tracked_across_runs(self, scoring, scoring_workspace, as_of):
        scoring.score("ws_test", as_of=as_of)
        # 30 days later the activity is stale and the deal has aged
        result = scoring.score("ws_test", as_of=as_of + timedelta(days=30))

        score = result.deal_scores[0]
        assert score.previous_score == 77
        assert score.score_change == score.total_score - 77
        assert score.score_change < -10
        assert [m.id for m in result.summary.movers] == [score.entity_id]

    def test_call_dimensions_with_failing_lookup(self, scoring, seeder, scoring_workspace, as_of, monkeypatch, caplog):
        seeder.connection("gong")
        seeder.commit()

        def boom(*args, **kwargs):
            raise OperationalError("SELECT ...", {}, Exception("no such table: conversations"))

        monkeypatch.setattr(repositories, "get_conversation_stats", boom)
        score = scoring.score("ws_test", as_of=as_of).deal_scores[0]

        assert score.score_breakdown["no_calls_late_stage"].points == -5
        # 63 points over 103 possible
        assert score.total_score == 61
        assert "Conversation lookup failed" in caplog.text

    def test_active_profile_adds_icp_dimensions(self, discovery, scoring, session_factory, combined_workspace, as_of):
        discovered = discovery.discover("ws_test", as_of=as_of)

        with session_scope(session_factory) as session:
            session.get(IcpProfileRow, discovered.profile_id).status = ProfileStatus.ACTIVE.value

        result = scoring.score("ws_test", as_of=as_of)
        score = result.deal_scores[0]

        assert result.icp_profile_id == discovered.profile_id
        assert score.scoring_method == ScoringMethod.ICP_POINT_BASED
        # Financial Services won 12/12 against a 25/40 baseline: lift 1.6 -> 9
        assert score.score_breakdown["icp_industry"].points == 9
        assert "icp_company_size" not in score.score_breakdown
        assert "icp_committee" not in score.score_breakdown
        # vp__engineering 7 + ic__engineering 5
        assert score.score_breakdown["icp_persona_fit"].points == 12
        # 89 points over 123 possible
        assert score.total_score == 72

    def test_draft_profile_not_used(self, discovery, scoring, combined_workspace, as_of):
        discovery.discover("ws_test", as_of=as_of)

        score = scoring.score("ws_test", as_of=as_of).deal_scores[0]
        assert score.scoring_method == ScoringMethod.POINT_BASED
        assert "icp_industry" not in score.score_breakdown

    def test_empty_workspace(self, scoring):
        result = scoring.score("ws_empty")
        assert result.deal_scores == []
        assert result.summary.avg_deal_score == 0
        assert scoring.get_stats()["scoring_runs"] == 1


# =============================================================================
# STATS
# =============================================================================

class TestStats:

    def test_concurrent_updates_are_not_lost(self, scoring):
        def record():
            for _ in range(500):
                scoring._count(scoring_runs=1, deals_scored=2)

        threads = [threading.Thread(target=record) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        stats = scoring.get_stats()
        assert stats["scoring_runs"] == 4000
        assert stats["deals_scored"] == 8000

    def test_reset(self, discovery, seeder):
        with pytest.raises(InsufficientDataError):
            discovery.discover(seeder.workspace_id)
        assert discovery.get_stats()["discovery_runs"] == 1

        discovery.reset_stats()
        assert discovery.get_stats() == {
            "discovery_runs": 0,
            "aborted_runs": 0,
            "profiles_saved": 0,
            "total_processing_time_ms": 0,
        }
