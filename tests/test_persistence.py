"""
Tests for profile versioning and lead score upserts
"""

import pytest
from sqlalchemy.exc import IntegrityError

from icp_discovery.exceptions import ProfileNotFoundError
from icp_discovery.models.schemas import (
    EntityType,
    Grade,
    ICPProfile,
    LeadScore,
    PersonaPattern,
    ProfileStatus,
    ScoreComponent,
    ScoringWeights,
)
from icp_discovery.storage.models import IcpProfileRow
from icp_discovery.storage.persistence import (
    get_active_profile,
    get_profile,
    get_score,
    list_profiles,
    list_scores,
    save_profile,
    upsert_score,
)


def make_profile(workspace_id="ws_test", **kwargs):
    return ICPProfile(
        workspace_id=workspace_id,
        personas=[PersonaPattern(key="vp__sales", name="Vp Sales", seniority="vp", department="sales", lift=2.0)],
        scoring_weights=ScoringWeights(personas={"persona_vp_sales": 6}),
        deals_analyzed=40,
        won_deals=25,
        lost_deals=15,
        **kwargs,
    )


def make_score(entity_id, total, entity_type=EntityType.DEAL):
    return LeadScore(
        entity_type=entity_type,
        entity_id=entity_id,
        total_score=total,
        score_grade=Grade.A if total >= 85 else Grade.C,
        score_breakdown={"has_champion": ScoreComponent(value=True, points=5, weight=5)},
    )


class TestProfiles:

    def test_round_trip(self, session):
        saved = save_profile(session, make_profile())
        session.commit()

        loaded = get_profile(session, "ws_test", saved.id)
        assert loaded.version == 1
        assert loaded.status == ProfileStatus.DRAFT
        assert loaded.personas[0].lift == 2.0
        assert loaded.scoring_weights.personas == {"persona_vp_sales": 6}
        assert (loaded.deals_analyzed, loaded.won_deals, loaded.lost_deals) == (40, 25, 15)

    def test_versions_increase_per_workspace(self, session):
        first = save_profile(session, make_profile())
        second = save_profile(session, make_profile())
        other = save_profile(session, make_profile(workspace_id="ws_other"))
        session.commit()

        assert (first.version, second.version, other.version) == (1, 2, 1)
        assert [p.version for p in list_profiles(session, "ws_test")] == [2, 1]

    def test_saved_as_draft(self, session):
        saved = save_profile(session, make_profile(status=ProfileStatus.ACTIVE))
        assert saved.status == ProfileStatus.DRAFT

    def test_duplicate_version_rejected(self, session):
        save_profile(session, make_profile())
        session.add(IcpProfileRow(workspace_id="ws_test", version=1, scoring_method="descriptive_heuristic"))
        with pytest.raises(IntegrityError):
            session.flush()

    def test_missing_profile(self, session):
        with pytest.raises(ProfileNotFoundError):
            get_profile(session, "ws_test", "nope")

    def test_profile_scoped_to_workspace(self, session):
        saved = save_profile(session, make_profile())
        with pytest.raises(ProfileNotFoundError):
            get_profile(session, "ws_other", saved.id)

    def test_active_profile(self, session):
        assert get_active_profile(session, "ws_test") is None
        saved = save_profile(session, make_profile())
        row = session.get(IcpProfileRow, saved.id)
        row.status = ProfileStatus.ACTIVE.value
        session.flush()

        active = get_active_profile(session, "ws_test")
        assert active.id == saved.id
        assert [p.id for p in list_profiles(session, "ws_test", ProfileStatus.ACTIVE)] == [saved.id]
        assert list_profiles(session, "ws_test", ProfileStatus.SUPERSEDED) == []


class TestScoreUpsert:

    def test_first_score_has_no_change(self, session):
        previous, change = upsert_score(session, "ws_test", make_score("d1", 50))
        assert (previous, change) == (50, 0)

    def test_rescore_tracks_change(self, session):
        upsert_score(session, "ws_test", make_score("d1", 50))
        previous, change = upsert_score(session, "ws_test", make_score("d1", 72))
        assert (previous, change) == (50, 22)

        stored = get_score(session, "ws_test", EntityType.DEAL, "d1")
        assert stored.total_score == 72
        assert stored.previous_score == 50
        assert stored.score_change == 22
        assert stored.score_breakdown["has_champion"].points == 5

    def test_identical_rescore_is_idempotent(self, session):
        upsert_score(session, "ws_test", make_score("d1", 64))
        assert upsert_score(session, "ws_test", make_score("d1", 64)) == (64, 0)

    def test_entity_type_is_part_of_the_key(self, session):
        upsert_score(session, "ws_test", make_score("x1", 40))
        previous, change = upsert_score(session, "ws_test", make_score("x1", 90, EntityType.CONTACT))
        assert (previous, change) == (90, 0)

    def test_list_scores_filters(self, session):
        upsert_score(session, "ws_test", make_score("d1", 40))
        upsert_score(session, "ws_test", make_score("d2", 90))
        upsert_score(session, "ws_test", make_score("c1", 88, EntityType.CONTACT))
        upsert_score(session, "ws_other", make_score("d9", 99))

        assert [s.entity_id for s in list_scores(session, "ws_test")] == ["d2", "c1", "d1"]
        deals = list_scores(session, "ws_test", entity_type=EntityType.DEAL)
        assert [s.entity_id for s in deals] == ["d2", "d1"]
        graded = list_scores(session, "ws_test", grade=Grade.A)
        assert [s.entity_id for s in graded] == ["d2", "c1"]
        assert [s.entity_id for s in list_scores(session, "ws_test", limit=1, offset=1)] == ["c1"]
