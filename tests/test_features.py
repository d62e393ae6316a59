"""
Tests for Stage 2: title parsing and feature matrices
"""

import logging
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from icp_discovery.models.schemas import CallMetadataFeatures, ClosedDealFeatures, DealOutcome
from icp_discovery.stages import FeatureMatrixBuilder, PointBasedScorer
from icp_discovery.stages.stage2_features import (
    conversation_coverage,
    max_seniority,
    normalize_industry,
    parse_department,
    parse_seniority,
)
from icp_discovery.storage import repositories


# =============================================================================
# TITLE PARSING
# =============================================================================

class TestParseSeniority:

    @pytest.mark.parametrize("title,expected", [
        ("Chief Revenue Officer", "c_level"),
        ("CFO", "c_level"),
        ("SVP Sales", "svp"),
        ("VP Engineering", "vp"),
        ("Head of Procurement", "director"),
        ("Sr. Manager, IT", "senior_manager"),
        ("Team Lead", "manager"),
        ("Principal Architect", "senior_ic"),
        ("Data Analyst", "ic"),
        ("Consultant", "unknown"),
        (None, "unknown"),
        ("", "unknown"),
    ])
    def test_levels(self, title, expected):
        assert parse_seniority(title) == expected


class TestParseDepartment:

    @pytest.mark.parametrize("title,expected", [
        ("Head of Data Engineering", "engineering"),
        ("Marketing Director", "marketing"),
        ("Procurement Lead", "finance"),
        ("Product Manager", "product"),
        ("Data Scientist", "data"),
        ("Director of IT", "engineering"),
        (None, "unknown"),
    ])
    def test_default_keywords(self, title, expected):
        assert parse_department(title) == expected

    def test_keywords_match_from_word_start_only(self):
        assert parse_department("Reengineering Lead") == "unknown"
        assert parse_department("Audit Specialist") == "unknown"

    def test_custom_patterns_checked_first(self):
        patterns = {"revops": ["revenue operations"]}
        assert parse_department("Director, Revenue Operations", patterns) == "revops"

    def test_custom_patterns_match_whole_words(self):
        patterns = {"sales": ["ae"]}
        assert parse_department("Aerospace Engineer", patterns) == "engineering"
        assert parse_department("Senior AE", patterns) == "sales"


class TestNormalizeIndustry:

    @pytest.mark.parametrize("raw,expected", [
        ("COMPUTER_SOFTWARE", "Computer Software"),
        ("financial services", "Financial Services"),
        ("Computer Software", "Computer Software"),
        ("AEROSPACE_AND_DEFENSE", "Aerospace & Defense"),
        ("oil & gas", "Oil & gas"),
        ("  ", None),
        (None, None),
    ])
    def test_normalization(self, raw, expected):
        assert normalize_industry(raw) == expected


class TestMaxSeniority:

    def test_senior_manager_counts_as_manager(self):
        assert max_seniority(["ic", "senior_manager"]) == "manager"

    def test_highest_level_wins(self):
        assert max_seniority(["vp", "c_level", "director"]) == "c_level"

    def test_defaults_to_ic(self):
        assert max_seniority([]) == "ic"
        assert max_seniority(["senior_ic", "unknown"]) == "ic"


# =============================================================================
# CLOSED MATRIX
# =============================================================================

@pytest.fixture
def builder():
    return FeatureMatrixBuilder()


class TestClosedMatrix:

    def test_one_vector_per_closed_deal(self, builder, session, descriptive_workspace, as_of):
        matrix = builder.build_closed(session, descriptive_workspace, as_of=as_of)
        assert len(matrix) == 40
        assert sum(1 for d in matrix if d.won) == 25
        # most recently closed first
        assert matrix[0].deal_name == "Lost deal 0"

    def test_committee_and_account_features(self, builder, session, descriptive_workspace, as_of):
        matrix = builder.build_closed(session, descriptive_workspace, as_of=as_of)
        deal = next(d for d in matrix if d.deal_name == "Won deal 0")

        assert deal.outcome == DealOutcome.WON
        assert deal.amount == 50000
        assert deal.sales_cycle_days == 60
        assert deal.account.industry == "Computer Software"
        assert deal.account.employee_count == 200
        assert deal.custom_fields == {"segment": "enterprise"}

        committee = deal.committee
        assert committee.size == 2
        assert committee.has_champion is True
        assert committee.has_economic_buyer is True
        assert committee.has_decision_maker is False
        assert committee.max_seniority == "vp"
        assert sorted(c.persona_key for c in committee.contacts) == [
            "director__finance", "vp__engineering",
        ]
        assert deal.enrichment.roles_identified == 2
        assert deal.enrichment.has_enrichment_data is False

    def test_deal_without_related_records(self, builder, session, seeder):
        seeder.deal("closed_lost")
        seeder.commit()
        deal = builder.build_closed(session, seeder.workspace_id)[0]
        assert deal.amount == 0
        assert deal.committee.size == 0
        assert deal.committee.max_seniority == "ic"
        assert deal.engagement.total_activities == 0
        assert deal.account.industry is None

    def test_verified_values_override_title(self, builder, session, seeder):
        deal = seeder.deal("closed_won", amount=1000)
        contact = seeder.contact(title="Analyst")
        seeder.role(deal, contact, buying_role="decision_maker", seniority="c_level", department="finance")
        seeder.commit()

        vector = builder.build_closed(session, seeder.workspace_id)[0]
        assert vector.committee.contacts[0].persona_key == "c_level__finance"
        assert vector.enrichment.c_level_present is True
        assert vector.enrichment.decision_maker_count == 1

    def test_workspace_department_patterns(self, builder, session, seeder):
        seeder.department_patterns({"revops": ["revenue operations"]})
        deal = seeder.deal("closed_won", amount=1000)
        contact = seeder.contact(title="VP Revenue Operations")
        seeder.role(deal, contact, buying_role="champion")
        seeder.commit()

        vector = builder.build_closed(session, seeder.workspace_id)[0]
        assert vector.committee.contacts[0].department == "revops"

    def test_engagement_velocity(self, builder, session, seeder, as_of):
        close = as_of.date()
        deal = seeder.deal("closed_won", amount=1000, close_date=close, created_at=as_of - timedelta(days=28))
        for day in range(8):
            seeder.activity(deal, "email", as_of - timedelta(days=day + 1))
        seeder.commit()

        vector = builder.build_closed(session, seeder.workspace_id, as_of=as_of)[0]
        assert vector.sales_cycle_days == 28
        assert vector.engagement.total_activities == 8
        assert vector.engagement.engagement_velocity == pytest.approx(2.0)

    def test_closed_call_metadata(self, builder, session, seeder, as_of):
        deal = seeder.deal("closed_won", amount=1000, close_date=as_of.date(), created_at=as_of - timedelta(days=30))
        seeder.conversation(deal, as_of - timedelta(days=20), duration_seconds=600)
        seeder.conversation(deal, as_of - timedelta(days=10), duration_seconds=1200)
        seeder.commit()

        calls = builder.build_closed(session, seeder.workspace_id, as_of=as_of)[0].calls
        assert calls.call_count == 2
        assert calls.total_call_minutes == pytest.approx(30)
        assert calls.avg_call_duration_minutes == pytest.approx(15)
        assert calls.days_between_calls_avg == pytest.approx(10)
        assert calls.first_call_timing == pytest.approx(10)
        # close date is midnight, the last call was at noon
        assert calls.last_call_to_close == pytest.approx(9.5)
        assert calls.call_density == pytest.approx(2 / 30)

    def test_single_call_has_no_gap_average(self, builder, session, seeder, as_of):
        deal = seeder.deal("closed_lost", close_date=as_of.date(), created_at=as_of - timedelta(days=5))
        seeder.conversation(deal, as_of - timedelta(days=2), duration_seconds=None)
        seeder.commit()

        calls = builder.build_closed(session, seeder.workspace_id, as_of=as_of)[0].calls
        assert calls.call_count == 1
        assert calls.total_call_minutes == 0
        assert calls.days_between_calls_avg is None

    def test_deal_without_calls_has_no_call_metadata(self, builder, session, seeder, as_of):
        seeder.deal("closed_won", amount=1000)
        seeder.commit()
        assert builder.build_closed(session, seeder.workspace_id, as_of=as_of)[0].calls is None

    def test_failing_closed_call_lookup_is_skipped(self, builder, session, seeder, as_of, monkeypatch, caplog):
        deal = seeder.deal("closed_won", amount=1000)
        seeder.conversation(deal, as_of - timedelta(days=3))
        seeder.commit()

        def boom(*args, **kwargs):
            raise OperationalError("SELECT ...", {}, Exception("no such table: conversations"))

        monkeypatch.setattr(repositories, "get_deal_calls", boom)
        with caplog.at_level(logging.WARNING):
            matrix = builder.build_closed(session, seeder.workspace_id, as_of=as_of)

        assert matrix[0].calls is None
        assert "Conversation lookup failed" in caplog.text


class TestConversationCoverage:

    def vector(self, deal_id, call_count=0):
        calls = CallMetadataFeatures(call_count=call_count) if call_count else None
        return ClosedDealFeatures(deal_id=deal_id, outcome=DealOutcome.WON, calls=calls)

    def test_no_calls_is_tier_zero(self):
        coverage = conversation_coverage([self.vector("d1"), self.vector("d2")])
        assert coverage.deals_with_conversations == 0
        assert coverage.coverage_pct == 0
        assert coverage.avg_conversations_per_deal == 0
        assert coverage.tier == 0

    def test_empty_matrix(self):
        assert conversation_coverage([]).tier == 0

    def test_counts_and_average(self):
        matrix = [self.vector("d1", 3), self.vector("d2", 1), self.vector("d3"), self.vector("d4")]
        coverage = conversation_coverage(matrix)
        assert coverage.deals_with_conversations == 2
        assert coverage.deals_without_conversations == 2
        assert coverage.coverage_pct == pytest.approx(50)
        assert coverage.total_conversations == 4
        assert coverage.avg_conversations_per_deal == pytest.approx(2)
        assert coverage.tier == 2

    @pytest.mark.parametrize("with_calls,tier", [(1, 1), (2, 1), (3, 2), (6, 2), (7, 3), (10, 3)])
    def test_tier_thresholds(self, with_calls, tier):
        matrix = [self.vector(f"d{i}", 1 if i < with_calls else 0) for i in range(10)]
        assert conversation_coverage(matrix).tier == tier


# =============================================================================
# OPEN MATRIX
# =============================================================================

class TestOpenMatrix:

    def test_open_deal_vector(self, builder, session, scoring_workspace, as_of):
        deal_row, _ = scoring_workspace
        deals, contacts = builder.build_open(session, "ws_test", as_of)

        assert len(deals) == 1
        deal = deals[0]
        assert deal.deal_id == deal_row.id
        assert deal.stage == "decision"
        assert deal.account.industry == "Financial Services"

        assert deal.engagement.total_activities == 15
        assert (deal.engagement.emails, deal.engagement.calls, deal.engagement.meetings) == (5, 5, 5)
        assert deal.engagement.active_days == 8
        assert deal.engagement.recent_activities == 10

        assert deal.days_since_creation == 25
        assert deal.days_until_close == 44
        assert deal.days_since_last_activity == 10

        assert deal.threading.total_contacts == 3
        assert deal.threading.unique_roles == 3
        assert deal.threading.power_contacts == 2
        assert deal.threading.champions == 1
        assert deal.threading.persona_keys == ["c_level__finance", "ic__engineering", "vp__engineering"]
        assert deal.conversations is None

        assert len(contacts) == 3

    def test_closed_deals_are_excluded(self, builder, session, seeder):
        seeder.deal("closed_won", amount=5000)
        seeder.deal("evaluation", amount=5000)
        seeder.commit()
        deals, _ = builder.build_open(session, seeder.workspace_id)
        assert [d.stage for d in deals] == ["evaluation"]

    def test_contact_on_two_deals_is_collapsed(self, builder, session, seeder, as_of):
        first = seeder.deal("evaluation", amount=5000)
        second = seeder.deal("qualification", amount=8000)
        contact = seeder.contact(title="Analyst", email="a@example.com")
        seeder.role(first, contact, buying_role="influencer")
        seeder.role(second, contact, buying_role="champion", seniority="director")
        seeder.activity(first, "email", as_of - timedelta(days=1), contact=contact)
        seeder.activity(second, "call", as_of - timedelta(days=2), contact=contact)
        seeder.activity(second, "call", as_of - timedelta(days=3), contact=contact)
        seeder.commit()

        _, contacts = builder.build_open(session, seeder.workspace_id, as_of)
        assert len(contacts) == 1
        vector = contacts[0]
        assert sorted(vector.deal_ids) == sorted([first.id, second.id])
        assert vector.buying_role == "champion"
        assert vector.seniority == "director"
        assert vector.activities_on_deals == 3

    def test_scheduled_activity_not_counted_as_recent(self, builder, session, seeder, as_of):
        deal = seeder.deal("evaluation", amount=5000)
        seeder.activity(deal, "email", as_of - timedelta(days=20))
        seeder.activity(deal, "task", as_of + timedelta(days=29))
        seeder.commit()

        deals, _ = builder.build_open(session, seeder.workspace_id, as_of)
        engagement = deals[0].engagement
        assert engagement.total_activities == 2
        assert engagement.last_activity == as_of - timedelta(days=20)
        assert engagement.recent_activities == 0
        assert deals[0].days_since_last_activity == 20

    def test_only_scheduled_activity_scores_as_inactive(self, builder, session, seeder, as_of):
        deal = seeder.deal("evaluation", amount=5000)
        seeder.activity(deal, "task", as_of + timedelta(days=29))
        seeder.commit()

        deals, _ = builder.build_open(session, seeder.workspace_id, as_of)
        assert deals[0].days_since_last_activity is None
        breakdown = PointBasedScorer().score_deal(deals[0], [], False, as_of=as_of).score_breakdown
        assert breakdown["days_since_activity"].points == -8

    def test_verified_seniority_replaces_parsed_title(self, builder, session, seeder):
        first = seeder.deal("evaluation", amount=5000)
        second = seeder.deal("decision", amount=9000)
        contact = seeder.contact(title="VP Engineering")
        seeder.role(first, contact, buying_role="influencer", seniority="manager")
        seeder.role(second, contact, buying_role="influencer", seniority="senior_ic")
        unverified = seeder.contact(title="VP Engineering")
        seeder.role(first, unverified, buying_role="influencer")
        seeder.commit()

        _, contacts = builder.build_open(session, seeder.workspace_id)
        by_id = {c.contact_id: c for c in contacts}
        assert by_id[contact.id].seniority == "manager"
        assert by_id[unverified.id].seniority == "vp"

    def test_call_stats_loaded_with_connector(self, builder, session, seeder, as_of):
        deal = seeder.deal("negotiation", amount=5000)
        seeder.conversation(deal, as_of - timedelta(days=3), duration_seconds=1200)
        seeder.conversation(deal, as_of - timedelta(days=30), duration_seconds=2400)
        seeder.commit()

        deals, _ = builder.build_open(session, seeder.workspace_id, as_of, include_conversations=True)
        calls = deals[0].conversations
        assert calls.total_calls == 2
        assert calls.recent_calls == 1
        assert calls.avg_duration_seconds == pytest.approx(1800)
        assert calls.last_call == as_of - timedelta(days=3)

    def test_deal_without_calls_gets_zeroed_stats(self, builder, session, seeder, as_of):
        seeder.deal("negotiation", amount=5000)
        seeder.commit()
        deals, _ = builder.build_open(session, seeder.workspace_id, as_of, include_conversations=True)
        assert deals[0].conversations.total_calls == 0
        assert deals[0].conversations.last_call is None

    def test_failing_call_lookup_is_skipped(self, builder, session, seeder, as_of, monkeypatch, caplog):
        seeder.deal("negotiation", amount=5000)
        seeder.commit()

        def boom(*args, **kwargs):
            raise OperationalError("SELECT ...", {}, Exception("no such table: conversations"))

        monkeypatch.setattr(repositories, "get_conversation_stats", boom)
        with caplog.at_level(logging.WARNING):
            deals, _ = builder.build_open(session, seeder.workspace_id, as_of, include_conversations=True)

        assert deals[0].conversations is None
        assert "Conversation lookup failed" in caplog.text
