"""
Tests for Stage 5: scoring weight synthesis
"""

from icp_discovery.config.settings import WEIGHTS_METHOD
from icp_discovery.models.schemas import (
    CompanyProfile,
    CustomFieldSegment,
    FieldValueSegment,
    IndustryWinRate,
    PersonaPattern,
)
from icp_discovery.stages import ScoringWeightSynthesizer
from icp_discovery.stages.stage5_weights import persona_weight_key


def persona(seniority, department, lift):
    return PersonaPattern(
        key=f"{seniority}__{department}",
        name=f"{seniority} {department}",
        seniority=seniority,
        department=department,
        lift=lift,
        deal_count=10,
    )


class TestPersonaWeights:

    def test_key_format(self):
        assert persona_weight_key("vp", "engineering") == "persona_vp_engineering"

    def test_lift_times_three_rounded_half_up(self):
        weights = ScoringWeightSynthesizer().process(
            [persona("director", "finance", 1.8), persona("ic", "data", 0.5)],
            CompanyProfile(),
        )
        # 1.8 x 3 = 5.4 -> 5 and 0.5 x 3 = 1.5 -> 2
        assert weights.personas == {"persona_director_finance": 5, "persona_ic_data": 2}

    def test_capped_at_ten(self):
        weights = ScoringWeightSynthesizer().process([persona("vp", "sales", 10.0)], CompanyProfile())
        assert weights.personas["persona_vp_sales"] == 10


class TestSegmentWeights:

    def test_field_values_relative_to_best(self):
        company = CompanyProfile(custom_field_segments=[
            CustomFieldSegment(field_key="segment", field_label="segment", segments=[
                FieldValueSegment(value="enterprise", win_rate=0.5, count=10),
                FieldValueSegment(value="smb", win_rate=0.125, count=10),
            ]),
        ])
        weights = ScoringWeightSynthesizer().process([], company)
        # 0.125 / 0.5 x 10 = 2.5 -> 3
        assert weights.custom_fields == {"deal": {"segment": {"enterprise": 10, "smb": 3}}}

    def test_field_with_no_wins_gets_no_entry(self):
        company = CompanyProfile(custom_field_segments=[
            CustomFieldSegment(field_key="region", field_label="region", segments=[
                FieldValueSegment(value="west", win_rate=0, count=5),
            ]),
        ])
        assert ScoringWeightSynthesizer().process([], company).custom_fields == {}

    def test_deal_and_account_fields_sharing_a_key(self):
        company = CompanyProfile(custom_field_segments=[
            CustomFieldSegment(field_key="tier", entity_type="deal", field_label="tier", segments=[
                FieldValueSegment(value="gold", win_rate=0.8, count=6),
            ]),
            CustomFieldSegment(field_key="tier", entity_type="account", field_label="tier", segments=[
                FieldValueSegment(value="silver", win_rate=0.4, count=6),
            ]),
        ])
        weights = ScoringWeightSynthesizer().process([], company)
        assert weights.custom_fields == {
            "deal": {"tier": {"gold": 10}},
            "account": {"tier": {"silver": 10}},
        }

    def test_industries_relative_to_best(self):
        company = CompanyProfile(industry_win_rates=[
            IndustryWinRate(industry="Insurance", win_rate=0.75, count=5),
            IndustryWinRate(industry="Retail", win_rate=0.1875, count=5),
        ])
        weights = ScoringWeightSynthesizer().process([], company)
        assert weights.industries == {"Insurance": 10, "Retail": 3}

    def test_no_industry_wins(self):
        company = CompanyProfile(industry_win_rates=[IndustryWinRate(industry="Retail", win_rate=0, count=5)])
        assert ScoringWeightSynthesizer().process([], company).industries == {}

    def test_method_and_note(self):
        weights = ScoringWeightSynthesizer().process([], CompanyProfile())
        assert weights.method == WEIGHTS_METHOD
        assert "Not validated" in weights.note
