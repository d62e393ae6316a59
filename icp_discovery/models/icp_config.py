"""
ICP Discovery Configuration Models
"""

from typing import List, Dict, Optional
from pydantic import BaseModel, Field

from ..config.settings import (
    READINESS_THRESHOLDS,
    DISCOVERY_THRESHOLDS,
    DEFAULT_DEAL_WEIGHTS,
    DEFAULT_CONTACT_WEIGHTS,
    STAGE_ORDER,
    LATE_STAGES,
    CONVERSATION_SOURCES,
    SCORING_FIELD_MIN_RELEVANCE,
    QUERY_CHUNK_SIZE,
)


class ReadinessConfig(BaseModel):
    """Thresholds for Stage 1: Data Readiness"""
    min_closed_deals: int = READINESS_THRESHOLDS["min_closed_deals"]
    descriptive_min_deals_with_contacts: int = READINESS_THRESHOLDS["descriptive_min_deals_with_contacts"]
    point_based_min_deals_with_contacts: int = READINESS_THRESHOLDS["point_based_min_deals_with_contacts"]
    regression_min_deals_with_contacts: int = READINESS_THRESHOLDS["regression_min_deals_with_contacts"]


class DiscoveryConfig(BaseModel):
    """Sample-size floors and multipliers for the pattern miners"""
    min_persona_deals: int = DISCOVERY_THRESHOLDS["min_persona_deals"]
    min_committee_support: int = DISCOVERY_THRESHOLDS["min_committee_support"]
    max_committee_combos: int = DISCOVERY_THRESHOLDS["max_committee_combos"]
    min_segment_deals: int = DISCOVERY_THRESHOLDS["min_segment_deals"]
    min_lead_source_leads: int = DISCOVERY_THRESHOLDS["min_lead_source_leads"]
    sweet_spot_multiplier: float = DISCOVERY_THRESHOLDS["sweet_spot_multiplier"]
    min_sweet_spot_deals: int = DISCOVERY_THRESHOLDS["min_sweet_spot_deals"]
    segment_field_min_relevance: float = DISCOVERY_THRESHOLDS["segment_field_min_relevance"]
    persona_lift_multiplier: float = DISCOVERY_THRESHOLDS["persona_lift_multiplier"]
    max_point_weight: int = DISCOVERY_THRESHOLDS["max_point_weight"]
    top_titles: int = DISCOVERY_THRESHOLDS["top_titles"]
    top_buying_roles: int = DISCOVERY_THRESHOLDS["top_buying_roles"]


class PenaltyConfig(BaseModel):
    """Constants behind the negative scoring dimensions"""
    inactivity_points_per_week: int = -2
    no_calls_late_stage_points: Optional[int] = None  # None uses the dimension weight (-5)
    late_stages: List[str] = Field(default_factory=lambda: list(LATE_STAGES))


class ScoringConfig(BaseModel):
    """Configuration for the point-based scorer"""
    deal_weights: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_DEAL_WEIGHTS))
    contact_weights: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_CONTACT_WEIGHTS))
    stage_order: List[str] = Field(default_factory=lambda: list(STAGE_ORDER))
    recent_window_days: int = 14
    close_horizon_days: int = 180
    velocity_fast_days: int = 30
    velocity_slow_days: int = 60
    min_call_volume: int = 3
    activities_per_point: int = 5
    active_days_per_point: int = 3
    contact_activity_points: int = 3
    conversation_sources: List[str] = Field(default_factory=lambda: list(CONVERSATION_SOURCES))
    custom_field_min_relevance: float = SCORING_FIELD_MIN_RELEVANCE
    use_active_profile: bool = True
    penalties: PenaltyConfig = Field(default_factory=PenaltyConfig)


class EngineConfig(BaseModel):
    """Complete engine configuration"""
    name: str = "Default ICP Discovery"
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    query_chunk_size: int = QUERY_CHUNK_SIZE

    class Config:
        extra = "allow"


def create_default_engine_config(
    recent_window_days: Optional[int] = None,
    inactivity_points_per_week: Optional[int] = None,
    no_calls_late_stage_points: Optional[int] = None,
) -> EngineConfig:
    """
    Factory function to create an engine config with sensible defaults
    """
    config = EngineConfig()

    if recent_window_days is not None:
        config.scoring.recent_window_days = recent_window_days

    if inactivity_points_per_week is not None:
        config.scoring.penalties.inactivity_points_per_week = inactivity_points_per_week

    if no_calls_late_stage_points is not None:
        config.scoring.penalties.no_calls_late_stage_points = no_calls_late_stage_points

    return config
