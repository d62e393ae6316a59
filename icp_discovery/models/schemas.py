"""
Pydantic schemas for ICP Discovery Engine
"""

from enum import Enum
from typing import List, Dict, Optional, Union
from pydantic import BaseModel, Field, StrictBool, StrictFloat, StrictInt, StrictStr
from datetime import date, datetime


# Custom-field and breakdown values are restricted to scalar JSON types.
# StrictBool comes first so True/False never coerce into 1/0.
FieldValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]
CustomFields = Dict[str, FieldValue]


# =============================================================================
# ENUMS
# =============================================================================

class AnalysisMode(str, Enum):
    """Statistical mode selected from corpus size"""
    ABORT = "abort"
    DESCRIPTIVE = "descriptive"
    POINT_BASED = "point_based"
    REGRESSION = "regression"


class DealOutcome(str, Enum):
    """Outcome of a closed deal"""
    WON = "won"
    LOST = "lost"


class Grade(str, Enum):
    """Lead score grade"""
    A = "A"
    B = "B"
    C = "C"
    D = "D"
    F = "F"


class ProfileStatus(str, Enum):
    """ICP profile lifecycle state"""
    DRAFT = "draft"
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class EntityType(str, Enum):
    """Kind of record a lead score belongs to"""
    DEAL = "deal"
    CONTACT = "contact"


class ScoringMethod(str, Enum):
    """How a lead score was produced"""
    POINT_BASED = "point_based"
    ICP_POINT_BASED = "icp_point_based"


# =============================================================================
# READINESS
# =============================================================================

class ReadinessCounts(BaseModel):
    """Aggregate corpus counts consumed by the readiness classifier"""
    won_count: int = 0
    lost_count: int = 0
    deals_with_contacts: int = 0
    total_contact_roles: int = 0
    unique_contacts: int = 0
    custom_fields_available: int = 0
    has_conversations: bool = False
    has_enrichment: bool = False

    @property
    def total_closed(self) -> int:
        return self.won_count + self.lost_count


class DataReadiness(BaseModel):
    """Result from Stage 1: Data Readiness"""
    mode: AnalysisMode
    won_count: int = 0
    lost_count: int = 0
    total_closed: int = 0
    deals_with_contacts: int = 0
    total_contact_roles: int = 0
    unique_contacts: int = 0
    custom_fields_available: int = 0
    has_conversations: bool = False
    has_enrichment: bool = False
    reasons: List[str] = Field(default_factory=list)
    processing_time_ms: float = 0


# =============================================================================
# FEATURE VECTORS
# =============================================================================

class ContactRoleFeatures(BaseModel):
    """One contact's role on a deal, with parsed or verified title attributes"""
    contact_id: str
    title: Optional[str] = None
    buying_role: Optional[str] = None
    seniority: str = "unknown"
    department: str = "unknown"
    enriched: bool = False

    @property
    def persona_key(self) -> str:
        return f"{self.seniority}__{self.department}"


class CommitteeFeatures(BaseModel):
    """Buying committee composition for one deal"""
    size: int = 0
    contacts: List[ContactRoleFeatures] = Field(default_factory=list)
    titles: List[str] = Field(default_factory=list)
    buying_roles: List[str] = Field(default_factory=list)
    unique_roles: int = 0
    has_champion: bool = False
    has_economic_buyer: bool = False
    has_decision_maker: bool = False
    has_technical_evaluator: bool = False
    max_seniority: str = "ic"


class EngagementFeatures(BaseModel):
    """Activity counters for one deal"""
    total_activities: int = 0
    emails: int = 0
    calls: int = 0
    meetings: int = 0
    tasks: int = 0
    active_days: int = 0
    last_activity: Optional[datetime] = None
    recent_activities: int = 0
    engagement_velocity: float = 0


class EnrichmentFeatures(BaseModel):
    """Contact enrichment coverage for one deal"""
    has_enrichment_data: bool = False
    roles_identified: int = 0
    decision_maker_count: int = 0
    c_level_present: bool = False
    buying_committee_complete: bool = False


class CallMetadataFeatures(BaseModel):
    """Recorded call metadata for one closed deal"""
    call_count: int = 0
    total_call_minutes: float = 0
    avg_call_duration_minutes: float = 0
    days_between_calls_avg: Optional[float] = None
    first_call_timing: Optional[float] = None  # days from creation to first call
    last_call_to_close: Optional[float] = None  # days from last call to close
    call_density: float = 0  # calls per sales-cycle day


class AccountFeatures(BaseModel):
    """Account attributes joined onto a deal"""
    account_id: Optional[str] = None
    name: Optional[str] = None
    industry: Optional[str] = None
    employee_count: Optional[int] = None
    annual_revenue: Optional[float] = None
    custom_fields: CustomFields = Field(default_factory=dict)


class ClosedDealFeatures(BaseModel):
    """Feature vector for one historically closed deal"""
    deal_id: str
    deal_name: Optional[str] = None
    outcome: DealOutcome
    amount: float = 0
    sales_cycle_days: int = 0
    owner: Optional[str] = None
    close_date: Optional[date] = None
    account: AccountFeatures = Field(default_factory=AccountFeatures)
    committee: CommitteeFeatures = Field(default_factory=CommitteeFeatures)
    engagement: EngagementFeatures = Field(default_factory=EngagementFeatures)
    enrichment: EnrichmentFeatures = Field(default_factory=EnrichmentFeatures)
    calls: Optional[CallMetadataFeatures] = None
    custom_fields: CustomFields = Field(default_factory=dict)

    @property
    def won(self) -> bool:
        return self.outcome == DealOutcome.WON


class ThreadingFeatures(BaseModel):
    """Contact threading on an open deal"""
    total_contacts: int = 0
    unique_roles: int = 0
    power_contacts: int = 0
    champions: int = 0
    roles_present: List[str] = Field(default_factory=list)
    persona_keys: List[str] = Field(default_factory=list)


class ConversationFeatures(BaseModel):
    """Recorded call statistics for an open deal"""
    total_calls: int = 0
    last_call: Optional[datetime] = None
    avg_duration_seconds: Optional[float] = None
    recent_calls: int = 0


class OpenDealFeatures(BaseModel):
    """Feature vector for one currently open deal"""
    deal_id: str
    deal_name: Optional[str] = None
    amount: Optional[float] = None
    stage: Optional[str] = None
    close_date: Optional[date] = None
    probability: Optional[float] = None
    owner: Optional[str] = None
    created_at: Optional[datetime] = None
    account: AccountFeatures = Field(default_factory=AccountFeatures)
    custom_fields: CustomFields = Field(default_factory=dict)
    engagement: EngagementFeatures = Field(default_factory=EngagementFeatures)
    threading: ThreadingFeatures = Field(default_factory=ThreadingFeatures)
    conversations: Optional[ConversationFeatures] = None
    days_since_creation: int = 0
    days_until_close: Optional[int] = None
    days_since_last_activity: Optional[int] = None


class OpenContactFeatures(BaseModel):
    """Feature vector for one contact attached to open deals"""
    contact_id: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    title: Optional[str] = None
    buying_role: Optional[str] = None
    seniority: str = "unknown"
    deal_ids: List[str] = Field(default_factory=list)
    activities_on_deals: int = 0


# =============================================================================
# DISCOVERY RESULT SCHEMAS
# =============================================================================

class PersonaPattern(BaseModel):
    """A (seniority x department) cluster and its win/loss lift"""
    key: str
    name: str
    seniority: str
    department: str
    top_titles: List[str] = Field(default_factory=list)
    top_buying_roles: List[str] = Field(default_factory=list)
    frequency_in_won: float = 0
    frequency_in_lost: float = 0
    lift: float = 0
    deal_count: int = 0
    won_deal_count: int = 0
    lost_deal_count: int = 0
    avg_deal_size_won: float = 0
    avg_deal_size_lost: float = 0
    deal_size_lift: float = 0
    confidence: float = 0.3


class CommitteeCombo(BaseModel):
    """A persona pair that co-occurs on closed deals"""
    personas: List[str]
    persona_names: List[str]
    won_count: int = 0
    lost_count: int = 0
    total_count: int = 0
    win_rate: float = 0
    avg_deal_size: float = 0
    lift: float = 0


class IndustryWinRate(BaseModel):
    industry: str
    win_rate: float
    avg_deal: float = 0
    count: int = 0


class SizeWinRate(BaseModel):
    bucket: str
    win_rate: float
    avg_deal: float = 0
    count: int = 0


class FieldValueSegment(BaseModel):
    value: str
    win_rate: float
    avg_deal: float = 0
    count: int = 0


class CustomFieldSegment(BaseModel):
    """Win rates per value of one relevant custom field"""
    field_key: str
    entity_type: str = "deal"
    field_label: str
    segments: List[FieldValueSegment] = Field(default_factory=list)


class LeadSourceFunnel(BaseModel):
    """Lead to closed-deal conversion for one lead source"""
    source: str
    leads: int = 0
    converted: int = 0
    conversion_rate: float = 0
    won_deals: int = 0
    lost_deals: int = 0
    full_funnel_rate: float = 0
    avg_won_amount: float = 0


class SweetSpot(BaseModel):
    description: str
    win_rate: float
    avg_deal: float = 0
    count: int = 0
    lift: float = 0


class CompanyProfile(BaseModel):
    """Company-level segment win rates"""
    baseline_win_rate: float = 0
    industry_win_rates: List[IndustryWinRate] = Field(default_factory=list)
    size_win_rates: List[SizeWinRate] = Field(default_factory=list)
    custom_field_segments: List[CustomFieldSegment] = Field(default_factory=list)
    lead_source_funnel: List[LeadSourceFunnel] = Field(default_factory=list)
    sweet_spots: List[SweetSpot] = Field(default_factory=list)


class ScoringWeights(BaseModel):
    """Point weights synthesized from discovery output"""
    method: str = "descriptive_heuristic"
    personas: Dict[str, int] = Field(default_factory=dict)
    custom_fields: Dict[str, Dict[str, Dict[str, int]]] = Field(default_factory=dict)  # entity type -> field -> value
    industries: Dict[str, int] = Field(default_factory=dict)
    note: str = ""


class ConversationCoverage(BaseModel):
    """Share of closed deals with linked calls"""
    deals_with_conversations: int = 0
    deals_without_conversations: int = 0
    coverage_pct: float = 0
    total_conversations: int = 0
    avg_conversations_per_deal: float = 0
    tier: int = 0


class ProfileMetadata(BaseModel):
    deals_analyzed: int = 0
    won_count: int = 0
    lost_count: int = 0
    contact_roles_used: int = 0
    custom_fields_used: int = 0
    analysis_mode: AnalysisMode = AnalysisMode.DESCRIPTIVE
    readiness_reasons: List[str] = Field(default_factory=list)
    execution_ms: float = 0
    conversation_coverage: ConversationCoverage = Field(default_factory=ConversationCoverage)


class ICPProfile(BaseModel):
    """Persisted discovery snapshot"""
    id: Optional[str] = None
    workspace_id: str
    version: Optional[int] = None
    status: ProfileStatus = ProfileStatus.DRAFT
    personas: List[PersonaPattern] = Field(default_factory=list)
    buying_committees: List[CommitteeCombo] = Field(default_factory=list)
    company_profile: CompanyProfile = Field(default_factory=CompanyProfile)
    scoring_weights: ScoringWeights = Field(default_factory=ScoringWeights)
    scoring_method: str = "descriptive_heuristic"
    model_metadata: ProfileMetadata = Field(default_factory=ProfileMetadata)
    deals_analyzed: int = 0
    won_deals: int = 0
    lost_deals: int = 0
    contacts_enriched: int = 0
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    generated_by: str = "icp-discovery"


class DiscoveryResult(BaseModel):
    """Summary returned from a discovery run"""
    workspace_id: str
    run_id: str
    mode: AnalysisMode
    profile_id: str
    version: int
    readiness: DataReadiness
    deals_analyzed: int = 0
    personas_found: int = 0
    committees_found: int = 0
    sweet_spots_found: int = 0
    processing_time_ms: float = 0


# =============================================================================
# SCORING SCHEMAS
# =============================================================================

class ScoreComponent(BaseModel):
    """One dimension of a score breakdown"""
    value: Optional[FieldValue] = None
    points: float = 0
    weight: float = 0


class CustomFieldWeight(BaseModel):
    """Per-value points for a custom field used in scoring"""
    field_key: str
    entity_type: str
    value_scores: Dict[str, int] = Field(default_factory=dict)
    max_points: int = 10


class LeadScore(BaseModel):
    """Point-based score for a deal or contact"""
    entity_type: EntityType
    entity_id: str
    total_score: int
    score_breakdown: Dict[str, ScoreComponent] = Field(default_factory=dict)
    score_grade: Grade
    scoring_method: ScoringMethod = ScoringMethod.POINT_BASED
    icp_profile_id: Optional[str] = None
    previous_score: Optional[int] = None
    score_change: Optional[int] = None
    scored_at: datetime = Field(default_factory=datetime.utcnow)


class RankedDeal(BaseModel):
    id: str
    name: str = ""
    score: int
    grade: Grade


class ScoreMover(BaseModel):
    id: str
    name: str = ""
    change: int
    previous: int
    current: int


class RepScore(BaseModel):
    avg_score: int = 0
    deal_count: int = 0


class CustomFieldContribution(BaseModel):
    field_key: str
    entity_type: str = "deal"
    avg_points: float = 0
    top_value: str = ""
    top_value_score: float = 0


class ScoringSummary(BaseModel):
    """Aggregate statistics over one scoring run"""
    total_deals: int = 0
    total_contacts: int = 0
    grade_distribution: Dict[str, int] = Field(
        default_factory=lambda: {grade.value: 0 for grade in Grade}
    )
    avg_deal_score: int = 0
    top_deals: List[RankedDeal] = Field(default_factory=list)
    bottom_deals: List[RankedDeal] = Field(default_factory=list)
    movers: List[ScoreMover] = Field(default_factory=list)
    rep_scores: Dict[str, RepScore] = Field(default_factory=dict)
    custom_field_contributions: List[CustomFieldContribution] = Field(default_factory=list)


class ScoringRunResult(BaseModel):
    """Result of a scoring run"""
    workspace_id: str
    run_id: str
    icp_profile_id: Optional[str] = None
    deal_scores: List[LeadScore] = Field(default_factory=list)
    contact_scores: List[LeadScore] = Field(default_factory=list)
    summary: ScoringSummary = Field(default_factory=ScoringSummary)
    processing_time_ms: float = 0
