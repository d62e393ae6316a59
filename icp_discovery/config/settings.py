"""
Configuration settings for ICP Discovery Engine
"""

from typing import Dict, List, Tuple
import os

# =============================================================================
# ENVIRONMENT
# =============================================================================

DATABASE_CONFIG = {
    "url": os.getenv("DATABASE_URL", "sqlite:///./icp_discovery.db"),
    "echo": os.getenv("DB_ECHO", "false").lower() == "true",
    "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
    "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
}

LOGGING_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": os.getenv("LOG_FORMAT", "text"),  # text, json
    "file": os.getenv("LOG_FILE", ""),
}

# Max ids per IN (...) clause when batching feature queries
QUERY_CHUNK_SIZE = int(os.getenv("QUERY_CHUNK_SIZE", "500"))

# =============================================================================
# DATA READINESS THRESHOLDS
# =============================================================================

READINESS_THRESHOLDS = {
    "min_closed_deals": 30,
    "descriptive_min_deals_with_contacts": 20,
    "point_based_min_deals_with_contacts": 100,
    "regression_min_deals_with_contacts": 200,
}

# =============================================================================
# DISCOVERY THRESHOLDS
# =============================================================================

DISCOVERY_THRESHOLDS = {
    "min_persona_deals": 5,
    "min_committee_support": 5,
    "max_committee_combos": 10,
    "min_segment_deals": 3,
    "min_lead_source_leads": 5,
    "sweet_spot_multiplier": 1.2,
    "min_sweet_spot_deals": 5,
    "segment_field_min_relevance": 60,
    "persona_lift_multiplier": 3,
    "max_point_weight": 10,
    "top_titles": 5,
    "top_buying_roles": 3,
}

# (min sample size, confidence) checked top-down
CONFIDENCE_TIERS: List[Tuple[int, float]] = [
    (30, 0.9),
    (15, 0.7),
    (5, 0.5),
    (0, 0.3),
]

# Lift reported when a segment never appears in lost deals
MAX_LIFT = 10.0

# (upper bound inclusive, label); larger companies fall into SIZE_BUCKET_OVERFLOW
SIZE_BUCKETS: List[Tuple[int, str]] = [
    (50, "1-50"),
    (200, "51-200"),
    (1000, "201-1000"),
    (5000, "1001-5000"),
]
SIZE_BUCKET_OVERFLOW = "5000+"

WEIGHTS_METHOD = "descriptive_heuristic"
WEIGHTS_NOTE = (
    "Heuristic weights from descriptive analysis. Not validated by regression. "
    "Upgrade to point_based mode with 100+ deals or regression mode with 200+ "
    "deals for validated weights."
)

GENERATED_BY = "icp-discovery"

# =============================================================================
# DEFAULT SCORING WEIGHTS
# =============================================================================

DEFAULT_DEAL_WEIGHTS: Dict[str, int] = {
    # engagement
    "has_recent_activity": 8,
    "activity_volume": 7,
    "multi_channel": 5,
    "active_days": 5,
    # threading
    "multi_threaded": 6,
    "has_champion": 5,
    "has_economic_buyer": 5,
    "role_diversity": 4,
    # deal quality
    "amount_present": 3,
    "amount_tier": 7,
    "probability": 5,
    "stage_advanced": 5,
    "close_date_set": 3,
    "close_date_reasonable": 4,
    # velocity
    "days_since_activity": -8,
    "stage_velocity": 8,
    # conversations
    "has_calls": 5,
    "recent_call": 3,
    "call_volume": 2,
    "no_calls_late_stage": -5,
}

CONVERSATION_DIMENSIONS = {"has_calls", "recent_call", "call_volume", "no_calls_late_stage"}

DEFAULT_CONTACT_WEIGHTS: Dict[str, int] = {
    "has_email": 10,
    "has_phone": 5,
    "has_title": 5,
    "role_assigned": 10,
    "is_power_role": 15,
    "seniority_high": 10,
    "activity_on_deals": 15,
    "multi_deal_contact": 10,
    "deal_quality": 20,
}

CUSTOM_FIELD_DIMENSION_WEIGHT = 10
# Active-profile dimensions
ICP_INDUSTRY_WEIGHT = 15
ICP_COMPANY_SIZE_WEIGHT = 15
ICP_PERSONA_FIT_WEIGHT = 20
ICP_COMMITTEE_WEIGHT = 8
ICP_COMMITTEE_MIN_LIFT = 1.3
ICP_LEAD_SOURCE_WEIGHT = 8
# Segment lift above 1.0 earns this many points per unit
ICP_SEGMENT_LIFT_POINTS = 15
ICP_COMMITTEE_LIFT_POINTS = 10
# Fallback baseline win rate when a profile carries none
ICP_DEFAULT_BASELINE = 0.5
# Deal custom fields holding the lead source, checked in order
LEAD_SOURCE_FIELD_KEYS = ["LeadSource", "lead_source", "hs_analytics_source"]

# Custom-field discovery rows used for scoring
SCORING_FIELD_MIN_RELEVANCE = 50

STAGE_ORDER = ["awareness", "qualification", "evaluation", "decision", "negotiation"]
LATE_STAGES = ["decision", "negotiation"]

AMOUNT_TIERS = [
    (100000, 1.0),
    (50000, 0.6),
]
AMOUNT_TIER_FLOOR = 0.3

CONVERSATION_SOURCES = ["gong", "fireflies"]
# Coverage % below which a workspace drops to conversation tier 1, then 2
CONVERSATION_TIER_THRESHOLDS = (30, 70)

POWER_ROLES = ["champion", "economic_buyer", "decision_maker"]
# Committee flag on closed deals vs the has_economic_buyer scoring dimension
ECONOMIC_BUYER_ROLES = ["economic_buyer", "executive_sponsor"]
SCORING_ECONOMIC_BUYER_ROLES = ["economic_buyer", "decision_maker"]
HIGH_SENIORITY = ["c_level", "svp", "vp", "director"]

# =============================================================================
# GRADE MAPPING
# =============================================================================

GRADE_MAPPING = [
    (85, 100, "A", "Strong fit - prioritize"),
    (70, 84, "B", "Good fit - standard process"),
    (50, 69, "C", "Moderate fit - needs attention"),
    (30, 49, "D", "Weak fit - low priority"),
    (0, 29, "F", "Poor fit"),
]

# =============================================================================
# TITLE PARSING
# =============================================================================

# Checked in order; first match wins
SENIORITY_PATTERNS: List[Tuple[str, str]] = [
    ("c_level", r"\b(ceo|cto|cfo|coo|cio|chief|founder|president)\b"),
    ("svp", r"\b(svp|senior vice president|evp|executive vice)\b"),
    ("vp", r"\b(vp|vice president)\b"),
    ("director", r"\b(director|head of)\b"),
    ("senior_manager", r"\b(senior manager|sr\.? manager)\b"),
    ("manager", r"\b(manager|lead|team lead)\b"),
    ("senior_ic", r"\b(senior|sr\.?|principal|staff)\b"),
    ("ic", r"\b(engineer|analyst|specialist|coordinator|associate)\b"),
]

# Rank used for max-seniority on a committee
SENIORITY_RANK = {
    "c_level": 8,
    "svp": 7,
    "vp": 6,
    "director": 5,
    "senior_manager": 4,
    "manager": 3,
    "senior_ic": 2,
    "ic": 1,
    "unknown": 0,
}

# Keyword stems per department, matched from a word boundary against the
# lowercased title. Checked in order; first match wins.
DEPARTMENT_KEYWORDS: Dict[str, List[str]] = {
    "engineering": ["engineer", "technical", "architect", "developer", "devops", r"it\b", r"cto\b", "technology"],
    "operations": ["process", "operations", "plant", "refinery", "manufacturing", "production"],
    "sales": ["sales", "account exec", "business develop", "commercial"],
    "marketing": ["marketing", "growth", "demand gen", "content"],
    "finance": ["finance", r"cfo\b", "controller", "accounting", "procurement", "purchasing"],
    "product": ["product", r"pm\b", "product manag"],
    "hr": [r"hr\b", "human resources", "people", "talent"],
    "legal": ["legal", "compliance", "counsel"],
    "executive": [r"ceo\b", "president", "founder", "general manager", "managing director", r"coo\b"],
    "data": ["data", "analytics", "scientist", "intelligence"],
}

# =============================================================================
# INDUSTRY NORMALIZATION
# =============================================================================

# CRM industry codes (snake_case keys) to display names
INDUSTRY_NORMALIZATION = {
    "hospital_health_care": "Hospital & Health Care",
    "health_wellness_and_fitness": "Health, Wellness & Fitness",
    "mental_health_care": "Mental Health Care",
    "individual_family_services": "Individual & Family Services",
    "education_management": "Education Management",
    "primary_secondary_education": "Primary/Secondary Education",
    "e_learning": "E-Learning",
    "higher_education": "Higher Education",
    "transportation_trucking_railroad": "Transportation/Trucking/Railroad",
    "management_consulting": "Management Consulting",
    "information_services": "Information Services",
    "information_technology_and_services": "Information Technology & Services",
    "computer_software": "Computer Software",
    "financial_services": "Financial Services",
    "insurance": "Insurance",
    "nonprofit_organization_management": "Nonprofit Organization Management",
    "medical_practice": "Medical Practice",
    "professional_training_coaching": "Professional Training & Coaching",
    "sports": "Sports",
    "government_administration": "Government Administration",
}
