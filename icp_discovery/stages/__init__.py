# Discovery and scoring stages module
from .stage1_readiness import DataReadinessClassifier
from .stage2_features import FeatureMatrixBuilder
from .stage3_personas import PersonaPatternMiner, CommitteeComboMiner
from .stage4_company import CompanyPatternMiner
from .stage5_weights import ScoringWeightSynthesizer
from .stage6_scoring import PointBasedScorer
