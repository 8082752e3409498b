"""
Transaction risk scoring for the payment pipeline
"""

from .config import EngineSettings
from .engine import RiskDecisionEngine, fail_safe_assessment
from .errors import ConfigurationError, DependencyError, RiskEngineError, TransactionValidationError
from .features import LinearScoringModel, RiskFeatureExtractor, ScoringModel
from .models import (
    Flags,
    FraudAssessment,
    Recommendation,
    RiskLevel,
    RiskProfile,
    RuleEvaluationResult,
    TransactionEvent,
)
from .providers import Collaborators

__all__ = [
    "Collaborators",
    "ConfigurationError",
    "DependencyError",
    "EngineSettings",
    "Flags",
    "FraudAssessment",
    "LinearScoringModel",
    "Recommendation",
    "RiskDecisionEngine",
    "RiskEngineError",
    "RiskFeatureExtractor",
    "RiskLevel",
    "RiskProfile",
    "RuleEvaluationResult",
    "ScoringModel",
    "TransactionEvent",
    "TransactionValidationError",
    "fail_safe_assessment",
]
