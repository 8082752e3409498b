"""
Risk decision engine: fans out the sub-evaluations for one transaction,
fuses their scores and turns the result into a recommendation.
"""

import asyncio
import math
import time
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import structlog
from pydantic import ValidationError

from .analyzers import BehaviorAnalyzer, ReputationAnalyzer
from .config import DEFAULT_FUSION_WEIGHTS, DEFAULT_RULES, EngineSettings, validate_fusion_weights
from .errors import ConfigurationError, RiskEngineError, TransactionValidationError
from .fanout import run_concurrently
from .features import LinearScoringModel, RiskFeatureExtractor, ScoringModel
from .models import (
    Flags,
    FraudAssessment,
    Recommendation,
    RiskLevel,
    RiskProfile,
    TransactionEvent,
)
from .providers import Collaborators, Lookups
from .rules import AssessmentContext, RuleAggregator, RuleEvaluator, build_rules

logger = structlog.get_logger()

UNUSUAL_BEHAVIOR_THRESHOLD = 0.7
SUSPICIOUS_DEVICE_THRESHOLD = 0.8
HIGH_FRAUD_PROBABILITY_THRESHOLD = 0.7

# Emitted in this order, whatever order the flags were raised in
FLAG_REASONS = (
    (Flags.SANCTIONS_MATCH, "Counterparty matches a sanctions list"),
    (Flags.VELOCITY_EXCEEDED, "Transaction frequency exceeds normal patterns"),
    (Flags.HIGH_VELOCITY, "Transaction frequency is higher than usual"),
    (Flags.LARGE_AMOUNT, "Transaction amount is unusually large"),
    (Flags.ROUND_AMOUNT, "Round transaction amount may indicate structuring"),
    (Flags.UNUSUAL_LOCATION, "Transaction originates from an unusual country for this user"),
    (Flags.UNUSUAL_TIME, "Transaction made at an unusual time of day"),
    (Flags.NEW_DEVICE, "Transaction made from an unrecognized device"),
    (Flags.UNUSUAL_BEHAVIOR, "Transaction differs from user's typical behavior"),
    (Flags.SUSPICIOUS_DEVICE, "Device characteristics indicate potential risk"),
    (Flags.ANALYSIS_ERROR, "Unable to complete fraud analysis"),
)
HIGH_FRAUD_PROBABILITY_REASON = "Model indicates high fraud probability"


def fail_safe_assessment() -> FraudAssessment:
    """Conservative result used whenever any signal could not be evaluated"""
    return FraudAssessment(
        risk_score=0.5,
        risk_level=RiskLevel.MEDIUM,
        flags=[Flags.ANALYSIS_ERROR],
        recommendation=Recommendation.REVIEW,
        confidence=0.1,
        reasons=["Unable to complete fraud analysis"],
    )


def fuse_scores(components: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """Weighted sum of the component scores, clamped to [0, 1].

    The result is rounded to six decimals, so scores are resolved to 1e-6:
    a raw sum within 5e-7 of a level boundary is classified at the boundary.
    This absorbs float noise such as 0.6 arriving as 0.5999999999999999.
    """
    total = sum(components[name] * weight for name, weight in weights.items())
    return round(max(0.0, min(total, 1.0)), 6)


def classify_risk(score: float) -> RiskLevel:
    if score >= 0.8:
        return RiskLevel.CRITICAL
    if score >= 0.6:
        return RiskLevel.HIGH
    if score >= 0.4:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def aggregate_flags(rule_flags: Iterable[str], behavior_score: float, reputation_score: float) -> frozenset:
    flags = set(rule_flags)
    if behavior_score > UNUSUAL_BEHAVIOR_THRESHOLD:
        flags.add(Flags.UNUSUAL_BEHAVIOR)
    if reputation_score > SUSPICIOUS_DEVICE_THRESHOLD:
        flags.add(Flags.SUSPICIOUS_DEVICE)
    return frozenset(flags)


def recommend(score: float, level: RiskLevel, flags: Iterable[str]) -> Recommendation:
    flags = set(flags)
    if level is RiskLevel.CRITICAL or Flags.SANCTIONS_MATCH in flags:
        return Recommendation.DECLINE
    if level is RiskLevel.HIGH or score > 0.7:
        return Recommendation.REVIEW
    return Recommendation.APPROVE


def calculate_confidence(score: float, flag_count: int) -> float:
    """Extreme scores are trusted more; many simultaneous flags erode trust"""
    confidence = 0.8 + abs(score - 0.5) * 2 - min(flag_count * 0.1, 0.3)
    return round(max(0.1, min(confidence, 1.0)), 6)


def generate_reasons(flags: Iterable[str], score: float) -> List[str]:
    flags = set(flags)
    reasons = [reason for flag, reason in FLAG_REASONS if flag in flags]
    if score > HIGH_FRAUD_PROBABILITY_THRESHOLD:
        reasons.append(HIGH_FRAUD_PROBABILITY_REASON)
    return reasons


def validate_transaction(transaction: Union[TransactionEvent, Mapping[str, Any]]) -> TransactionEvent:
    if isinstance(transaction, TransactionEvent):
        return transaction
    if not isinstance(transaction, Mapping):
        raise TransactionValidationError(
            f"transaction must be a mapping or TransactionEvent, got {type(transaction).__name__}"
        )
    try:
        return TransactionEvent.model_validate(dict(transaction))
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in errors})
        raise TransactionValidationError("invalid transaction: " + ", ".join(fields), errors) from e


class RiskDecisionEngine:
    """Stateless transaction risk engine.

    One instance serves every request; it holds configuration and injected
    collaborators only.
    """

    def __init__(
        self,
        collaborators: Collaborators,
        model: Optional[ScoringModel] = None,
        rules: Optional[Sequence[RuleEvaluator]] = None,
        fusion_weights: Optional[Mapping[str, float]] = None,
        lookup_timeout: float = 0.5,
        assessment_timeout: float = 2.0,
        feature_extractor: Optional[RiskFeatureExtractor] = None,
        behavior_analyzer: Optional[BehaviorAnalyzer] = None,
        reputation_analyzer: Optional[ReputationAnalyzer] = None,
    ):
        if lookup_timeout <= 0 or assessment_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")
        self.collaborators = collaborators
        self.model = model or LinearScoringModel()
        self.rule_aggregator = RuleAggregator(rules if rules is not None else build_rules(DEFAULT_RULES))
        self.fusion_weights = validate_fusion_weights(
            dict(DEFAULT_FUSION_WEIGHTS if fusion_weights is None else fusion_weights)
        )
        self.lookup_timeout = lookup_timeout
        self.assessment_timeout = assessment_timeout
        self.feature_extractor = feature_extractor or RiskFeatureExtractor()
        self.behavior_analyzer = behavior_analyzer or BehaviorAnalyzer()
        self.reputation_analyzer = reputation_analyzer or ReputationAnalyzer()

    @classmethod
    def from_settings(cls, settings: EngineSettings, collaborators: Collaborators,
                      model: Optional[ScoringModel] = None) -> "RiskDecisionEngine":
        return cls(
            collaborators,
            model=model,
            rules=build_rules(settings.enabled_rules),
            fusion_weights=settings.fusion_weights,
            lookup_timeout=settings.lookup_timeout_seconds,
            assessment_timeout=settings.assessment_timeout_seconds,
        )

    async def assess(self, transaction: Union[TransactionEvent, Mapping[str, Any]]) -> FraudAssessment:
        """Assess one payment attempt.

        Raises TransactionValidationError for malformed input. Every other
        failure yields the fail-safe assessment instead of an exception.
        Cancelling the caller cancels all in-flight lookups.
        """
        txn = validate_transaction(transaction)
        started = time.perf_counter()
        logger.info(
            "risk_assessment_started",
            user_id=txn.user_id,
            amount=txn.amount,
            currency=txn.currency,
            country=txn.country,
        )
        try:
            assessment = await asyncio.wait_for(self._evaluate(txn), self.assessment_timeout)
        except asyncio.TimeoutError:
            logger.error(
                "risk_assessment_failed",
                user_id=txn.user_id,
                code="TIMEOUT_ERROR",
                error=f"assessment exceeded {self.assessment_timeout}s",
            )
            return fail_safe_assessment()
        except RiskEngineError as e:
            logger.error("risk_assessment_failed", user_id=txn.user_id, code=e.code, error=e.message)
            return fail_safe_assessment()
        except Exception as e:
            logger.exception("risk_assessment_failed", user_id=txn.user_id, code="UNEXPECTED_ERROR", error=str(e))
            return fail_safe_assessment()

        logger.info(
            "risk_assessment_completed",
            user_id=txn.user_id,
            risk_score=assessment.risk_score,
            risk_level=assessment.risk_level.value,
            recommendation=assessment.recommendation.value,
            flags=assessment.flags,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return assessment

    async def _evaluate(self, txn: TransactionEvent) -> FraudAssessment:
        lookups = Lookups(self.collaborators, self.lookup_timeout)
        profile = await lookups.profile(txn.user_id)
        context = AssessmentContext(profile=profile, lookups=lookups)

        results = await run_concurrently({
            "ml": self._model_score(txn),
            "rules": self.rule_aggregator.evaluate(txn, context),
            "behavior": self._behavior_score(txn, profile),
            "device": self.reputation_analyzer.analyze(txn, lookups),
            "velocity": self._velocity_score(txn, lookups),
            "geolocation": self._geolocation_score(txn, profile),
        })
        rule_result = results["rules"]
        components = {
            "ml": results["ml"],
            "rules": rule_result.score,
            "behavior": results["behavior"],
            "device": results["device"],
            "velocity": results["velocity"],
            "geolocation": results["geolocation"],
        }
        return self.decide(components, rule_result.flags)

    def decide(self, components: Mapping[str, float], rule_flags: Iterable[str]) -> FraudAssessment:
        """Fuse component scores and derive level, flags, recommendation and reasons"""
        score = fuse_scores(components, self.fusion_weights)
        level = classify_risk(score)
        flags = aggregate_flags(rule_flags, components["behavior"], components["device"])
        return FraudAssessment(
            risk_score=score,
            risk_level=level,
            flags=sorted(flags),
            recommendation=recommend(score, level, flags),
            confidence=calculate_confidence(score, len(flags)),
            reasons=generate_reasons(flags, score),
            components={name: round(components[name], 6) for name in self.fusion_weights},
        )

    async def _model_score(self, txn: TransactionEvent) -> float:
        features = self.feature_extractor.extract(txn)
        score = float(self.model.predict(features))
        if math.isnan(score):
            raise ValueError("scoring model returned NaN")
        return max(0.0, min(score, 1.0))

    async def _behavior_score(self, txn: TransactionEvent, profile: RiskProfile) -> float:
        return self.behavior_analyzer.analyze(txn, profile)

    async def _velocity_score(self, txn: TransactionEvent, lookups: Lookups) -> float:
        # Trailing-day volume; the velocity rule separately looks at the last hour
        recent = await lookups.recent_transactions(txn.user_id, 24)
        return min(len(recent) / 10, 1.0)

    async def _geolocation_score(self, txn: TransactionEvent, profile: RiskProfile) -> float:
        return 0.6 if txn.country not in profile.typical_countries else 0.1
