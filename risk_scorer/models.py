"""
Data model for the risk decision engine
"""

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REVIEW = "REVIEW"
    DECLINE = "DECLINE"


class Flags:
    """Closed vocabulary of flag identifiers"""
    VELOCITY_EXCEEDED = "VELOCITY_EXCEEDED"
    HIGH_VELOCITY = "HIGH_VELOCITY"
    ROUND_AMOUNT = "ROUND_AMOUNT"
    LARGE_AMOUNT = "LARGE_AMOUNT"
    UNUSUAL_LOCATION = "UNUSUAL_LOCATION"
    UNUSUAL_TIME = "UNUSUAL_TIME"
    NEW_DEVICE = "NEW_DEVICE"
    UNUSUAL_BEHAVIOR = "UNUSUAL_BEHAVIOR"
    SUSPICIOUS_DEVICE = "SUSPICIOUS_DEVICE"
    SANCTIONS_MATCH = "SANCTIONS_MATCH"
    ANALYSIS_ERROR = "ANALYSIS_ERROR"

    ALL = frozenset({
        VELOCITY_EXCEEDED, HIGH_VELOCITY, ROUND_AMOUNT, LARGE_AMOUNT,
        UNUSUAL_LOCATION, UNUSUAL_TIME, NEW_DEVICE, UNUSUAL_BEHAVIOR,
        SUSPICIOUS_DEVICE, SANCTIONS_MATCH, ANALYSIS_ERROR,
    })


class TransactionEvent(BaseModel):
    """A single payment attempt, as submitted by the payment pipeline"""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1, description="User identifier")
    amount: float = Field(..., gt=0, description="Transaction amount")
    currency: str = Field(..., min_length=1, description="ISO currency code")
    country: str = Field(..., min_length=2, description="ISO country code")
    timestamp: datetime = Field(..., description="Transaction time, in the transaction's local clock")
    device_fingerprint: str = Field(..., min_length=1, description="Device fingerprint")
    ip_address: str = Field(..., min_length=1, description="Originating IP address")
    payment_method: str = Field(..., min_length=1, description="Payment method (CARD, UPI, WIRE, ...)")

    @field_validator("country", "currency", "payment_method")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class RiskProfile(BaseModel):
    """Point-in-time snapshot of a user's behavior baseline.

    Every field is an advisory baseline; the engine only ever reads it.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str = Field(..., description="User identifier")
    average_transaction_amount: float = Field(..., gt=0, description="Average transaction amount")
    typical_countries: FrozenSet[str] = Field(default_factory=frozenset, description="Countries the user usually transacts from")
    usual_transaction_hours: FrozenSet[int] = Field(default_factory=frozenset, description="Hours of day (0-23) the user usually transacts")
    preferred_payment_methods: FrozenSet[str] = Field(default_factory=frozenset, description="Payment methods the user usually uses")
    velocity_pattern: List[int] = Field(default_factory=list, description="Recent velocity counts")
    risk_history: List[float] = Field(default_factory=list, description="Historical risk scores")

    @field_validator("typical_countries", "preferred_payment_methods", mode="before")
    @classmethod
    def _upper_all(cls, value):
        if isinstance(value, (list, tuple, set, frozenset)):
            return frozenset(str(v).strip().upper() for v in value)
        return value

    @field_validator("usual_transaction_hours")
    @classmethod
    def _valid_hours(cls, value: FrozenSet[int]) -> FrozenSet[int]:
        if any(h < 0 or h > 23 for h in value):
            raise ValueError("usual_transaction_hours must be within 0-23")
        return value


class RuleEvaluationResult(BaseModel):
    """Score and flags produced by one rule"""
    model_config = ConfigDict(frozen=True)

    score: float = Field(0.0, description="Rule score, clamped to [0, 1]")
    flags: FrozenSet[str] = Field(default_factory=frozenset, description="Flags raised by the rule")

    @field_validator("score")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return max(0.0, min(value, 1.0))

    @field_validator("flags")
    @classmethod
    def _known_flags(cls, value: FrozenSet[str]) -> FrozenSet[str]:
        unknown = value - Flags.ALL
        if unknown:
            raise ValueError(f"unknown flags: {', '.join(sorted(unknown))}")
        return value


class FraudAssessment(BaseModel):
    """Risk decision returned to the payment pipeline"""
    risk_score: float = Field(..., ge=0.0, le=1.0, description="Fused risk score")
    risk_level: RiskLevel = Field(..., description="Risk bucket")
    flags: List[str] = Field(default_factory=list, description="Raised flags (set semantics, sorted)")
    recommendation: Recommendation = Field(..., description="APPROVE, REVIEW or DECLINE")
    confidence: float = Field(..., ge=0.1, le=1.0, description="Trust in the risk score itself")
    reasons: List[str] = Field(default_factory=list, description="Human-readable explanations")
    components: Dict[str, float] = Field(default_factory=dict, description="Per-signal scores that were fused")

    @field_validator("flags")
    @classmethod
    def _as_sorted_set(cls, value: List[str]) -> List[str]:
        return sorted(set(value))
