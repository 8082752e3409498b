"""
Feature extraction and the pluggable scoring model
"""

import math
from typing import Dict, List, Protocol, Sequence

from .errors import ConfigurationError
from .models import TransactionEvent

FEATURE_NAMES = (
    "normalized_amount",
    "time_of_day_risk",
    "day_of_week_risk",
    "country_risk",
    "payment_method_risk",
)

HIGH_RISK_COUNTRIES = frozenset({"AF", "IR", "KP", "SY"})
MEDIUM_RISK_COUNTRIES = frozenset({"RU", "CN", "VE"})

PAYMENT_METHOD_RISK: Dict[str, float] = {
    "CRYPTO": 0.7,
    "CASH": 0.8,
    "WIRE": 0.4,
    "CARD": 0.2,
    "UPI": 0.1,
    "INSTANT_TRANSFER": 0.1,
}
DEFAULT_PAYMENT_METHOD_RISK = 0.5

UNUSUAL_HOURS = range(2, 7)  # 02:00-06:59 local


def is_unusual_hour(hour: int) -> bool:
    return hour in UNUSUAL_HOURS


class RiskFeatureExtractor:
    """Turns a transaction into the model's normalized feature vector"""

    def extract(self, transaction: TransactionEvent) -> List[float]:
        return [
            transaction.amount / 1000,
            self.time_of_day_risk(transaction.timestamp.hour),
            self.day_of_week_risk(transaction.timestamp.weekday()),
            self.country_risk(transaction.country),
            self.payment_method_risk(transaction.payment_method),
        ]

    @staticmethod
    def time_of_day_risk(hour: int) -> float:
        return 0.8 if is_unusual_hour(hour) else 0.2

    @staticmethod
    def day_of_week_risk(weekday: int) -> float:
        # weekday(): Saturday=5, Sunday=6
        return 0.3 if weekday >= 5 else 0.1

    @staticmethod
    def country_risk(country: str) -> float:
        if country in HIGH_RISK_COUNTRIES:
            return 1.0
        if country in MEDIUM_RISK_COUNTRIES:
            return 0.6
        return 0.1

    @staticmethod
    def payment_method_risk(method: str) -> float:
        return PAYMENT_METHOD_RISK.get(method, DEFAULT_PAYMENT_METHOD_RISK)


class ScoringModel(Protocol):
    """Anything that maps a feature vector to a fraud score in [0, 1]"""

    def predict(self, features: Sequence[float]) -> float: ...


class LinearScoringModel:
    """Fixed-weight linear model standing in for a trained one"""

    DEFAULT_WEIGHTS = (0.3, 0.1, 0.1, 0.4, 0.1)

    def __init__(self, weights: Sequence[float] = DEFAULT_WEIGHTS):
        if len(weights) != len(FEATURE_NAMES):
            raise ConfigurationError(f"expected {len(FEATURE_NAMES)} weights, got {len(weights)}")
        self.weights = tuple(float(w) for w in weights)

    def predict(self, features: Sequence[float]) -> float:
        if len(features) != len(self.weights):
            raise ValueError(f"expected {len(self.weights)} features, got {len(features)}")
        score = sum(f * w for f, w in zip(features, self.weights))
        if math.isnan(score):
            raise ValueError("model produced NaN")
        return max(0.0, min(score, 1.0))
