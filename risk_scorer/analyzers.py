"""
Behavior and reputation analyzers
"""

from .fanout import run_concurrently
from .models import RiskProfile, TransactionEvent
from .providers import Lookups


class BehaviorAnalyzer:
    """Scores how far a transaction strays from the user's behavior profile"""

    amount_deviation_threshold = 2.0

    def analyze(self, transaction: TransactionEvent, profile: RiskProfile) -> float:
        score = 0.0

        deviation = abs(transaction.amount - profile.average_transaction_amount) / profile.average_transaction_amount
        if deviation > self.amount_deviation_threshold:
            score += 0.3

        if transaction.timestamp.hour not in profile.usual_transaction_hours:
            score += 0.2

        if transaction.payment_method not in profile.preferred_payment_methods:
            score += 0.2

        return min(score, 1.0)


class ReputationAnalyzer:
    """Device fingerprint reputation plus IP reputation, clamped to 1.0"""

    async def analyze(self, transaction: TransactionEvent, lookups: Lookups) -> float:
        scores = await run_concurrently({
            "device": lookups.device_reputation(transaction.device_fingerprint),
            "ip": lookups.ip_reputation(transaction.ip_address),
        })
        return min(scores["device"] + scores["ip"], 1.0)
