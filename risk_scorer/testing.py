"""
Sample transactions, profiles and collaborator doubles for exercising the engine
"""

import asyncio
from datetime import datetime, timedelta, timezone

from .models import RiskProfile, TransactionEvent
from .providers import (
    Collaborators,
    InMemoryDeviceRegistry,
    InMemoryHistoryProvider,
    InMemoryProfileProvider,
    StaticReputation,
)


# Wednesday afternoon
NOW = datetime(2024, 3, 6, 14, 0, tzinfo=timezone.utc)


def make_txn(**overrides) -> TransactionEvent:
    data = {
        "user_id": "user_1",
        "amount": 20.0,
        "currency": "USD",
        "country": "US",
        "timestamp": NOW,
        "device_fingerprint": "fp_known",
        "ip_address": "10.0.0.1",
        "payment_method": "CARD",
    }
    data.update(overrides)
    return TransactionEvent(**data)


def make_profile(**overrides) -> RiskProfile:
    data = {
        "user_id": "user_1",
        "average_transaction_amount": 100.0,
        "typical_countries": ["US", "CA"],
        "usual_transaction_hours": [9, 10, 11, 12, 13, 14, 15, 16, 17],
        "preferred_payment_methods": ["CARD", "UPI"],
        "velocity_pattern": [1, 2, 1, 0, 1],
        "risk_history": [0.1, 0.2, 0.1, 0.3],
    }
    data.update(overrides)
    return RiskProfile(**data)


def history_within(minutes_ago, user_id="user_1"):
    """Past transactions for the user, at the given offsets before NOW"""
    return [make_txn(user_id=user_id, timestamp=NOW - timedelta(minutes=m)) for m in minutes_ago]


def make_collaborators(profile=None, history=(), known_devices=("fp_known",),
                       device_scores=None, ip_scores=None) -> Collaborators:
    profile = profile or make_profile()
    return Collaborators(
        profiles=InMemoryProfileProvider({profile.user_id: profile}),
        history=InMemoryHistoryProvider({profile.user_id: list(history)}, clock=lambda: NOW),
        device_reputation=StaticReputation(device_scores or {}, default=0.05),
        ip_reputation=StaticReputation(ip_scores or {}, default=0.05),
        devices=InMemoryDeviceRegistry({profile.user_id: set(known_devices)}),
    )


class Delayed:
    """Wraps a collaborator so every coroutine method finishes after ``delay`` seconds"""

    def __init__(self, inner, delay: float):
        self._inner = inner
        self._delay = delay

    def __getattr__(self, name):
        method = getattr(self._inner, name)

        async def delayed(*args, **kwargs):
            await asyncio.sleep(self._delay)
            return await method(*args, **kwargs)

        return delayed


class Failing:
    """Collaborator whose every coroutine method raises"""

    def __init__(self, error: BaseException):
        self._error = error

    def __getattr__(self, name):
        async def failing(*args, **kwargs):
            raise self._error

        return failing

