"""
External collaborators consumed by the engine: profile store, transaction
history, device/IP reputation and the per-user device registry.

The engine only depends on the Protocols below. In-memory implementations are
provided for wiring and tests; the Http* clients talk to the owning services.
"""

import asyncio
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, TypeVar
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from .errors import DependencyError, DependencyTimeout
from .models import RiskProfile, TransactionEvent

logger = structlog.get_logger()

T = TypeVar("T")


class ProfileProvider(Protocol):
    async def get(self, user_id: str) -> RiskProfile: ...


class HistoryProvider(Protocol):
    async def recent(self, user_id: str, window_hours: int) -> List[TransactionEvent]: ...


class DeviceReputation(Protocol):
    async def score(self, fingerprint: str) -> float: ...


class IPReputation(Protocol):
    async def score(self, address: str) -> float: ...


class DeviceRegistry(Protocol):
    async def is_known(self, user_id: str, fingerprint: str) -> bool: ...


@dataclass(frozen=True)
class Collaborators:
    """Read-only collaborators injected into the engine at start-up"""
    profiles: ProfileProvider
    history: HistoryProvider
    device_reputation: DeviceReputation
    ip_reputation: IPReputation
    devices: DeviceRegistry


class Lookups:
    """Timeout-bounded, validated access to the collaborators for one assessment.

    Every failure (timeout, transport error, malformed payload) surfaces as a
    DependencyError; nothing is defaulted.
    """

    def __init__(self, collaborators: Collaborators, timeout: float):
        self.collaborators = collaborators
        self.timeout = timeout

    async def _call(self, dependency: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.timeout)
        except asyncio.TimeoutError as e:
            logger.warning("dependency_lookup_timeout", dependency=dependency, timeout=self.timeout)
            raise DependencyTimeout(dependency, f"{dependency} lookup timed out after {self.timeout}s", e) from e
        except asyncio.CancelledError as e:
            task = asyncio.current_task()
            if task is None or task.cancelling():
                raise
            # Cancelled from inside the collaborator, not by our caller
            logger.warning("dependency_lookup_failed", dependency=dependency, error="cancelled")
            raise DependencyError(dependency, f"{dependency} lookup was cancelled", e) from e
        except DependencyError as e:
            logger.warning("dependency_lookup_failed", dependency=dependency, error=e.message)
            raise
        except Exception as e:
            logger.warning("dependency_lookup_failed", dependency=dependency, error=str(e))
            raise DependencyError(dependency, f"{dependency} lookup failed: {e}", e) from e

    async def profile(self, user_id: str) -> RiskProfile:
        raw = await self._call("profile", self.collaborators.profiles.get(user_id))
        if isinstance(raw, RiskProfile):
            return raw
        try:
            return RiskProfile.model_validate(raw)
        except ValidationError as e:
            raise DependencyError("profile", f"malformed risk profile for user {user_id}", e) from e

    async def recent_transactions(self, user_id: str, window_hours: int) -> List[TransactionEvent]:
        raw = await self._call("history", self.collaborators.history.recent(user_id, window_hours))
        if not isinstance(raw, (list, tuple)):
            raise DependencyError("history", f"history lookup returned {type(raw).__name__}, expected a list")
        try:
            return [tx if isinstance(tx, TransactionEvent) else TransactionEvent.model_validate(tx) for tx in raw]
        except ValidationError as e:
            raise DependencyError("history", f"malformed transaction history for user {user_id}", e) from e

    async def device_reputation(self, fingerprint: str) -> float:
        value = await self._call("device_reputation", self.collaborators.device_reputation.score(fingerprint))
        return _reputation_value("device_reputation", value)

    async def ip_reputation(self, address: str) -> float:
        value = await self._call("ip_reputation", self.collaborators.ip_reputation.score(address))
        return _reputation_value("ip_reputation", value)

    async def is_known_device(self, user_id: str, fingerprint: str) -> bool:
        value = await self._call("device_registry", self.collaborators.devices.is_known(user_id, fingerprint))
        if not isinstance(value, bool):
            raise DependencyError("device_registry", f"device registry returned {type(value).__name__}, expected bool")
        return value


def _reputation_value(dependency: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DependencyError(dependency, f"{dependency} returned non-numeric score {value!r}")
    value = float(value)
    if math.isnan(value) or value < 0.0 or value > 1.0:
        raise DependencyError(dependency, f"{dependency} score {value} outside [0, 1]")
    return value


# In-memory collaborators

class InMemoryProfileProvider:
    def __init__(self, profiles: Optional[Mapping[str, RiskProfile]] = None):
        self.profiles: Dict[str, RiskProfile] = dict(profiles or {})

    async def get(self, user_id: str) -> RiskProfile:
        try:
            return self.profiles[user_id]
        except KeyError:
            raise DependencyError("profile", f"no risk profile for user {user_id}") from None


class InMemoryHistoryProvider:
    """Transaction history kept in memory, windowed against an injectable clock"""

    def __init__(
        self,
        transactions: Optional[Mapping[str, Iterable[TransactionEvent]]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.transactions: Dict[str, List[TransactionEvent]] = {
            user_id: list(txs) for user_id, txs in (transactions or {}).items()
        }
        self.clock = clock

    def add(self, transaction: TransactionEvent) -> None:
        self.transactions.setdefault(transaction.user_id, []).append(transaction)

    async def recent(self, user_id: str, window_hours: int) -> List[TransactionEvent]:
        now = _as_utc(self.clock())
        cutoff = now - timedelta(hours=window_hours)
        return [
            tx for tx in self.transactions.get(user_id, [])
            if cutoff <= _as_utc(tx.timestamp) <= now
        ]


class StaticReputation:
    """Fixed reputation scores by key; usable for both device and IP reputation"""

    def __init__(self, scores: Optional[Mapping[str, float]] = None, default: float = 0.0):
        self.scores = dict(scores or {})
        self.default = default

    async def score(self, key: str) -> float:
        return self.scores.get(key, self.default)


class InMemoryDeviceRegistry:
    def __init__(self, devices: Optional[Mapping[str, Iterable[str]]] = None):
        self.devices: Dict[str, Set[str]] = {user_id: set(fps) for user_id, fps in (devices or {}).items()}

    async def is_known(self, user_id: str, fingerprint: str) -> bool:
        return fingerprint in self.devices.get(user_id, set())


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# HTTP collaborators

async def _get_json(dependency: str, url: str, timeout: float, params: Optional[dict] = None,
                    allow_not_found: bool = False) -> Any:
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.get(url, params=params)
    except httpx.HTTPError as e:
        raise DependencyError(dependency, f"{dependency} request failed: {e}", e) from e
    if allow_not_found and resp.status_code == 404:
        return None
    if resp.status_code != 200:
        raise DependencyError(dependency, f"{dependency} returned HTTP {resp.status_code}")
    try:
        return resp.json()
    except ValueError as e:
        raise DependencyError(dependency, f"{dependency} returned invalid JSON", e) from e


class HttpProfileProvider:
    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def get(self, user_id: str) -> RiskProfile:
        data = await _get_json("profile", f"{self.base_url}/profiles/{quote(user_id, safe='')}", self.timeout)
        try:
            return RiskProfile.model_validate(data)
        except ValidationError as e:
            raise DependencyError("profile", f"malformed risk profile for user {user_id}", e) from e


class HttpHistoryProvider:
    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def recent(self, user_id: str, window_hours: int) -> List[TransactionEvent]:
        data = await _get_json(
            "history",
            f"{self.base_url}/users/{quote(user_id, safe='')}/transactions",
            self.timeout,
            params={"window_hours": window_hours},
        )
        if isinstance(data, dict) and "transactions" in data:
            data = data["transactions"]
        if not isinstance(data, list):
            raise DependencyError("history", "history service returned an unexpected payload")
        try:
            return [TransactionEvent.model_validate(tx) for tx in data]
        except ValidationError as e:
            raise DependencyError("history", f"malformed transaction history for user {user_id}", e) from e


class _HttpReputation:
    dependency = "reputation"
    resource = ""

    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def score(self, key: str) -> float:
        data = await _get_json(
            self.dependency,
            f"{self.base_url}/{self.resource}/{quote(key, safe='')}/reputation",
            self.timeout,
        )
        if not isinstance(data, dict) or "score" not in data:
            raise DependencyError(self.dependency, f"{self.dependency} payload has no score")
        return _reputation_value(self.dependency, data["score"])


class HttpDeviceReputation(_HttpReputation):
    dependency = "device_reputation"
    resource = "devices"


class HttpIPReputation(_HttpReputation):
    dependency = "ip_reputation"
    resource = "ips"


class HttpDeviceRegistry:
    def __init__(self, base_url: str, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    async def is_known(self, user_id: str, fingerprint: str) -> bool:
        data = await _get_json(
            "device_registry",
            f"{self.base_url}/users/{quote(user_id, safe='')}/devices/{quote(fingerprint, safe='')}",
            self.timeout,
            allow_not_found=True,
        )
        if data is None:
            return False
        if not isinstance(data, dict) or not isinstance(data.get("known"), bool):
            raise DependencyError("device_registry", "device registry payload has no known flag")
        return data["known"]
