"""
Rule evaluators and the rule aggregator.

Each rule is an independent object with a ``name`` and an async ``evaluate``
method; rules are looked up by name in RULE_REGISTRY.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Protocol, Sequence

import structlog

from .errors import ConfigurationError
from .fanout import run_concurrently
from .features import is_unusual_hour
from .models import Flags, RiskProfile, RuleEvaluationResult, TransactionEvent
from .providers import Lookups

logger = structlog.get_logger()

NO_RISK = RuleEvaluationResult(score=0.0)


@dataclass(frozen=True)
class AssessmentContext:
    """What a rule may read while evaluating one transaction"""
    profile: RiskProfile
    lookups: Lookups


class RuleEvaluator(Protocol):
    name: str

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult: ...


class VelocityRule:
    name = "velocity"
    window_hours = 1

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult:
        recent = await context.lookups.recent_transactions(transaction.user_id, self.window_hours)
        count = len(recent)
        if count > 10:
            return RuleEvaluationResult(score=0.8, flags=frozenset({Flags.VELOCITY_EXCEEDED}))
        if count > 5:
            return RuleEvaluationResult(score=0.5, flags=frozenset({Flags.HIGH_VELOCITY}))
        return NO_RISK


class AmountRule:
    name = "amount"

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult:
        score = 0.0
        flags = set()
        # Round amounts hint at structuring
        if transaction.amount % 1000 == 0 or transaction.amount % 500 == 0:
            score += 0.3
            flags.add(Flags.ROUND_AMOUNT)
        if transaction.amount > 10000:
            score += 0.4
            flags.add(Flags.LARGE_AMOUNT)
        return RuleEvaluationResult(score=min(score, 1.0), flags=frozenset(flags))


class GeolocationRule:
    name = "geolocation"

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult:
        if transaction.country not in context.profile.typical_countries:
            return RuleEvaluationResult(score=0.6, flags=frozenset({Flags.UNUSUAL_LOCATION}))
        return NO_RISK


class TimePatternRule:
    name = "time_pattern"

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult:
        if is_unusual_hour(transaction.timestamp.hour):
            return RuleEvaluationResult(score=0.4, flags=frozenset({Flags.UNUSUAL_TIME}))
        return NO_RISK


class DeviceRule:
    name = "device"

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult:
        known = await context.lookups.is_known_device(transaction.user_id, transaction.device_fingerprint)
        if not known:
            return RuleEvaluationResult(score=0.3, flags=frozenset({Flags.NEW_DEVICE}))
        return NO_RISK


RULE_REGISTRY: Dict[str, Callable[[], RuleEvaluator]] = {
    VelocityRule.name: VelocityRule,
    AmountRule.name: AmountRule,
    GeolocationRule.name: GeolocationRule,
    TimePatternRule.name: TimePatternRule,
    DeviceRule.name: DeviceRule,
}


def build_rules(names: Iterable[str]) -> List[RuleEvaluator]:
    """Instantiate registered rules by name"""
    names = list(names)
    unknown = [n for n in names if n not in RULE_REGISTRY]
    if unknown:
        raise ConfigurationError(
            "unregistered rule(s): " + ", ".join(unknown),
            {"registered": sorted(RULE_REGISTRY)},
        )
    return [RULE_REGISTRY[n]() for n in names]


class RuleAggregator:
    """Runs every rule concurrently; mean of scores, union of flags.

    A failing rule fails the whole evaluation.
    """

    def __init__(self, rules: Sequence[RuleEvaluator]):
        if not rules:
            raise ConfigurationError("rule aggregator needs at least one rule")
        names = [rule.name for rule in rules]
        if len(set(names)) != len(names):
            raise ConfigurationError("duplicate rule names: " + ", ".join(names))
        self.rules = list(rules)

    @property
    def rule_names(self) -> List[str]:
        return [rule.name for rule in self.rules]

    async def evaluate(self, transaction: TransactionEvent, context: AssessmentContext) -> RuleEvaluationResult:
        results = await run_concurrently({
            rule.name: rule.evaluate(transaction, context) for rule in self.rules
        })
        score = sum(results[name].score for name in self.rule_names) / len(self.rules)
        flags = frozenset().union(*(r.flags for r in results.values()))
        logger.debug("rules_evaluated", scores={n: r.score for n, r in results.items()}, flags=sorted(flags))
        return RuleEvaluationResult(score=score, flags=flags)
