"""
Unit tests for the risk decision engine
"""

import asyncio
import itertools
from dataclasses import replace

import pytest
from unittest.mock import patch

from risk_scorer.testing import (
    NOW,
    Delayed,
    Failing,
    history_within,
    make_collaborators,
    make_profile,
    make_txn,
)
from risk_scorer.engine import (
    RiskDecisionEngine,
    calculate_confidence,
    classify_risk,
    fail_safe_assessment,
    fuse_scores,
    generate_reasons,
    recommend,
)
from risk_scorer.errors import ConfigurationError, TransactionValidationError
from risk_scorer.models import Flags, Recommendation, RiskLevel, RuleEvaluationResult
from risk_scorer.rules import build_rules

FAIL_SAFE = fail_safe_assessment()


def scenario_a_collaborators():
    """Risky user context: bursty history and middling reputation"""
    return make_collaborators(
        history=history_within(range(1, 56, 5)),
        device_scores={"fp_new": 0.25},
        ip_scores={"10.0.0.1": 0.2},
    )


def scenario_a_txn():
    return make_txn(
        amount=15000.0,
        country="BR",
        timestamp=NOW.replace(hour=3),
        device_fingerprint="fp_new",
        payment_method="CRYPTO",
    )


class ConstantModel:
    def __init__(self, score):
        self.score = score

    def predict(self, features):
        return self.score


class SanctionsRule:
    name = "sanctions"

    async def evaluate(self, transaction, context):
        return RuleEvaluationResult(score=0.0, flags=frozenset({Flags.SANCTIONS_MATCH}))


class MisspelledFlagRule:
    name = "misspelled"

    async def evaluate(self, transaction, context):
        return RuleEvaluationResult(score=0.0, flags=frozenset({"SANCTION_MATCH"}))


class TestDecisionPolicy:
    """Pure fusion, classification and decision functions"""

    def test_fusion_weights(self):
        components = {"ml": 1.0, "rules": 0.5, "behavior": 0.5, "device": 0.0, "velocity": 1.0, "geolocation": 0.6}
        weights = {"ml": 0.3, "rules": 0.2, "behavior": 0.2, "device": 0.1, "velocity": 0.1, "geolocation": 0.1}
        assert fuse_scores(components, weights) == pytest.approx(0.66)

    def test_fusion_resolves_scores_to_six_decimals(self):
        weights = {"ml": 0.3, "rules": 0.2, "behavior": 0.2, "device": 0.1, "velocity": 0.1, "geolocation": 0.1}
        near = dict.fromkeys(weights, 0.5999999997)
        below = dict.fromkeys(weights, 0.59999)

        assert fuse_scores(near, weights) == 0.6
        assert classify_risk(fuse_scores(near, weights)) is RiskLevel.HIGH
        assert classify_risk(fuse_scores(below, weights)) is RiskLevel.MEDIUM

    @pytest.mark.parametrize("score,level", [
        (0.0, RiskLevel.LOW), (0.399999, RiskLevel.LOW), (0.4, RiskLevel.MEDIUM),
        (0.6, RiskLevel.HIGH), (0.79, RiskLevel.HIGH), (0.8, RiskLevel.CRITICAL), (1.0, RiskLevel.CRITICAL),
    ])
    def test_classification_lower_bounds_are_inclusive(self, score, level):
        assert classify_risk(score) is level

    def test_critical_declines(self):
        assert recommend(0.85, RiskLevel.CRITICAL, []) is Recommendation.DECLINE

    def test_sanctions_match_declines_even_at_low_risk(self):
        assert recommend(0.1, RiskLevel.LOW, [Flags.SANCTIONS_MATCH]) is Recommendation.DECLINE

    def test_high_reviews(self):
        assert recommend(0.65, RiskLevel.HIGH, []) is Recommendation.REVIEW

    def test_low_and_medium_approve(self):
        assert recommend(0.2, RiskLevel.LOW, []) is Recommendation.APPROVE
        assert recommend(0.5, RiskLevel.MEDIUM, [Flags.NEW_DEVICE]) is Recommendation.APPROVE

    @pytest.mark.parametrize("score,flag_count,expected", [
        (0.5, 0, 0.8),
        (0.5, 2, 0.6),
        (0.5, 7, 0.5),
        (0.45, 3, 0.6),
        (0.05, 1, 1.0),
        (0.95, 0, 1.0),
    ])
    def test_confidence(self, score, flag_count, expected):
        assert calculate_confidence(score, flag_count) == pytest.approx(expected)

    def test_reasons_follow_a_fixed_order(self):
        flags = [Flags.SUSPICIOUS_DEVICE, Flags.VELOCITY_EXCEEDED, Flags.UNUSUAL_BEHAVIOR]
        assert generate_reasons(flags, 0.75) == [
            "Transaction frequency exceeds normal patterns",
            "Transaction differs from user's typical behavior",
            "Device characteristics indicate potential risk",
            "Model indicates high fraud probability",
        ]

    def test_no_reasons_for_clean_low_score(self):
        assert generate_reasons([], 0.2) == []


class TestConfiguration:
    """Construction-time validation"""

    def test_weights_must_sum_to_one(self, collaborators):
        weights = {"ml": 0.5, "rules": 0.2, "behavior": 0.2, "device": 0.1, "velocity": 0.1, "geolocation": 0.1}
        with pytest.raises(ConfigurationError):
            RiskDecisionEngine(collaborators, fusion_weights=weights)

    def test_weights_must_name_every_signal(self, collaborators):
        with pytest.raises(ConfigurationError):
            RiskDecisionEngine(collaborators, fusion_weights={"ml": 0.5, "rules": 0.5})

    def test_unregistered_rule(self):
        with pytest.raises(ConfigurationError):
            build_rules(["velocity", "horoscope"])

    def test_non_positive_timeout(self, collaborators):
        with pytest.raises(ConfigurationError):
            RiskDecisionEngine(collaborators, lookup_timeout=0)

    def test_custom_weights_accepted(self, collaborators):
        weights = {"ml": 0.5, "rules": 0.1, "behavior": 0.1, "device": 0.1, "velocity": 0.1, "geolocation": 0.1}
        engine = RiskDecisionEngine(collaborators, fusion_weights=weights)
        assert engine.fusion_weights["ml"] == 0.5

    def test_explicit_empty_weights_rejected(self, collaborators):
        with pytest.raises(ConfigurationError):
            RiskDecisionEngine(collaborators, fusion_weights={})


class TestValidation:
    """Malformed transactions are rejected before scoring"""

    @pytest.mark.asyncio
    async def test_missing_fields(self, collaborators):
        engine = RiskDecisionEngine(collaborators)
        with pytest.raises(TransactionValidationError) as exc_info:
            await engine.assess({"user_id": "user_1", "amount": 10})
        assert "device_fingerprint" in exc_info.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -25.0])
    async def test_non_positive_amount(self, collaborators, amount):
        engine = RiskDecisionEngine(collaborators)
        data = make_txn().model_dump()
        data["amount"] = amount
        with pytest.raises(TransactionValidationError):
            await engine.assess(data)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field,value", [
        ("user_id", "   "), ("device_fingerprint", "\t"), ("ip_address", " "), ("country", " u"),
    ])
    async def test_blank_fields_rejected(self, collaborators, field, value):
        engine = RiskDecisionEngine(collaborators)
        data = make_txn().model_dump()
        data[field] = value
        with pytest.raises(TransactionValidationError) as exc_info:
            await engine.assess(data)
        assert field in exc_info.value.message

    def test_surrounding_whitespace_is_stripped(self):
        txn = make_txn(user_id=" user_1 ", country=" ca ", payment_method="card ")
        assert (txn.user_id, txn.country, txn.payment_method) == ("user_1", "CA", "CARD")

    @pytest.mark.asyncio
    async def test_not_a_mapping(self, collaborators):
        engine = RiskDecisionEngine(collaborators)
        with pytest.raises(TransactionValidationError):
            await engine.assess("user_1 paid 20 USD")

    @pytest.mark.asyncio
    async def test_valid_mapping_is_accepted(self, collaborators):
        engine = RiskDecisionEngine(collaborators)
        result = await engine.assess(make_txn().model_dump())
        assert result.risk_level is RiskLevel.LOW


class TestScenarios:
    """End-to-end assessments"""

    @pytest.mark.asyncio
    async def test_scenario_a_risky_transaction(self):
        engine = RiskDecisionEngine(scenario_a_collaborators())

        result = await engine.assess(scenario_a_txn())

        assert {
            Flags.ROUND_AMOUNT, Flags.LARGE_AMOUNT, Flags.UNUSUAL_LOCATION,
            Flags.UNUSUAL_TIME, Flags.NEW_DEVICE,
        } <= set(result.flags)
        assert result.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        assert result.recommendation in (Recommendation.REVIEW, Recommendation.DECLINE)
        # 0.3*1.0 + 0.2*0.56 + 0.2*0.7 + 0.1*0.45 + 0.1*1.0 + 0.1*0.6
        assert result.risk_score == pytest.approx(0.757)
        assert result.components["rules"] == pytest.approx(0.56)
        assert "Model indicates high fraud probability" in result.reasons

    @pytest.mark.asyncio
    async def test_scenario_b_ordinary_transaction(self):
        collaborators = make_collaborators(history=history_within([180, 240]))
        engine = RiskDecisionEngine(collaborators)

        result = await engine.assess(make_txn(amount=20.0))

        assert result.risk_score < 0.4
        assert result.risk_level is RiskLevel.LOW
        assert result.flags == []
        assert result.recommendation is Recommendation.APPROVE
        assert result.reasons == []
        assert result.confidence == 1.0

    @pytest.mark.asyncio
    async def test_scenario_c_profile_timeout(self, collaborators):
        slow = replace(collaborators, profiles=Delayed(collaborators.profiles, 1.0))
        engine = RiskDecisionEngine(slow, lookup_timeout=0.05)

        result = await engine.assess(make_txn())

        assert result == FAIL_SAFE

    @pytest.mark.asyncio
    async def test_high_behavior_and_reputation_add_flags(self):
        profile = make_profile(preferred_payment_methods=["UPI"])
        collaborators = make_collaborators(
            profile=profile, device_scores={"fp_known": 0.5}, ip_scores={"10.0.0.1": 0.4},
        )
        engine = RiskDecisionEngine(collaborators, behavior_analyzer=FixedBehavior(0.9))

        result = await engine.assess(make_txn())

        assert Flags.UNUSUAL_BEHAVIOR in result.flags
        assert Flags.SUSPICIOUS_DEVICE in result.flags

    @pytest.mark.asyncio
    async def test_sanctions_flag_declines(self, collaborators):
        rules = build_rules(["velocity", "amount", "geolocation", "time_pattern", "device"]) + [SanctionsRule()]
        engine = RiskDecisionEngine(collaborators, rules=rules)

        result = await engine.assess(make_txn())

        assert Flags.SANCTIONS_MATCH in result.flags
        assert result.recommendation is Recommendation.DECLINE

    @pytest.mark.asyncio
    async def test_scoring_model_is_replaceable(self, collaborators):
        engine = RiskDecisionEngine(collaborators, model=ConstantModel(1.0))
        result = await engine.assess(make_txn())
        assert result.components["ml"] == 1.0


class FixedBehavior:
    def __init__(self, score):
        self.score = score

    def analyze(self, transaction, profile):
        return self.score


class TestFailSafe:
    """Any failing sub-evaluation degrades to manual review"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("collaborator", ["profiles", "history", "device_reputation", "ip_reputation", "devices"])
    async def test_failing_collaborator(self, collaborators, collaborator):
        broken = replace(collaborators, **{collaborator: Failing(ConnectionError("unreachable"))})
        engine = RiskDecisionEngine(broken)

        result = await engine.assess(scenario_a_txn())

        assert Flags.ANALYSIS_ERROR in result.flags
        assert result.risk_level is RiskLevel.MEDIUM
        assert result.recommendation is Recommendation.REVIEW
        assert result.confidence == 0.1
        assert result.reasons == ["Unable to complete fraud analysis"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("collaborator", ["history", "device_reputation", "ip_reputation", "devices"])
    async def test_slow_collaborator(self, collaborators, collaborator):
        slow = replace(collaborators, **{collaborator: Delayed(getattr(collaborators, collaborator), 1.0)})
        engine = RiskDecisionEngine(slow, lookup_timeout=0.05)

        assert await engine.assess(make_txn()) == FAIL_SAFE

    @pytest.mark.asyncio
    async def test_whole_assessment_timeout(self, collaborators):
        slow = replace(collaborators, history=Delayed(collaborators.history, 0.5))
        engine = RiskDecisionEngine(slow, lookup_timeout=1.0, assessment_timeout=0.05)

        assert await engine.assess(make_txn()) == FAIL_SAFE

    @pytest.mark.asyncio
    async def test_failing_model(self, collaborators):
        engine = RiskDecisionEngine(collaborators, model=ConstantModel(float("nan")))
        assert await engine.assess(make_txn()) == FAIL_SAFE

    @pytest.mark.asyncio
    async def test_unknown_user_profile(self, collaborators):
        engine = RiskDecisionEngine(collaborators)
        assert await engine.assess(make_txn(user_id="ghost")) == FAIL_SAFE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("collaborator", ["profiles", "history", "device_reputation", "ip_reputation", "devices"])
    async def test_collaborator_cancelled_from_inside(self, collaborators, collaborator):
        """A collaborator raising CancelledError on its own is a lookup failure"""
        broken = replace(collaborators, **{collaborator: Failing(asyncio.CancelledError())})
        engine = RiskDecisionEngine(broken)

        assert await engine.assess(make_txn()) == FAIL_SAFE

    @pytest.mark.asyncio
    async def test_unknown_flag_from_rule(self, collaborators):
        rules = build_rules(["amount"]) + [MisspelledFlagRule()]
        engine = RiskDecisionEngine(collaborators, rules=rules)

        assert await engine.assess(make_txn()) == FAIL_SAFE


class TestConcurrency:
    """Order independence, determinism and cancellation"""

    @pytest.mark.asyncio
    async def test_completion_order_does_not_change_result(self):
        base = scenario_a_collaborators()
        engine = RiskDecisionEngine(base)
        expected = await engine.assess(scenario_a_txn())

        for delays in itertools.permutations([0.0, 0.005, 0.01, 0.02]):
            shuffled = replace(
                base,
                history=Delayed(base.history, delays[0]),
                device_reputation=Delayed(base.device_reputation, delays[1]),
                ip_reputation=Delayed(base.ip_reputation, delays[2]),
                devices=Delayed(base.devices, delays[3]),
            )
            result = await RiskDecisionEngine(shuffled, lookup_timeout=1.0).assess(scenario_a_txn())
            assert result == expected

    @pytest.mark.asyncio
    async def test_repeated_calls_are_identical(self):
        engine = RiskDecisionEngine(scenario_a_collaborators())
        results = [await engine.assess(scenario_a_txn()) for _ in range(5)]
        assert all(r == results[0] for r in results)

    @pytest.mark.asyncio
    async def test_concurrent_calls_do_not_interfere(self):
        engine = RiskDecisionEngine(scenario_a_collaborators())
        risky, ordinary = await asyncio.gather(
            engine.assess(scenario_a_txn()),
            engine.assess(make_txn()),
        )
        assert risky.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        assert Flags.VELOCITY_EXCEEDED in ordinary.flags
        assert Flags.NEW_DEVICE not in ordinary.flags

    @pytest.mark.asyncio
    async def test_caller_cancellation_cancels_lookups(self, collaborators):
        history = HangingHistory()
        engine = RiskDecisionEngine(replace(collaborators, history=history), lookup_timeout=30, assessment_timeout=30)

        task = asyncio.create_task(engine.assess(make_txn()))
        await history.started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert history.cancelled.is_set()


class HangingHistory:
    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = asyncio.Event()

    async def recent(self, user_id, window_hours):
        self.started.set()
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            self.cancelled.set()
            raise
        return []


class TestProperties:
    """Bounds and decision invariants over varied transactions"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {},
        {"amount": 0.01},
        {"amount": 999999.0, "country": "KP", "payment_method": "CASH"},
        {"amount": 500.0, "timestamp": NOW.replace(hour=2)},
        {"amount": 4200.0, "country": "RU", "device_fingerprint": "fp_other"},
        {"amount": 75.5, "timestamp": NOW.replace(day=10, hour=23), "payment_method": "WIRE"},
    ])
    async def test_bounds_and_decision_invariants(self, overrides):
        collaborators = make_collaborators(history=history_within([2, 4, 6, 8, 10, 12, 300]))
        result = await RiskDecisionEngine(collaborators).assess(make_txn(**overrides))

        assert 0.0 <= result.risk_score <= 1.0
        assert 0.1 <= result.confidence <= 1.0
        if result.risk_level is RiskLevel.CRITICAL or Flags.SANCTIONS_MATCH in result.flags:
            assert result.recommendation is Recommendation.DECLINE
        if result.risk_level is RiskLevel.HIGH or result.risk_score > 0.7:
            assert result.recommendation in (Recommendation.REVIEW, Recommendation.DECLINE)


class TestLogging:
    """Assessment lifecycle is logged"""

    @pytest.mark.asyncio
    async def test_assessment_logging(self, collaborators):
        with patch("risk_scorer.engine.logger") as mock_logger:
            await RiskDecisionEngine(collaborators).assess(make_txn())

        events = [call[0][0] for call in mock_logger.info.call_args_list]
        assert "risk_assessment_started" in events
        assert "risk_assessment_completed" in events

    @pytest.mark.asyncio
    async def test_failure_logging(self, collaborators):
        broken = replace(collaborators, profiles=Failing(ConnectionError("unreachable")))
        with patch("risk_scorer.engine.logger") as mock_logger:
            await RiskDecisionEngine(broken).assess(make_txn())

        assert mock_logger.error.called
        assert mock_logger.error.call_args[0][0] == "risk_assessment_failed"
