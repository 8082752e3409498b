"""
Unit tests for feature extraction and the scoring model
"""

import pytest

from risk_scorer.testing import NOW, make_txn
from risk_scorer.errors import ConfigurationError
from risk_scorer.features import FEATURE_NAMES, LinearScoringModel, RiskFeatureExtractor


class TestFeatureExtraction:
    """Test the normalized feature vector"""

    def test_weekday_afternoon_card_payment(self):
        features = RiskFeatureExtractor().extract(make_txn(amount=250.0))
        assert len(features) == len(FEATURE_NAMES)
        assert features == pytest.approx([0.25, 0.2, 0.1, 0.1, 0.2])

    def test_night_weekend_high_risk_country(self):
        # 2024-03-09 is a Saturday
        txn = make_txn(timestamp=NOW.replace(day=9, hour=4), country="KP", payment_method="cash")
        features = RiskFeatureExtractor().extract(txn)
        assert features[1:] == pytest.approx([0.8, 0.3, 1.0, 0.8])

    @pytest.mark.parametrize("country,risk", [("IR", 1.0), ("VE", 0.6), ("CN", 0.6), ("GB", 0.1)])
    def test_country_tiers(self, country, risk):
        assert RiskFeatureExtractor.country_risk(country) == risk

    @pytest.mark.parametrize("method,risk", [
        ("CRYPTO", 0.7), ("CASH", 0.8), ("WIRE", 0.4), ("CARD", 0.2), ("UPI", 0.1), ("GIFT_CARD", 0.5),
    ])
    def test_payment_method_tiers(self, method, risk):
        assert RiskFeatureExtractor.payment_method_risk(method) == risk


class TestLinearScoringModel:
    """Test the fixed-weight model"""

    def test_weighted_sum(self):
        score = LinearScoringModel().predict([0.02, 0.2, 0.1, 0.1, 0.2])
        assert score == pytest.approx(0.096)

    def test_clamped_to_one(self):
        assert LinearScoringModel().predict([15.0, 0.8, 0.1, 0.1, 0.7]) == 1.0

    def test_clamped_to_zero(self):
        assert LinearScoringModel().predict([-5.0, 0.0, 0.0, 0.0, 0.0]) == 0.0

    def test_wrong_feature_count(self):
        with pytest.raises(ValueError):
            LinearScoringModel().predict([0.1, 0.2])

    def test_wrong_weight_count_is_configuration_error(self):
        with pytest.raises(ConfigurationError):
            LinearScoringModel(weights=[0.5, 0.5])
