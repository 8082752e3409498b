"""
Shared fixtures for the risk scorer tests
"""

import pytest

from risk_scorer.testing import make_collaborators, make_profile


@pytest.fixture
def profile():
    return make_profile()


@pytest.fixture
def collaborators(profile):
    return make_collaborators(profile=profile)
