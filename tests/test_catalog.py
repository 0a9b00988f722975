"""Tests for weighted scenario selection."""

import collections
import random

import pytest

from loadtest.engine.catalog import ScenarioCatalog
from loadtest.engine.config import Scenario, performance_profile
from loadtest.engine.errors import ConfigurationError


class FixedRandom(random.Random):
    def __init__(self, values):
        super().__init__()
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


def _catalog(weights, **kwargs):
    scenarios = [
        Scenario(name=f"s{index}", method="GET", path=f"/{index}", weight=weight)
        for index, weight in enumerate(weights)
    ]
    return ScenarioCatalog(scenarios, **kwargs)


class TestSelection:
    def test_distribution_matches_weights(self):
        catalog = _catalog([30, 25, 20, 15, 10], seed=1234)
        draws = 20_000
        counts = collections.Counter(catalog.select().name for _ in range(draws))
        for name, expected in catalog.expected_shares().items():
            assert abs(counts[name] / draws - expected) <= 0.03, name

    def test_profile_catalog_distribution(self):
        catalog = ScenarioCatalog(performance_profile().scenarios, seed=99)
        draws = 10_000
        counts = collections.Counter(catalog.select().weight for _ in range(draws))
        for weight in (30, 25, 20, 15, 10):
            assert abs(counts[weight] / draws - weight / 100) <= 0.03

    def test_same_seed_same_sequence(self):
        first = _catalog([5, 3, 2], seed=42)
        second = _catalog([5, 3, 2], seed=42)
        assert [first.select().name for _ in range(200)] == [second.select().name for _ in range(200)]

    def test_subtracts_weights_in_catalog_order(self):
        # total weight 100: r = value * 100
        catalog = _catalog([30, 25, 20, 15, 10], rng=FixedRandom([0.0, 0.29, 0.31, 0.54, 0.56, 0.9999]))
        picks = [catalog.select().name for _ in range(6)]
        assert picks == ["s0", "s0", "s1", "s1", "s2", "s4"]

    def test_single_scenario_always_selected(self):
        catalog = _catalog([7], seed=3)
        assert {catalog.select().name for _ in range(50)} == {"s0"}

    def test_total_weight_and_iteration(self):
        catalog = _catalog([2, 3])
        assert catalog.total_weight == 5
        assert len(catalog) == 2
        assert [s.name for s in catalog] == ["s0", "s1"]


class TestConstruction:
    def test_empty_catalog_rejected(self):
        with pytest.raises(ConfigurationError, match="empty"):
            ScenarioCatalog([])
