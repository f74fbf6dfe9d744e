"""Tests for Thompson-sampling traffic reallocation."""

import random

import numpy as np
import pytest

from abengine.bandits.thompson import BanditOptimizer, apply_floor, rank_weights
from abengine.config import BanditConfig
from abengine.stats.sampling import PosteriorSampler
from abengine.types import ExperimentStatus


class RateSampler:
    """Deterministic stand-in that 'samples' the observed conversion rate."""

    def thompson_sample(self, result):
        return result.conversion_rate


class TestRankWeights:
    def test_inverse_rank(self):
        weights = rank_weights({"a": 0.1, "b": 0.3, "c": 0.2})
        assert weights["b"] == pytest.approx(6 / 11)
        assert weights["c"] == pytest.approx(3 / 11)
        assert weights["a"] == pytest.approx(2 / 11)


class TestApplyFloor:
    def test_no_change_when_all_above_floor(self):
        weights = {"a": 0.5, "b": 0.3, "c": 0.2}
        assert apply_floor(weights, 0.1) == pytest.approx(weights)

    def test_pins_small_arms(self):
        weights = {"a": 0.9, "b": 0.06, "c": 0.04}
        out = apply_floor(weights, 0.1)
        assert out["b"] == pytest.approx(0.1)
        assert out["c"] == pytest.approx(0.1)
        assert out["a"] == pytest.approx(0.8)

    def test_floor_too_large_gives_equal_split(self):
        out = apply_floor({f"v{i}": w for i, w in enumerate([0.7, 0.1, 0.1, 0.05, 0.05])}, 0.25)
        assert all(w == pytest.approx(0.2) for w in out.values())

    def test_invariant_on_random_weights(self):
        rng = np.random.default_rng(0)
        for n in range(2, 10):
            for _ in range(50):
                raw = rng.dirichlet(np.full(n, 0.3))
                out = apply_floor({f"v{i}": float(w) for i, w in enumerate(raw)}, 0.1)
                values = np.array(list(out.values()))
                assert values.sum() == pytest.approx(1.0)
                assert values.min() >= 0.1 - 1e-9


class TestBanditOptimizer:
    def test_waits_for_enough_sessions(self, make_experiment):
        optimizer = BanditOptimizer(BanditConfig(min_total_sessions=1000), RateSampler())
        exp = make_experiment({"control": (500, 10), "treatment": (500, 50)})
        before = dict(exp.traffic_allocation)
        assert optimizer.should_run(exp) is False
        assert optimizer.reallocate(exp) == before
        assert exp.bandit_active is False

    def test_skips_inactive_and_single_arm(self, make_experiment):
        optimizer = BanditOptimizer(sampler=RateSampler())
        paused = make_experiment({"control": (800, 10), "treatment": (800, 50)})
        paused.status = ExperimentStatus.PAUSED
        single = make_experiment({"control": (5000, 10)})
        assert optimizer.should_run(paused) is False
        assert optimizer.should_run(single) is False

    def test_disabled(self, make_experiment):
        optimizer = BanditOptimizer(BanditConfig(enabled=False), RateSampler())
        exp = make_experiment({"control": (800, 10), "treatment": (800, 50)})
        assert optimizer.should_run(exp) is False

    def test_reallocates_toward_leader(self, make_experiment):
        optimizer = BanditOptimizer(BanditConfig(allocation_floor=0.1), RateSampler())
        exp = make_experiment({"control": (600, 30), "mid": (600, 60), "best": (600, 120)})

        allocation = optimizer.reallocate(exp)

        assert list(allocation) == ["control", "mid", "best"]
        assert allocation["best"] == pytest.approx(6 / 11)
        assert allocation["control"] == pytest.approx(2 / 11)
        assert sum(allocation.values()) == pytest.approx(1.0)
        assert exp.traffic_allocation == allocation
        assert exp.bandit_active is True
        assert optimizer.total_reallocations == 1

    def test_floor_holds_with_real_sampler(self, make_experiment):
        optimizer = BanditOptimizer(
            BanditConfig(allocation_floor=0.1),
            PosteriorSampler(random.Random(5)),
        )
        exp = make_experiment({f"v{i}": (300, 10 * (i + 1)) for i in range(6)})
        for _ in range(50):
            allocation = optimizer.reallocate(exp)
            assert min(allocation.values()) >= 0.1 - 1e-9
            assert sum(allocation.values()) == pytest.approx(1.0)
