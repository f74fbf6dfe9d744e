"""Shared fixtures for the ABEngine test suite."""

import random
from datetime import datetime, timedelta

import pytest

from abengine.config import EngineConfig
from abengine.persistence.store import InMemoryStore
from abengine.registry import ExperimentRegistry
from abengine.stats.sampling import PosteriorSampler
from abengine.types import Experiment, Variant, VariantResult


@pytest.fixture
def make_experiment():
    """Factory for experiments with preset counters.

    ``counts`` maps variant id to ``(sessions, conversions)``; the first
    id is the control.
    """

    def _make(counts, exp_id="exp-1", start_time=None, end_time=None):
        ids = list(counts)
        variants = [
            Variant(id=vid, name=vid, weight=1.0, normalized_weight=1.0 / len(ids))
            for vid in ids
        ]
        start = start_time or datetime.now()
        exp = Experiment(
            id=exp_id,
            name="test",
            start_time=start,
            end_time=end_time or start + timedelta(days=30),
            variants=variants,
            traffic_allocation={v.id: v.normalized_weight for v in variants},
        )
        for vid, (sessions, conversions) in counts.items():
            exp.results[vid] = VariantResult(sessions=sessions, conversions=conversions)
        return exp

    return _make


@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def registry(config, store):
    return ExperimentRegistry(
        config,
        store=store,
        sampler=PosteriorSampler(random.Random(7)),
    )


@pytest.fixture
def two_arm_definition():
    return {
        "id": "headline",
        "name": "Headline test",
        "hypothesis": "A pain-point headline converts better",
        "variants": [
            {"id": "control", "name": "Control"},
            {"id": "pain_point", "name": "Pain point", "payload": {"headline": "Stop losing leads"}},
        ],
    }
