"""Tests for stores, the snapshot format and the snapshot writer."""

import asyncio
import json
import threading
import uuid
from decimal import Decimal
from unittest.mock import MagicMock

import numpy as np
import pytest

from abengine.config import PersistenceConfig
from abengine.errors import PersistenceError
from abengine.persistence.snapshot import (
    SCHEMA_VERSION,
    decode_snapshot,
    encode_snapshot,
    migrate,
)
from abengine.persistence.store import FileStore, InMemoryStore
from abengine.persistence.writer import SnapshotWriter
from abengine.types import ExperimentStatus

LEGACY_SNAPSHOT = {
    "timestamp": 1700000000000,
    "experiments": [[
        "exp1",
        {
            "id": "exp1",
            "name": "Legacy headline",
            "status": "active",
            "startDate": 1699000000000,
            "endDate": 1701000000000,
            "variants": [
                {"id": "control", "name": "Control", "weight": 1, "normalizedWeight": 0.5,
                 "changes": {"headline": "Welcome"}},
                {"id": "urgent", "name": "Urgent", "weight": 1, "normalizedWeight": 0.5,
                 "changes": {"headline": "Last chance"}},
            ],
            "segments": ["all"],
            "trafficAllocation": {"control": 0.5, "urgent": 0.5},
            "results": {
                "statisticalSignificance": True,
                "confidenceLevel": 0.99,
                "liftRange": {"min": 0.1, "max": 0.5},
                "winner": "urgent",
                "variantResults": [
                    ["control", {"sessions": 400, "conversions": 40, "engagementTime": 3.5,
                                 "bounceRate": 0.2, "revenue": 0}],
                    ["urgent", {"sessions": 400, "conversions": 70, "engagementTime": 4.0,
                                "bounceRate": 0.1, "revenue": 99.5}],
                ],
            },
        },
    ]],
    "userAssignments": [[
        "exp1:u1",
        {"experimentId": "exp1", "userId": "u1", "variantId": "urgent",
         "assignmentTime": 1699500000000, "userContext": {"country": "MX"}},
    ]],
}


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestStores:
    def test_in_memory(self):
        store = InMemoryStore()
        assert store.get("k") is None
        store.set("k", b"v")
        assert store.get("k") == b"v"

    def test_file_store_round_trip(self, tmp_path):
        store = FileStore(tmp_path / "data")
        assert store.get("abengine:snapshot") is None
        store.set("abengine:snapshot", b'{"a": 1}')
        assert store.get("abengine:snapshot") == b'{"a": 1}'
        assert store.path_for("abengine:snapshot").name == "abengine_snapshot.json"
        assert [p.name for p in (tmp_path / "data").iterdir()] == ["abengine_snapshot.json"]

    def test_file_store_overwrites(self, tmp_path):
        store = FileStore(tmp_path)
        store.set("k", b"one")
        store.set("k", b"two")
        assert store.get("k") == b"two"

    def test_file_store_wraps_os_errors(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        store = FileStore(blocker / "sub")
        with pytest.raises(PersistenceError):
            store.set("k", b"v")


class TestSnapshotFormat:
    def test_encode_handles_numpy_values(self):
        raw = encode_snapshot(
            experiments={},
            segments={},
            assignments={},
            metrics={"e": {"a": {"sessions": np.int64(3), "revenue": np.float64(1.5)}}},
        )
        data = json.loads(raw)
        assert data["schema_version"] == SCHEMA_VERSION
        assert data["metrics"]["e"]["a"] == {"sessions": 3, "revenue": 1.5}

    def test_encode_falls_back_to_text_for_opaque_values(self):
        ref = uuid.UUID("12345678-1234-5678-1234-567812345678")
        raw = encode_snapshot(
            experiments={"e": {"variants": [{"id": "a", "changes": {"ref": ref}}]}},
            segments={},
            assignments={"e:u1": {"user_context": {"ltv": Decimal("9.99")}}},
            metrics={},
        )
        data = json.loads(raw)
        assert data["assignments"]["e:u1"]["user_context"] == {"ltv": "9.99"}
        assert data["experiments"]["e"]["variants"][0]["changes"]["ref"] == str(ref)

    def test_legacy_snapshot_is_migrated(self):
        state = decode_snapshot(json.dumps(LEGACY_SNAPSHOT).encode())

        exp = state.experiments["exp1"]
        assert exp.name == "Legacy headline"
        assert exp.status == ExperimentStatus.ACTIVE
        assert exp.variants[1].payload == {"headline": "Last chance"}
        assert exp.variants[0].normalized_weight == 0.5
        assert exp.results["urgent"].sessions == 400
        assert exp.results["urgent"].conversions == 70
        assert exp.results["urgent"].revenue == 99.5
        assert exp.significance.significant is True
        assert exp.significance.lift_range == (0.1, 0.5)
        assert exp.winner == "urgent"
        assert exp.decided_at is not None
        assert exp.start_time < exp.end_time

        assert len(state.assignments) == 1
        assignment = state.assignments[0]
        assert assignment.key == "exp1:u1"
        assert assignment.variant_id == "urgent"
        assert assignment.user_context == {"country": "MX"}
        assert state.saved_at is not None

    def test_missing_and_unknown_fields(self):
        raw = json.dumps({
            "schema_version": 2,
            "experiments": {"e": {"id": "e", "variants": [{"id": "a"}, {"id": "b"}], "shiny": True}},
            "future_section": [],
        }).encode()
        state = decode_snapshot(raw)
        exp = state.experiments["e"]
        assert exp.status == ExperimentStatus.ACTIVE
        assert exp.segments == ["all"]
        assert exp.results["a"].sessions == 0
        assert state.segments == {}
        assert state.assignments == []

    def test_newer_schema_is_rejected(self):
        with pytest.raises(PersistenceError):
            migrate({"schema_version": SCHEMA_VERSION + 1})

    @pytest.mark.parametrize("raw", [
        b"\xff\xfe",
        b"{truncated",
        b"[1, 2, 3]",
        json.dumps({"schema_version": 2, "experiments": {"e": {"name": "no id"}}}).encode(),
    ])
    def test_corrupt_snapshots(self, raw):
        with pytest.raises(PersistenceError):
            decode_snapshot(raw)


class TestSnapshotWriter:
    def _writer(self, store, clock=None, **overrides):
        config = PersistenceConfig(**overrides)
        return SnapshotWriter(store, lambda: b"state", config, clock=clock or FakeClock())

    def test_clean_writer_does_not_write(self):
        store = MagicMock()
        writer = self._writer(store)
        assert writer.flush_now() is True
        store.set.assert_not_called()

    def test_writes_when_dirty(self):
        store = InMemoryStore()
        writer = self._writer(store)
        writer.mark_dirty()
        assert writer.flush_now() is True
        assert store.get("abengine:snapshot") == b"state"
        assert writer.dirty is False

    def test_exponential_backoff_is_capped(self):
        store = MagicMock()
        store.set.side_effect = PersistenceError("disk full")
        writer = self._writer(store, retry_delay_seconds=1.0, retry_backoff_multiplier=2.0,
                              max_retry_delay_seconds=5.0)
        writer.mark_dirty()

        delays = []
        for _ in range(5):
            assert writer.flush_now() is False
            delays.append(writer.retry_delay())

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert writer.degraded is True
        assert writer.dirty is True

    def test_recovers_after_failure(self):
        store = MagicMock()
        store.set.side_effect = [OSError("unavailable"), None]
        writer = self._writer(store)
        writer.mark_dirty()

        assert writer.flush_now() is False
        assert writer.flush_now() is True
        assert writer.degraded is False
        assert writer.get_stats()["writes"] == 1
        assert writer.get_stats()["failed_writes"] == 1

    @pytest.mark.asyncio
    async def test_flush_waits_out_backoff_window(self):
        store = MagicMock()
        store.set.side_effect = [PersistenceError("down"), None]
        clock = FakeClock()
        writer = self._writer(store, clock=clock, retry_delay_seconds=10.0)
        writer.mark_dirty()

        assert await writer.flush() is False
        clock.now = 5.0
        assert await writer.flush() is False
        assert store.set.call_count == 1

        clock.now = 10.5
        assert await writer.flush() is True
        assert store.set.call_count == 2

    @pytest.mark.asyncio
    async def test_background_loop_and_final_flush(self):
        store = InMemoryStore()
        writer = SnapshotWriter(store, lambda: b"state", PersistenceConfig(flush_interval_seconds=0.01))
        writer.mark_dirty()

        await writer.start()
        await asyncio.sleep(0.05)
        assert store.get("abengine:snapshot") == b"state"

        writer.mark_dirty()
        await writer.stop()
        assert writer.dirty is False

    @pytest.mark.asyncio
    async def test_flush_writes_off_the_event_loop(self):
        writer_threads = []

        class RecordingStore(InMemoryStore):
            def set(self, key, value):
                writer_threads.append(threading.get_ident())
                super().set(key, value)

        store = RecordingStore()
        writer = self._writer(store)
        writer.mark_dirty()

        assert await writer.flush() is True
        assert store.get("abengine:snapshot") == b"state"
        assert writer_threads and writer_threads[0] != threading.get_ident()
        assert writer.get_stats()["writes"] == 1

    @pytest.mark.asyncio
    async def test_failed_async_flush_restores_dirty_flag(self):
        store = MagicMock()
        store.set.side_effect = OSError("unavailable")
        writer = self._writer(store)
        writer.mark_dirty()

        assert await writer.flush() is False
        assert writer.dirty is True
        assert writer.degraded is True
