"""Unit tests for the persistence boundary using mock psycopg connections."""

import logging
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import psycopg
import pytest
from psycopg.types.json import Json

from neuroloop_engine import store
from neuroloop_engine.anti_repetition import ComboParams, ComboRecord
from neuroloop_engine.errors import StoreUnavailable
from neuroloop_engine.metrics import get_metrics
from neuroloop_engine.recovery import RecoveryState

NOW = datetime(2026, 3, 12, 15, 0, tzinfo=timezone.utc)


class _FakeCursor:
    def __init__(self, rows=None, rowcount=1, error=None):
        self.rows = list(rows or [])
        self.rowcount = rowcount
        self.error = error
        self.executed: list[tuple] = []

    async def execute(self, query, params=None):
        self.executed.append((query, params))
        if self.error is not None:
            raise self.error

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return list(self.rows)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


class _FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        return False


def _conn(cursor: _FakeCursor) -> AsyncMock:
    conn = AsyncMock()
    conn.cursor = MagicMock(return_value=cursor)
    conn.transaction = MagicMock(return_value=_FakeTransaction())
    return conn


class TestFailClosedReads:
    async def test_recovery_state_row(self):
        cursor = _FakeCursor([{"value": "64.5", "last_timestamp": NOW, "has_baseline": True, "version": 7}])
        state = await store.load_recovery_state(_conn(cursor), "user-1")
        assert state == RecoveryState(value=64.5, last_timestamp=NOW, has_baseline=True, version=7)

    async def test_recovery_state_missing(self):
        state = await store.load_recovery_state(_conn(_FakeCursor()), "user-1")
        assert not state.is_valid
        assert state.version == 0

    async def test_recovery_state_error_raises(self, caplog):
        cursor = _FakeCursor(error=psycopg.OperationalError("connection lost"))
        with caplog.at_level(logging.ERROR, logger="neuroloop_engine.store"):
            with pytest.raises(StoreUnavailable) as exc_info:
                await store.load_recovery_state(_conn(cursor), "user-1")
        assert exc_info.value.data_class == "recovery"
        assert exc_info.value.code == "store_unavailable"
        assert "Store read failed for recovery" in caplog.text

    async def test_profile_drops_invalid_timezone(self):
        cursor = _FakeCursor([{
            "timezone": "Mars/Olympus",
            "plan_id": "expert",
            "is_calibrated": True,
            "rri_value": 48,
            "rri_set_at": "2026-03-11T08:00:00Z",
        }])
        profile = await store.load_user_profile(_conn(cursor), "user-1")
        assert profile.timezone is None
        assert profile.plan_id == "expert"
        assert profile.rri_set_at == datetime(2026, 3, 11, 8, 0, tzinfo=timezone.utc)

    async def test_cognitive_states(self):
        cursor = _FakeCursor([{"ae": 40, "ra": 50, "ct": 60, "in_score": 70, "s2_consistency": 55, "version": 2}])
        states, consistency = await store.load_cognitive_states(_conn(cursor), "user-1")
        assert states.s2 == 65
        assert consistency == 55

    async def test_s2_scores_oldest_first(self):
        cursor = _FakeCursor([{"score": 90}, {"score": None}, {"score": 70}])
        assert await store.load_s2_scores(_conn(cursor), "user-1") == [70, 90]

    async def test_rq_inputs_fail_closed(self):
        cursor = _FakeCursor(error=psycopg.OperationalError("timeout"))
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.load_content_completions(_conn(cursor), "user-1", NOW)
        assert exc_info.value.data_class == "reasoning_quality"


class TestFailOpenReads:
    async def test_completions_error_returns_empty(self, caplog):
        cursor = _FakeCursor(error=psycopg.OperationalError("timeout"))
        with caplog.at_level(logging.WARNING, logger="neuroloop_engine.store"):
            assert await store.load_completions(_conn(cursor), "user-1", NOW) == []
        assert get_metrics()["engine"]["store_fail_open"] == 1
        assert "treating history as empty" in caplog.text

    async def test_fail_open_reads_use_savepoint(self):
        conn = _conn(_FakeCursor(error=psycopg.OperationalError("timeout")))
        await store.load_overrides(conn, "user-1", NOW)
        conn.transaction.assert_called_once()

    async def test_completions_rows(self):
        cursor = _FakeCursor([
            {"game_type": "S1-AE", "completed_at": NOW, "status": None, "score": "71", "xp_awarded": None},
        ])
        [record] = await store.load_completions(_conn(cursor), "user-1", NOW)
        assert record.status == "completed"
        assert record.score == 71
        assert record.xp_awarded == 0

    async def test_recent_combos_parse_params(self):
        cursor = _FakeCursor([
            {
                "combo_hash": "m0123",
                "completed_at": NOW,
                "difficulty": "medium",
                "game_name": "focus-switch",
                "params": {"difficulty": "medium", "stimulus_ids": ["b", "a"]},
            },
            {
                "combo_hash": "m4567",
                "completed_at": NOW,
                "difficulty": "medium",
                "game_name": "focus-switch",
                "params": None,
            },
        ])
        records = await store.load_recent_combos(_conn(cursor), "user-1", "focus-switch", NOW)
        assert records[0].params.stimulus_ids == ("b", "a")
        assert records[1].params is None

    async def test_combo_history_error_returns_empty(self):
        cursor = _FakeCursor(error=psycopg.errors.UndefinedTable("no combo_history"))
        assert await store.load_recent_combos(_conn(cursor), "user-1", "focus-switch", NOW) == []


class TestWrites:
    async def test_acquire_user_lock(self):
        conn = _conn(_FakeCursor())
        await store.acquire_user_lock(conn, "user-1")
        query, params = conn.execute.call_args.args
        assert "pg_advisory_xact_lock" in query
        assert params == ("user-1",)

    async def test_save_recovery_state_superseded(self):
        cursor = _FakeCursor(rowcount=0)
        state = RecoveryState(value=50, last_timestamp=NOW, has_baseline=True, version=3)
        assert await store.save_recovery_state(_conn(cursor), "user-1", state) is False
        query, params = cursor.executed[0]
        assert "recovery_state.version < EXCLUDED.version" in query
        assert params[-1] == 3

    async def test_save_recovery_state_applied(self):
        state = RecoveryState(value=50, last_timestamp=NOW, has_baseline=True, version=1)
        assert await store.save_recovery_state(_conn(_FakeCursor(rowcount=1)), "user-1", state) is True

    async def test_combo_params_stored_as_json(self):
        conn = _conn(_FakeCursor())
        record = ComboRecord("m0123", NOW, "medium", "focus-switch", ComboParams("medium", ("b", "a")))
        await store.insert_combo_record(conn, "user-1", record, fallback_used=True, duplicates_rejected=2)
        _, params = conn.execute.call_args.args
        assert isinstance(params[4], Json)
        assert params[4].obj["stimulus_ids"] == ["a", "b"]
        assert params[6:8] == (True, 2)

    async def test_write_errors_propagate(self):
        conn = _conn(_FakeCursor())
        conn.execute.side_effect = psycopg.OperationalError("gone")
        with pytest.raises(psycopg.OperationalError):
            await store.save_rri(conn, "user-1", 48, NOW)
