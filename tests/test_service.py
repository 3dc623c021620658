"""Service-layer tests: store calls are replaced with AsyncMocks."""

import logging
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from neuroloop_engine import service, store
from neuroloop_engine.anti_repetition import ComboParams, ComboRecord, generate_combo_hash
from neuroloop_engine.caps import CompletionRecord
from neuroloop_engine.cognitive_states import CognitiveStates
from neuroloop_engine.contracts import SessionCompletedV1
from neuroloop_engine.errors import StoreUnavailable
from neuroloop_engine.metrics import get_metrics
from neuroloop_engine.overrides import OverrideRecord
from neuroloop_engine.recovery import LinearDecay, OnboardingSeed, RecoveryState
from neuroloop_engine.store import DailyMetrics, UserProfile

NOW = datetime(2026, 3, 12, 15, 0, tzinfo=timezone.utc)


def _valid_state(value: float, ts: datetime = NOW, version: int = 1) -> RecoveryState:
    return RecoveryState(value=value, last_timestamp=ts, has_baseline=True, version=version)


@pytest.fixture
def fake_store(monkeypatch):
    fake = SimpleNamespace(
        acquire_user_lock=AsyncMock(),
        load_user_profile=AsyncMock(return_value=UserProfile(plan_id="light", is_calibrated=True)),
        load_recovery_state=AsyncMock(return_value=_valid_state(70)),
        load_cognitive_states=AsyncMock(return_value=(CognitiveStates(ct=60, in_=60), None)),
        load_daily_metrics=AsyncMock(return_value=DailyMetrics(sharpness=70, readiness=65)),
        load_s2_scores=AsyncMock(return_value=[]),
        load_content_completions=AsyncMock(return_value=[]),
        load_last_activity=AsyncMock(return_value=(None, None)),
        load_completions=AsyncMock(return_value=[]),
        load_recent_combos=AsyncMock(return_value=[]),
        load_overrides=AsyncMock(return_value=[]),
        save_recovery_state=AsyncMock(return_value=True),
        save_cognitive_states=AsyncMock(),
        insert_completion=AsyncMock(),
        insert_combo_record=AsyncMock(),
        insert_override=AsyncMock(),
        save_rri=AsyncMock(),
    )
    for name, fn in vars(fake).items():
        monkeypatch.setattr(store, name, fn)
    return fake


class TestRecovery:
    async def test_effective_recovery_from_checkpoint(self, fake_store):
        effective = await service.load_effective_recovery(None, "user-1", NOW + timedelta(hours=12))
        assert effective.source == "checkpoint"
        # 8h evening + 4 night hours at 0.2 -> 8.8 effective hours
        assert effective.value == pytest.approx(64.3)

    async def test_effective_recovery_uses_rri(self, fake_store):
        fake_store.load_user_profile.return_value = UserProfile(rri_value=48, rri_set_at=NOW)
        fake_store.load_recovery_state.return_value = RecoveryState(None, None)
        effective = await service.load_effective_recovery(None, "user-1", NOW + timedelta(hours=1))
        assert effective.is_using_rri
        assert effective.value == 48

    async def test_configured_decay_strategy(self, fake_store):
        service.configure(recovery_decay="linear")
        effective = await service.load_effective_recovery(None, "user-1", NOW + timedelta(hours=10))
        assert effective.value == 65.0

    async def test_store_outage_fails_closed(self, fake_store):
        fake_store.load_recovery_state.side_effect = StoreUnavailable("recovery", "down")
        with pytest.raises(StoreUnavailable):
            await service.load_effective_recovery(None, "user-1", NOW)

    async def test_baseline_seeded_once(self, fake_store):
        fake_store.load_recovery_state.return_value = RecoveryState(None, None)
        seed = OnboardingSeed("7-8h", "1-2h", "clear")
        state = await service.ensure_recovery_baseline(None, "user-1", seed, NOW)
        assert state.value == 53
        fake_store.save_rri.assert_awaited_once_with(None, "user-1", 53, NOW)
        fake_store.save_recovery_state.assert_awaited_once()

    async def test_existing_baseline_untouched(self, fake_store):
        state = await service.ensure_recovery_baseline(None, "user-1", OnboardingSeed(rri_value=40), NOW)
        assert state.value == 70
        fake_store.save_recovery_state.assert_not_awaited()
        fake_store.save_rri.assert_not_awaited()

    async def test_log_action_locks_and_saves(self, fake_store):
        fake_store.load_recovery_state.return_value = _valid_state(50, version=4)
        new_state = await service.log_recovery_action(None, "user-1", 30, 0, NOW)
        fake_store.acquire_user_lock.assert_awaited_once_with(None, "user-1")
        assert new_state.value == pytest.approx(53.6)
        assert new_state.version == 5
        saved = fake_store.save_recovery_state.await_args.args[2]
        assert saved == new_state

    async def test_log_action_without_baseline_starts_from_default(self, fake_store):
        fake_store.load_recovery_state.return_value = RecoveryState(None, None)
        new_state = await service.log_recovery_action(None, "user-1", 50, 0, NOW)
        # 45 + 50 · 0.12
        assert new_state.value == 51.0
        assert new_state.has_baseline

    async def test_superseded_checkpoint_logged(self, fake_store, caplog):
        fake_store.save_recovery_state.return_value = False
        with caplog.at_level(logging.WARNING, logger="neuroloop_engine.service"):
            await service.log_recovery_action(None, "user-1", 10, 0, NOW, LinearDecay())
        assert "superseded" in caplog.text


async def test_reasoning_quality(fake_store):
    fake_store.load_s2_scores.return_value = [70] * 5
    fake_store.load_last_activity.return_value = (NOW - timedelta(days=1), None)
    result = await service.load_reasoning_quality(None, "user-1", NOW)
    # 0.5·60 + 0.3·100 + 0
    assert result.rq == pytest.approx(60)


class TestEvaluateGames:
    async def test_good_day(self, fake_store):
        report = await service.evaluate_games(None, "user-1", NOW)
        assert report.enabled_types() == ["S1-AE", "S1-RA", "S2-CT", "S2-IN"]

    async def test_daily_s1_cap_from_log(self, fake_store):
        fake_store.load_completions.return_value = [
            CompletionRecord("S1-AE", NOW - timedelta(hours=h)) for h in (1, 2, 3)
        ]
        report = await service.evaluate_games(None, "user-1", NOW)
        assert report["S1-AE"].reason_code == "CAP_REACHED_DAILY_S1"
        assert report["S2-CT"].enabled
        assert get_metrics()["engine"]["cap_violation_races"] == 0

    async def test_overshoot_counted(self, fake_store):
        fake_store.load_completions.return_value = [
            CompletionRecord("S1-AE", NOW - timedelta(hours=h)) for h in (1, 2, 3, 4)
        ]
        await service.evaluate_games(None, "user-1", NOW)
        assert get_metrics()["engine"]["cap_violation_races"] == 1

    async def test_no_baseline_gates_recovery_bound_games(self, fake_store):
        fake_store.load_recovery_state.return_value = RecoveryState(None, None)
        fake_store.load_user_profile.return_value = UserProfile(is_calibrated=False)
        report = await service.evaluate_games(None, "user-1", NOW)
        assert report.enabled_types() == []
        assert report.safety_rule_active


class TestContentOverride:
    async def test_allowed_override_recorded(self, fake_store):
        decision = await service.request_content_override(
            None, "user-1", "task-1", "reading", "NON_FICTION", "HIGH", NOW
        )
        assert decision.allowed
        record = fake_store.insert_override.await_args.args[2]
        assert record.task_id == "task-1"
        assert record.s2_capacity_at_override == 68
        assert record.s1_buffer_at_override == 70

    async def test_refused_override_not_recorded(self, fake_store):
        fake_store.load_overrides.return_value = [
            OverrideRecord("task-0", "reading", NOW - timedelta(hours=1), 68, 70)
        ]
        decision = await service.request_content_override(
            None, "user-1", "task-1", "reading", "NON_FICTION", "HIGH", NOW
        )
        assert decision.reason_code == "DAILY_OVERRIDE_LIMIT"
        fake_store.insert_override.assert_not_awaited()

    async def test_penalty_applied_to_gating(self, fake_store):
        fake_store.load_overrides.return_value = [
            OverrideRecord("task-0", "reading", NOW - timedelta(hours=1), 68, 70)
        ]
        # 68 - 3 = 65 still meets MEDIUM non-fiction
        evaluation = await service.evaluate_content_override(None, "user-1", "NON_FICTION", "MEDIUM", NOW)
        assert evaluation.gating.enabled
        assert evaluation.decision.reason_code == "NOT_WITHHELD"


class TestGenerateSession:
    async def test_uses_configured_attempts(self, fake_store):
        used = ComboParams("easy", ("a", "b"))
        fake_store.load_recent_combos.return_value = [
            ComboRecord(generate_combo_hash(used), NOW - timedelta(hours=1), "easy", "focus-switch", used)
        ]
        service.configure(max_generation_attempts=2)
        result = await service.generate_session(
            None,
            "user-1",
            "focus-switch",
            "S1-AE",
            lambda: {"params": used},
            lambda s: s["params"],
            NOW,
            apply_params=lambda s, p: {**s, "params": p},
        )
        assert result.fallback_used
        assert result.attempts == 2
        assert result.session["params"] == result.params
        assert generate_combo_hash(result.session["params"]) == result.combo_hash


class TestCompletionComboHash:
    async def test_float_coerced_params_match_generated_hash(self, fake_store):
        generated = ComboParams("easy", ("a", "b"), None, {"interval_ms": 500}, None)
        completed = SessionCompletedV1.model_validate({
            "user_id": "user-1",
            "game_type": "S1-AE",
            "game_name": "focus-switch",
            "params": {"difficulty": "easy", "stimulus_ids": ["a", "b"], "temporal_params": {"interval_ms": 500}},
        })
        outcome = await service.record_game_completion(None, completed, NOW)
        assert outcome.combo_hash == generate_combo_hash(generated)

        stored = fake_store.insert_combo_record.await_args.args[2]
        fake_store.load_recent_combos.return_value = [stored]
        service.configure(max_generation_attempts=1)
        result = await service.generate_session(
            None,
            "user-1",
            "focus-switch",
            "S1-AE",
            lambda: {"params": generated},
            lambda s: s["params"],
            NOW,
            apply_params=lambda s, p: {**s, "params": p},
        )
        assert result.fallback_used
        assert result.combo_hash != stored.combo_hash


def _completion(**overrides) -> SessionCompletedV1:
    payload = {
        "user_id": "user-1",
        "game_type": "S2-CT",
        "game_name": "argument-map",
        "score": 80,
        "base_xp": 20,
        "params": {"difficulty": "hard", "stimulus_ids": ["p1", "p2"]},
    }
    payload.update(overrides)
    return SessionCompletedV1.model_validate(payload)


class TestRecordGameCompletion:
    async def test_full_write_back(self, fake_store):
        completed = _completion(
            s2_metrics={"accuracy": 90, "timing_consistency": 80, "coherence": 70}
        )
        outcome = await service.record_game_completion(None, completed, NOW)

        fake_store.acquire_user_lock.assert_awaited_once()
        assert outcome.xp_awarded == 20
        assert outcome.consistency_delta == 2
        assert outcome.s2_consistency == 52
        assert outcome.cap_violations == []

        completion = fake_store.insert_completion.await_args.args[2]
        assert completion.completed_at == NOW
        assert completion.xp_awarded == 20

        combo = fake_store.insert_combo_record.await_args.args[2]
        assert combo.combo_hash == outcome.combo_hash
        assert combo.combo_hash.startswith("h")

        _, _, states, accumulator = fake_store.save_cognitive_states.await_args.args
        assert states.ct == 70
        assert accumulator == 52

    async def test_daily_xp_allowance(self, fake_store):
        fake_store.load_completions.return_value = [
            CompletionRecord("S1-AE", NOW - timedelta(hours=h), xp_awarded=10) for h in (1, 2, 3)
        ]
        outcome = await service.record_game_completion(None, _completion(), NOW)
        assert outcome.xp_awarded == 0
        states = fake_store.save_cognitive_states.await_args.args[2]
        assert states.ct == 60

    async def test_race_overshoot_reported(self, fake_store):
        fake_store.load_completions.return_value = [
            CompletionRecord("S2-IN", NOW - timedelta(minutes=1))
        ]
        outcome = await service.record_game_completion(None, _completion(), NOW)
        assert outcome.cap_violations == ["s2_daily"]
        assert get_metrics()["engine"]["cap_violation_races"] == 1

    async def test_s1_game_leaves_consistency_alone(self, fake_store):
        fake_store.load_cognitive_states.return_value = (CognitiveStates(), 61.0)
        outcome = await service.record_game_completion(
            None, _completion(game_type="S1-AE", combo_hash="e0000000000000001", params=None), NOW
        )
        assert outcome.consistency_delta is None
        assert outcome.s2_consistency == 61.0
        assert outcome.combo_hash == "e0000000000000001"
