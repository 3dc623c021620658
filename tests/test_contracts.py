"""Tests for job payload contracts."""

import pytest

from neuroloop_engine.contracts import (
    GAME_SESSION_COMPLETED,
    RECOVERY_ACTION_LOGGED,
    BaselineRequestedV1,
    OverrideRequestedV1,
    RecoveryActionLoggedV1,
    SessionCompletedV1,
    parse_payload,
)
from neuroloop_engine.errors import InvalidPayload


def _session_payload(**overrides) -> dict:
    payload = {
        "user_id": "user-1",
        "game_type": "S2-CT",
        "game_name": "argument-map",
        "completed_at": "2026-03-12T10:00:00Z",
        "score": 82,
        "base_xp": 30,
        "params": {
            "difficulty": "hard",
            "stimulus_ids": ["p2", "p1"],
            "distractor_set": ["d1"],
        },
    }
    payload.update(overrides)
    return payload


class TestRecoveryActionLoggedV1:
    def test_valid(self):
        action = parse_payload(
            RecoveryActionLoggedV1,
            {"user_id": " user-1 ", "detox_minutes": 45},
            job_type=RECOVERY_ACTION_LOGGED,
        )
        assert action.user_id == "user-1"
        assert action.walk_minutes == 0

    def test_requires_some_minutes(self):
        with pytest.raises(InvalidPayload, match="detox_minutes or walk_minutes"):
            parse_payload(RecoveryActionLoggedV1, {"user_id": "u"}, job_type=RECOVERY_ACTION_LOGGED)

    def test_negative_minutes_rejected(self):
        with pytest.raises(InvalidPayload, match="walk_minutes") as exc_info:
            parse_payload(
                RecoveryActionLoggedV1,
                {"user_id": "u", "walk_minutes": -5},
                job_type=RECOVERY_ACTION_LOGGED,
            )
        assert exc_info.value.code == "invalid_payload"
        assert exc_info.value.job_type == RECOVERY_ACTION_LOGGED

    def test_blank_user_rejected(self):
        with pytest.raises(InvalidPayload, match="user_id"):
            parse_payload(
                RecoveryActionLoggedV1,
                {"user_id": "  ", "detox_minutes": 10},
                job_type=RECOVERY_ACTION_LOGGED,
            )


class TestSessionCompletedV1:
    def test_params_to_domain(self):
        completed = SessionCompletedV1.model_validate(_session_payload())
        params = completed.params.to_domain()
        assert params.difficulty == "hard"
        assert params.stimulus_ids == ("p2", "p1")

    def test_needs_hash_or_params(self):
        with pytest.raises(InvalidPayload, match="combo_hash or params"):
            parse_payload(
                SessionCompletedV1,
                _session_payload(params=None),
                job_type=GAME_SESSION_COMPLETED,
            )

    def test_hash_alone_is_enough(self):
        completed = SessionCompletedV1.model_validate(
            _session_payload(params=None, combo_hash="h0123456789abcdef")
        )
        assert completed.combo_hash == "h0123456789abcdef"

    def test_unknown_game_type(self):
        with pytest.raises(InvalidPayload, match="game_type"):
            parse_payload(
                SessionCompletedV1,
                _session_payload(game_type="S3-XX"),
                job_type=GAME_SESSION_COMPLETED,
            )

    def test_score_bounds(self):
        with pytest.raises(InvalidPayload, match="score"):
            parse_payload(
                SessionCompletedV1,
                _session_payload(score=140),
                job_type=GAME_SESSION_COMPLETED,
            )


def test_baseline_answers_normalized():
    request = BaselineRequestedV1.model_validate(
        {"user_id": "u", "sleep_hours": " 7-8h ", "mental_state": "   "}
    )
    assert request.sleep_hours == "7-8h"
    assert request.mental_state is None


def test_override_request_literals():
    request = OverrideRequestedV1.model_validate({
        "user_id": "u",
        "task_id": "t-1",
        "task_type": "book",
        "reading_type": "BOOK",
        "demand": "HIGH",
    })
    assert request.demand == "HIGH"
    with pytest.raises(InvalidPayload):
        parse_payload(
            OverrideRequestedV1,
            {**request.model_dump(), "demand": "EXTREME"},
            job_type="content.override_requested",
        )
