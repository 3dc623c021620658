"""Job payload contracts.

Every background job payload is validated against one of these models before
the handler touches the store. Validation failures surface as
``InvalidPayload`` carrying the first pydantic error.
"""

from datetime import datetime
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .anti_repetition import ComboParams
from .errors import InvalidPayload

RECOVERY_ACTION_LOGGED = "recovery.action_logged"
RECOVERY_BASELINE_REQUESTED = "recovery.baseline_requested"
GAME_SESSION_COMPLETED = "game.session_completed"
CONTENT_OVERRIDE_REQUESTED = "content.override_requested"


def _normalized_non_empty(value: str, *, field_name: str) -> str:
    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{field_name} must not be empty")
    return normalized


class _UserScoped(BaseModel):
    user_id: str

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, value: str) -> str:
        return _normalized_non_empty(value, field_name="user_id")


class RecoveryActionLoggedV1(_UserScoped):
    detox_minutes: float = Field(default=0, ge=0, le=24 * 60)
    walk_minutes: float = Field(default=0, ge=0, le=24 * 60)
    occurred_at: datetime | None = None

    @model_validator(mode="after")
    def validate_has_minutes(self) -> "RecoveryActionLoggedV1":
        if self.detox_minutes == 0 and self.walk_minutes == 0:
            raise ValueError("detox_minutes or walk_minutes must be > 0")
        return self


class BaselineRequestedV1(_UserScoped):
    sleep_hours: str | None = None
    detox_hours: str | None = None
    mental_state: str | None = None
    rri_value: float | None = Field(default=None, ge=0, le=100)
    requested_at: datetime | None = None

    @field_validator("sleep_hours", "detox_hours", "mental_state")
    @classmethod
    def normalize_answer(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None


class ComboParamsV1(BaseModel):
    difficulty: str
    stimulus_ids: list[str] = Field(default_factory=list)
    distractor_set: list[str] | None = None
    temporal_params: dict[str, float] | None = None
    rule_params: dict[str, Any] | None = None

    def to_domain(self) -> ComboParams:
        return ComboParams.from_dict(self.model_dump())


class S2SessionMetricsV1(BaseModel):
    accuracy: float = Field(ge=0, le=100)
    timing_consistency: float = Field(ge=0, le=100)
    coherence: float = Field(ge=0, le=100)


class SessionCompletedV1(_UserScoped):
    game_type: Literal["S1-AE", "S1-RA", "S2-CT", "S2-IN"]
    game_name: str
    completed_at: datetime | None = None
    score: float | None = Field(default=None, ge=0, le=100)
    base_xp: int = Field(default=0, ge=0)
    combo_hash: str | None = None
    difficulty: str | None = None
    params: ComboParamsV1 | None = None
    fallback_used: bool = False
    duplicates_rejected: int = Field(default=0, ge=0)
    s2_metrics: S2SessionMetricsV1 | None = None

    @field_validator("game_name")
    @classmethod
    def validate_game_name(cls, value: str) -> str:
        return _normalized_non_empty(value, field_name="game_name")

    @model_validator(mode="after")
    def validate_combo(self) -> "SessionCompletedV1":
        if self.combo_hash is None and self.params is None:
            raise ValueError("combo_hash or params is required")
        return self


class OverrideRequestedV1(_UserScoped):
    task_id: str
    task_type: Literal["podcast", "reading", "book"]
    reading_type: Literal["RECOVERY_SAFE", "NON_FICTION", "BOOK"]
    demand: Literal["LOW", "MEDIUM", "HIGH", "VERY_HIGH"]
    requested_at: datetime | None = None

    @field_validator("task_id")
    @classmethod
    def validate_task_id(cls, value: str) -> str:
        return _normalized_non_empty(value, field_name="task_id")


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_payload(model: type[ModelT], payload: dict[str, Any], *, job_type: str) -> ModelT:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "payload validation failed")
        if location:
            message = f"{location}: {message}"
        raise InvalidPayload(message, job_type=job_type) from exc
