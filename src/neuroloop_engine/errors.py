"""Engine error types.

Pure computations never raise for missing inputs; these are raised at the
persistence boundary and when job payloads fail validation.
"""

from __future__ import annotations

from typing import Literal

DataClass = Literal[
    "recovery",
    "reasoning_quality",
    "cognitive_states",
    "caps",
    "combo_history",
    "overrides",
]

FAIL_OPEN_DATA_CLASSES: frozenset[str] = frozenset({"caps", "combo_history", "overrides"})
FAIL_CLOSED_DATA_CLASSES: frozenset[str] = frozenset(
    {"recovery", "reasoning_quality", "cognitive_states"}
)


class EngineError(Exception):
    def __init__(self, *, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class StoreUnavailable(EngineError):
    """A fail-closed read could not reach the backing store."""

    def __init__(self, data_class: DataClass, message: str) -> None:
        super().__init__(code="store_unavailable", message=message)
        self.data_class = data_class


class InvalidPayload(EngineError):
    def __init__(self, message: str, *, job_type: str | None = None) -> None:
        super().__init__(code="invalid_payload", message=message)
        self.job_type = job_type
