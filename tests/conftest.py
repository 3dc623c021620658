import pytest

from neuroloop_engine import service
from neuroloop_engine.metrics import reset_metrics


@pytest.fixture(autouse=True)
def _reset_engine_state():
    """Zero counters and restore service defaults around every test."""
    reset_metrics()
    snapshot = dict(service._defaults)
    yield
    service._defaults.clear()
    service._defaults.update(snapshot)
    reset_metrics()
