import pytest

from neuroloop_engine.config import Config


def test_from_env_defaults(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/neuroloop")
    for name in (
        "NEUROLOOP_RECOVERY_DECAY",
        "NEUROLOOP_MAX_GENERATION_ATTEMPTS",
        "NEUROLOOP_DEFAULT_TIMEZONE",
        "NEUROLOOP_LOG_FORMAT",
    ):
        monkeypatch.delenv(name, raising=False)
    config = Config.from_env()
    assert config.recovery_decay == "night_weighted"
    assert config.max_generation_attempts == 10
    assert config.default_timezone == "UTC"
    assert config.log_format == "json"


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/neuroloop")
    monkeypatch.setenv("NEUROLOOP_RECOVERY_DECAY", " Linear ")
    monkeypatch.setenv("NEUROLOOP_MAX_GENERATION_ATTEMPTS", "4")
    monkeypatch.setenv("NEUROLOOP_BATCH_SIZE", "25")
    config = Config.from_env()
    assert config.recovery_decay == "linear"
    assert config.max_generation_attempts == 4
    assert config.batch_size == 25


def test_database_url_required(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError, match="DATABASE_URL"):
        Config.from_env()


def test_unknown_decay_rejected(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/neuroloop")
    monkeypatch.setenv("NEUROLOOP_RECOVERY_DECAY", "exponential")
    with pytest.raises(RuntimeError, match="NEUROLOOP_RECOVERY_DECAY"):
        Config.from_env()


def test_generation_attempts_must_be_positive(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/neuroloop")
    monkeypatch.delenv("NEUROLOOP_RECOVERY_DECAY", raising=False)
    monkeypatch.setenv("NEUROLOOP_MAX_GENERATION_ATTEMPTS", "0")
    with pytest.raises(RuntimeError, match="MAX_GENERATION_ATTEMPTS"):
        Config.from_env()


def test_log_format_validated(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/neuroloop")
    monkeypatch.delenv("NEUROLOOP_RECOVERY_DECAY", raising=False)
    monkeypatch.setenv("NEUROLOOP_LOG_FORMAT", " Text ")
    assert Config.from_env().log_format == "text"

    monkeypatch.setenv("NEUROLOOP_LOG_FORMAT", "xml")
    with pytest.raises(RuntimeError, match="NEUROLOOP_LOG_FORMAT"):
        Config.from_env()
