from datetime import timedelta
import pytest
from agentgate.config import default_settings, load_settings
from conftest import ROOT

CONFIG = str(ROOT / "config")

def test_standard_defaults():
    s = load_settings(config=CONFIG, profile="standard")
    assert s.general.profile == "standard"
    assert s.store.db_path == "data/approvals.db"
    assert s.sweeper.interval_seconds == 60
    assert s.sweeper.cancel_affected_plans is False
    assert s.expiration_table() == {
        "low": timedelta(hours=24),
        "medium": timedelta(hours=12),
        "high": timedelta(hours=4),
        "critical": timedelta(hours=1),
    }
    assert "apikey" in s.approvals.sensitive_keys

def test_strict_shortens_expiry():
    s = load_settings(config=CONFIG, profile="strict")
    assert s.expiration_table()["critical"] == timedelta(minutes=30)
    assert s.approvals.urgent_minutes == 15
    assert s.sweeper.cancel_affected_plans is True
    # untouched keys come from defaults.toml
    assert s.sweeper.batch_size == 100

def test_relaxed_profile():
    s = load_settings(config=CONFIG, profile="relaxed")
    assert s.approvals.low_hours == 72
    assert s.general.log_level == "WARNING"

def test_unknown_profile_rejected():
    with pytest.raises(ValueError):
        load_settings(config=CONFIG, profile="yolo")

def test_overrides_apply_and_none_is_ignored(tmp_path):
    s = load_settings(config=CONFIG, profile="standard",
                      overrides={"db_path": str(tmp_path / "x.db"), "log_dir": None})
    assert s.store.db_path == str(tmp_path / "x.db")
    assert s.general.log_dir == "data/logs"

def test_env_secret_wins(monkeypatch):
    monkeypatch.setenv("AGENTGATE_AUDIT_SECRET", "s3cret")
    s = load_settings(config=CONFIG, profile="standard")
    assert s.audit.chain_secret == "s3cret"

def test_missing_config_dir_falls_back_to_dataclass_defaults(tmp_path):
    s = load_settings(config=str(tmp_path / "nowhere"), profile="strict")
    assert s.general.profile == "strict"
    assert s.approvals.critical_hours == default_settings().approvals.critical_hours
