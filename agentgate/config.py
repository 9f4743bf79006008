from __future__ import annotations
from dataclasses import dataclass, field, fields
from datetime import timedelta
from pathlib import Path
import tomllib, os

PROFILES = ["standard", "strict", "relaxed"]

@dataclass
class General:
    profile: str = "standard"
    log_dir: str = "data/logs"
    log_level: str = "INFO"

@dataclass
class Approvals:
    # Default lifetime of a pending approval, per risk level
    low_hours: float = 24
    medium_hours: float = 12
    high_hours: float = 4
    critical_hours: float = 1
    urgent_minutes: int = 30
    warning_minutes: int = 30
    sensitive_keys: list[str] = field(default_factory=lambda: ["password", "token", "secret", "key", "apikey"])

@dataclass
class Sweeper:
    interval_seconds: float = 60.0
    batch_size: int = 100
    batch_delay_seconds: float = 0.1
    cancel_affected_plans: bool = False

@dataclass
class Store:
    db_path: str = "data/approvals.db"

@dataclass
class Audit:
    chain_path: str = "data/audit/chain.jsonl"
    chain_secret: str = ""

@dataclass
class Settings:
    general: General
    approvals: Approvals
    sweeper: Sweeper
    store: Store
    audit: Audit

    def expiration_table(self) -> dict[str, timedelta]:
        a = self.approvals
        return {
            "low": timedelta(hours=a.low_hours),
            "medium": timedelta(hours=a.medium_hours),
            "high": timedelta(hours=a.high_hours),
            "critical": timedelta(hours=a.critical_hours),
        }

def default_settings() -> Settings:
    return Settings(general=General(), approvals=Approvals(), sweeper=Sweeper(), store=Store(), audit=Audit())

def _load_toml_if_exists(path: Path) -> dict:
    if path.exists():
        with path.open("rb") as f:
            return tomllib.load(f)
    return {}

def _read_profile_toml(config_path: Path, profile: str) -> dict:
    """
    Looks in:
      - config/defaults.toml and config/<profile>.toml
      - then falls back to config/profiles/defaults.toml and config/profiles/<profile>.toml
    """
    cfg_dir = config_path if config_path.is_dir() else config_path.parent

    data = _load_toml_if_exists(cfg_dir / "defaults.toml")
    if not data:
        data = _load_toml_if_exists(cfg_dir / "profiles" / "defaults.toml")

    prof = _load_toml_if_exists(cfg_dir / f"{profile}.toml")
    if not prof:
        prof = _load_toml_if_exists(cfg_dir / "profiles" / f"{profile}.toml")

    # Shallow merge defaults <- profile
    base = data or {}
    for k, v in prof.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            base[k].update(v)
        else:
            base[k] = v
    return base

def _filter_for_dataclass(cls, data: dict) -> dict:
    """Keep only the keys the dataclass knows about."""
    allowed = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in allowed}

def load_settings(config: str | None, profile: str, overrides: dict | None = None) -> Settings:
    if profile not in PROFILES:
        raise ValueError(f"Unknown profile: {profile!r} (expected one of {PROFILES})")
    config_path = Path(config) if config else Path("config")
    raw = _read_profile_toml(config_path, profile)

    # Audit HMAC secret: environment wins
    if "audit" not in raw:
        raw["audit"] = {}
    env_secret = os.environ.get("AGENTGATE_AUDIT_SECRET")
    if env_secret:
        raw["audit"]["chain_secret"] = env_secret

    g = General(**_filter_for_dataclass(General, raw.get("general")))
    g.profile = profile
    a = Approvals(**_filter_for_dataclass(Approvals, raw.get("approvals")))
    sw = Sweeper(**_filter_for_dataclass(Sweeper, raw.get("sweeper")))
    st = Store(**_filter_for_dataclass(Store, raw.get("store")))
    au = Audit(**_filter_for_dataclass(Audit, raw.get("audit")))

    # Overrides (only on General and Store for now)
    if overrides:
        for k, v in overrides.items():
            if v is None:
                continue
            if hasattr(g, k):
                setattr(g, k, v)
            elif hasattr(st, k):
                setattr(st, k, v)

    return Settings(general=g, approvals=a, sweeper=sw, store=st, audit=au)
