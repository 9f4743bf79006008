from __future__ import annotations
import logging
from datetime import datetime, timezone
from pathlib import Path
from ..config import Settings

LOG_FILE = "agentgate.log"
_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

def _log_path(settings: Settings) -> Path:
    log_dir = Path(settings.general.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / LOG_FILE

def setup_logging(settings: Settings) -> Path:
    """Route the ``agentgate`` logger tree to <log_dir>/agentgate.log (idempotent)."""
    path = _log_path(settings)
    root = logging.getLogger("agentgate")
    root.setLevel(getattr(logging, str(settings.general.log_level).upper(), logging.INFO))
    for h in root.handlers:
        if isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve():
            return path
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    return path

def log_event(settings: Settings, message: str) -> Path:
    path = _log_path(settings)
    ts = datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    with path.open("a", encoding="utf-8") as f:
        f.write(f"{ts} | EVENT | agentgate.cli | {message}\n")
    return path
