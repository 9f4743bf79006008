from __future__ import annotations
from dataclasses import dataclass, asdict, field
from hashlib import sha256
import hmac, json, threading, time
from pathlib import Path
from typing import Iterator, Optional

GENESIS = "0" * 64

@dataclass
class AuditEntryInput:
    user_id: str
    action_type: str
    action_category: str
    entity_type: str
    entity_id: str
    intent: str
    status: str = "completed"
    conversation_id: Optional[str] = None
    reasoning: Optional[str] = None
    confidence: Optional[float] = None
    input_summary: Optional[str] = None
    output_summary: Optional[str] = None

@dataclass
class AuditRecord:
    id: str  # entry hash
    ts: str
    data: dict = field(default_factory=dict)
    prev_hash: str = GENESIS
    sig: Optional[str] = None  # HMAC hex

class AuditSink:
    def log_agent_action(self, entry: AuditEntryInput) -> AuditRecord:  # pragma: no cover - interface
        raise NotImplementedError

class ChainAuditLog(AuditSink):
    """Append-only hash-chained JSONL audit log with optional HMAC signature."""
    def __init__(self, path: str | Path, *, secret: str = "") -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.secret = secret or ""
        self._lock = threading.Lock()

    def _last_hash(self) -> str:
        if not self.path.exists():
            return GENESIS
        last = None
        with self.path.open("r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    last = line
        if not last:
            return GENESIS
        return json.loads(last).get("hash", GENESIS)

    def _now(self) -> str:
        return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())

    def log_agent_action(self, entry: AuditEntryInput) -> AuditRecord:
        data = {k: v for k, v in asdict(entry).items() if v is not None}
        with self._lock:
            prev = self._last_hash()
            ts = self._now()
            base = json.dumps({"ts": ts, "data": data, "prev_hash": prev}, separators=(",", ":"), ensure_ascii=False)
            digest = sha256(base.encode("utf-8")).hexdigest()
            sig = None
            if self.secret:
                sig = hmac.new(self.secret.encode("utf-8"), digest.encode("utf-8"), sha256).hexdigest()
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps({"ts": ts, "data": data, "prev_hash": prev, "hash": digest, "sig": sig}, ensure_ascii=False) + "\n")
        return AuditRecord(id=digest, ts=ts, data=data, prev_hash=prev, sig=sig)

    def entries(self) -> Iterator[AuditRecord]:
        if not self.path.exists():
            return
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if line.strip():
                obj = json.loads(line)
                yield AuditRecord(id=obj["hash"], ts=obj["ts"], data=obj.get("data") or {}, prev_hash=obj["prev_hash"], sig=obj.get("sig"))

    def find(self, entry_id: str) -> Optional[AuditRecord]:
        return next((e for e in self.entries() if e.id == entry_id), None)

    @staticmethod
    def verify(path: str | Path, *, secret: str = "") -> bool:
        """Verify the chain and HMAC (if secret provided)."""
        prev = GENESIS
        for line in Path(path).read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError:
                return False
            base = json.dumps({"ts": obj.get("ts"), "data": obj.get("data"), "prev_hash": prev}, separators=(",", ":"), ensure_ascii=False)
            digest = sha256(base.encode("utf-8")).hexdigest()
            if digest != obj.get("hash"):
                return False
            if secret:
                sig = hmac.new(secret.encode("utf-8"), digest.encode("utf-8"), sha256).hexdigest()
                if sig != obj.get("sig"):
                    return False
            prev = digest
        return True
