"""
In-memory generation status records, queryable by the UI after a reconnect
"""

import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

FINAL_TTL_SECONDS = 15 * 60
PENDING_TTL_SECONDS = 30 * 60


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class GenerationTracker:
    """Latest generation record per node. Expired records are dropped on access."""

    def __init__(
        self,
        final_ttl: float = FINAL_TTL_SECONDS,
        pending_ttl: float = PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.final_ttl = final_ttl
        self.pending_ttl = pending_ttl
        self.clock = clock
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _purge(self):
        now = self.clock()
        expired = []
        for node_id, record in self._records.items():
            ttl = self.pending_ttl if record["status"] == "pending" else self.final_ttl
            if now - record["_updated"] > ttl:
                expired.append(node_id)
        for node_id in expired:
            del self._records[node_id]

    def _write(self, node_id: str, fields: Dict[str, Any], reset: bool = False) -> Dict[str, Any]:
        with self._lock:
            self._purge()
            now = self.clock()
            record = None if reset else self._records.get(node_id)
            if record is None:
                record = {"node_id": node_id, "status": "pending", "phase": "queued", "_started": now}
            record.update({k: v for k, v in fields.items() if v is not None})
            record["_updated"] = now
            if record["status"] != "pending":
                record.setdefault("_completed", now)
            self._records[node_id] = record
            return self._snapshot(record)

    def start(self, node_id: str, **fields: Any) -> Dict[str, Any]:
        fields.setdefault("status", "pending")
        fields.setdefault("phase", "queued")
        fields.setdefault("label", "Queued")
        return self._write(node_id, fields, reset=True)

    def update(self, node_id: str, **fields: Any) -> Dict[str, Any]:
        return self._write(node_id, fields)

    def complete(self, node_id: str, **fields: Any) -> Dict[str, Any]:
        fields.update(status="success", phase="complete")
        fields.setdefault("label", "Complete")
        return self._write(node_id, fields)

    def fail(self, node_id: str, **fields: Any) -> Dict[str, Any]:
        fields.setdefault("status", "error")
        fields.setdefault("phase", "failed")
        fields.setdefault("label", "Failed")
        return self._write(node_id, fields)

    def cancel(self, node_id: str, **fields: Any) -> Dict[str, Any]:
        fields.update(status="cancelled", phase="cancelled")
        fields.setdefault("label", "Cancelled")
        return self._write(node_id, fields)

    def get(self, node_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._purge()
            record = self._records.get(node_id)
            return self._snapshot(record) if record else None

    @staticmethod
    def _snapshot(record: Dict[str, Any]) -> Dict[str, Any]:
        public = {k: v for k, v in record.items() if not k.startswith("_")}
        public["started_at"] = _iso(record["_started"])
        public["updated_at"] = _iso(record["_updated"])
        public["completed_at"] = _iso(record.get("_completed"))
        public.setdefault("label", "")
        public.setdefault("detail", "")
        return public
