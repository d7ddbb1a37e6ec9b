"""In-memory counters for integration operations.

Counters live on an explicitly constructed ``SyncMetrics`` instance that is
handed to the services which update it; they reset on restart.
"""

import threading
from collections import Counter
from typing import Any

from app.services.errors import IntegrationError


class SyncMetrics:
    """Thread-safe counters with a snapshot read."""

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()

    def _add(self, *names: str, amount: int = 1) -> None:
        with self._lock:
            for name in names:
                self._counts[name] += amount

    def record_exchange(self, error: Exception | None = None) -> None:
        if error is not None:
            self._add("exchange_total", "exchange_failure")
        else:
            self._add("exchange_total", "exchange_success")

    def record_sync(self, duration_ms: int, error: Exception | None = None) -> None:
        with self._lock:
            self._counts["sync_total"] += 1
            self._counts["sync_duration_ms"] += max(0, int(duration_ms))
            self._counts["sync_failure" if error is not None else "sync_success"] += 1

    def record_refresh(self, error: Exception | None = None) -> None:
        if error is not None:
            self._add("refresh_total", "refresh_failure")
        else:
            self._add("refresh_total")

    def record_disconnect(self, error: Exception | None = None) -> None:
        if error is not None:
            self._add("disconnect_total", "disconnect_failure")
        else:
            self._add("disconnect_total")

    def record_whoop_api(self, error: Exception | None = None) -> None:
        if error is None:
            self._add("whoop_api_total")
            return
        kind = error.kind if isinstance(error, IntegrationError) else "error"
        self._add("whoop_api_total", "whoop_api_failure", f"whoop_api_failure_{kind}")

    def snapshot(self) -> dict[str, Any]:
        """Return a stable copy of all counters plus the average sync duration."""
        with self._lock:
            counts = dict(self._counts)

        total = counts.get("sync_total", 0)
        duration = counts.pop("sync_duration_ms", 0)
        snapshot: dict[str, Any] = {
            name: counts.get(name, 0)
            for name in (
                "exchange_total",
                "exchange_success",
                "exchange_failure",
                "sync_total",
                "sync_success",
                "sync_failure",
                "refresh_total",
                "refresh_failure",
                "disconnect_total",
                "disconnect_failure",
                "whoop_api_total",
                "whoop_api_failure",
            )
        }
        snapshot.update({k: v for k, v in counts.items() if k.startswith("whoop_api_failure_")})
        snapshot["sync_avg_ms"] = duration / total if total else 0.0
        return snapshot
