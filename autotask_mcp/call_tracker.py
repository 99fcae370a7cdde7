"""Per-tool-call accounting of upstream API calls and cache hits."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ApiCallRecord:
    timestamp: float
    entity: str
    operation: str
    source: str  # "api" or "cache"
    duration_ms: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)


class NullCallTracker:
    """No-op tracker used when a caller does not care about accounting."""

    def record_api_call(
        self,
        entity: str,
        operation: str,
        duration_ms: float,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        return None

    def record_cache_hit(
        self,
        entity: str,
        operation: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        return None


NULL_TRACKER = NullCallTracker()


class ApiCallTracker(NullCallTracker):
    """Collects every upstream call and cache hit made while serving one tool call"""

    def __init__(self, tool_name: str, tool_call_id: str):
        self.tool_name = tool_name
        self.tool_call_id = tool_call_id
        self.calls: List[ApiCallRecord] = []

    def record_api_call(self, entity, operation, duration_ms, details=None):
        record = ApiCallRecord(
            timestamp=time.time(),
            entity=entity,
            operation=operation,
            source="api",
            duration_ms=duration_ms,
            details=details or {},
        )
        self.calls.append(record)
        logger.debug(f"[{self.tool_call_id}] API call: {entity}.{operation} ({duration_ms:.0f}ms)")

    def record_cache_hit(self, entity, operation, details=None):
        record = ApiCallRecord(
            timestamp=time.time(),
            entity=entity,
            operation=operation,
            source="cache",
            details=details or {},
        )
        self.calls.append(record)
        logger.debug(f"[{self.tool_call_id}] Cache hit: {entity}.{operation}")

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def get_summary(self) -> Dict[str, Any]:
        api_calls = [c for c in self.calls if c.source == "api"]
        cache_hits = [c for c in self.calls if c.source == "cache"]
        return {
            "total_calls": len(self.calls),
            "api_calls": len(api_calls),
            "cache_hits": len(cache_hits),
            "total_duration_ms": sum(c.duration_ms or 0 for c in api_calls),
            "calls": list(self.calls),
        }

    def log_summary(self) -> None:
        summary = self.get_summary()
        if summary["total_calls"]:
            hit_rate = f"{summary['cache_hits'] / summary['total_calls'] * 100:.1f}%"
        else:
            hit_rate = "N/A"
        logger.info(
            f"API call summary for {self.tool_name} [{self.tool_call_id}]: "
            f"total={summary['total_calls']} api={summary['api_calls']} "
            f"cache={summary['cache_hits']} duration={summary['total_duration_ms']:.0f}ms "
            f"hit_rate={hit_rate}"
        )
