"""
audit event sink.

persistence of the audit trail lives outside this service; we only hand
events over. emit_audit_event() is fire-and-forget: a failing sink is logged
and never breaks the ledger operation that emitted the event.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from loguru import logger

AuditSink = Callable[[Dict[str, Any]], None]


def _log_sink(event: Dict[str, Any]) -> None:
    logger.bind(audit=True).info(
        f"audit {event['action']} actor={event['actor_id']} metadata={event['metadata']}"
    )


_sink: AuditSink = _log_sink


def set_audit_sink(sink: Optional[AuditSink]) -> None:
    """install a sink (e.g. a queue publisher). None restores the log sink."""
    global _sink
    _sink = sink or _log_sink


def emit_audit_event(action: str, actor_id: Optional[int], metadata: Optional[Dict[str, Any]] = None) -> None:
    event = {
        "action": action,
        "actor_id": actor_id,
        "metadata": metadata or {},
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    try:
        _sink(event)
    except Exception:
        logger.exception(f"Audit sink failed for {action}")
