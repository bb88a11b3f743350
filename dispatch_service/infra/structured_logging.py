"""
Structured logging for order workflow events.

Every claim, transition and ledger posting can be emitted as a compact
JSON line so operators can grep one order's history across workers.
"""
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from dispatch_service.config import settings

__all__ = [
    "WorkflowEvent",
    "WorkflowLogEntry",
    "WorkflowLogger",
    "configure_logging",
    "log_workflow_event",
    "utcnow_iso",
]

UTC = timezone.utc


class WorkflowEvent(str, Enum):
    """Types of workflow events."""
    ORDER_CREATED = "order_created"
    CLAIMED = "claimed"
    CLAIM_REJECTED = "claim_rejected"
    CLAIM_CONFLICT = "claim_conflict"
    TRANSITION = "transition"
    TRANSITION_REJECTED = "transition_rejected"
    COMMISSION_POSTED = "commission_posted"
    COMMISSION_PAID = "commission_paid"
    BALANCE_BLOCKED = "balance_blocked"
    BALANCE_UNBLOCKED = "balance_unblocked"
    PAYOUT_REQUESTED = "payout_requested"
    PAYOUT_PROCESSED = "payout_processed"
    EXPIRED = "expired"
    QUEUE_FALLBACK = "queue_fallback"
    ERROR = "error"


def utcnow_iso() -> str:
    """Return current UTC timestamp in ISO 8601 format with Z suffix."""
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


@dataclass
class WorkflowLogEntry:
    """Structured log entry for workflow events."""
    timestamp: str
    event: str
    order_id: Optional[int] = None
    master_id: Optional[int] = None
    actor_id: Optional[int] = None
    actor_role: Optional[str] = None
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    reason: Optional[str] = None
    amount: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        data = {k: v for k, v in asdict(self).items() if v is not None and v != {}}
        return json.dumps(
            data, ensure_ascii=False, separators=(",", ":"), default=_json_default
        )


class WorkflowLogger:
    """Logger for workflow events with structured JSON output."""

    def __init__(self, logger_name: str = "workflow.structured"):
        self.logger = logging.getLogger(logger_name)

    def log_event(
        self,
        event: WorkflowEvent,
        *,
        order_id: Optional[int] = None,
        master_id: Optional[int] = None,
        actor_id: Optional[int] = None,
        actor_role: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        reason: Optional[str] = None,
        amount: Decimal | None = None,
        details: Optional[dict[str, Any]] = None,
        level: str = "INFO",
    ) -> None:
        entry = WorkflowLogEntry(
            timestamp=utcnow_iso(),
            event=event.value,
            order_id=order_id,
            master_id=master_id,
            actor_id=actor_id,
            actor_role=actor_role,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            amount=str(amount) if amount is not None else None,
            details=details or {},
        )
        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method(entry.to_json())


_workflow_logger = WorkflowLogger()


def log_workflow_event(event: WorkflowEvent, **kwargs: Any) -> None:
    """Log a workflow event through the module-level logger."""
    _workflow_logger.log_event(event, **kwargs)


def configure_logging(level: str | None = None, *, json_format: bool | None = None) -> None:
    """Configure root logging from settings."""
    use_json = settings.log_json if json_format is None else json_format
    fmt = (
        "%(message)s"
        if use_json
        else "%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    logging.basicConfig(level=(level or settings.log_level).upper(), format=fmt)
