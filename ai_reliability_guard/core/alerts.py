"""
Alert notifications.

Fire-and-forget side channel for breaker and budget events. A failing handler
is logged and never breaks the call that raised the alert.
"""

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)

BREAKER_OPEN = "breaker_open"
BUDGET_SOFT_CAP = "budget_soft_cap"
BUDGET_HARD_CAP = "budget_hard_cap"
BUDGET_WARNING = "budget_warning"

ALERT_EVENTS = (BREAKER_OPEN, BUDGET_SOFT_CAP, BUDGET_HARD_CAP, BUDGET_WARNING)

RECENT_ALERTS_LIMIT = 50

AlertHandler = Callable[[str, Dict[str, Any]], None]


@dataclass(frozen=True)
class Alert:
    """A delivered alert."""
    event: str
    payload: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class AlertManager:
    """Routes alerts to an optional handler and keeps the recent ones."""

    def __init__(self, handler: Optional[AlertHandler] = None, limit: int = RECENT_ALERTS_LIMIT):
        self.handler = handler
        self._recent: Deque[Alert] = deque(maxlen=limit)
        self._lock = threading.Lock()

    def notify(self, event: str, payload: Dict[str, Any]) -> Alert:
        """Deliver an alert.

        Args:
            event: One of ALERT_EVENTS
            payload: Event details (agent, model, tenant, limits...)

        Returns:
            The recorded alert
        """
        if event not in ALERT_EVENTS:
            raise ValueError(f"Unknown alert event: {event}")

        alert = Alert(event=event, payload=dict(payload))
        with self._lock:
            self._recent.append(alert)

        logger.warning("alert_emitted", alert_event=event, **alert.payload)

        if self.handler is not None:
            try:
                self.handler(event, alert.payload)
            except Exception as e:
                logger.error(
                    "alert_handler_failed",
                    alert_event=event,
                    error_class=type(e).__name__,
                    error_message=str(e)
                )
        return alert

    def recent(self, event: Optional[str] = None) -> List[Alert]:
        """Recent alerts, oldest first, optionally filtered by event."""
        with self._lock:
            alerts = list(self._recent)
        if event is None:
            return alerts
        return [a for a in alerts if a.event == event]
