"""
Notifications

Delivery of user-facing job outcomes. Delivery channels (email, chat) are
external; the provisioner only depends on the Notifier protocol.
"""
from typing import Any, Dict, List, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(self, user_id: str, job_id: str, event: str, message: str, details: Dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: writes every notification to the structured log."""

    async def notify(self, user_id: str, job_id: str, event: str, message: str, details: Dict[str, Any]) -> None:
        logger.info("user_notification", user_id=user_id, job_id=job_id, notification=event,
                    message=message, **details)


class RecordingNotifier:
    """Keeps notifications in memory (tests, local runs)."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def notify(self, user_id: str, job_id: str, event: str, message: str, details: Dict[str, Any]) -> None:
        self.sent.append({
            "user_id": user_id,
            "job_id": job_id,
            "event": event,
            "message": message,
            "details": dict(details),
        })

    def events(self, job_id: str) -> List[str]:
        return [n["event"] for n in self.sent if n["job_id"] == job_id]
