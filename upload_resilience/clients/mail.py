"""Mail delivery boundary used by the notification dispatcher."""

from dataclasses import dataclass, field
from typing import Any, Dict, Protocol, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class MailMessage:
    to: str
    subject: str
    body: str
    notification_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class MailSender(Protocol):
    """Delivers one rendered message; raises on delivery failure."""

    async def send(self, message: MailMessage) -> None: ...


class LoggingMailSender:
    """Default sender: writes the rendered message to the log."""

    async def send(self, message: MailMessage) -> None:
        logger.info(
            "Mail message sent",
            to=message.to,
            subject=message.subject,
            notification_type=message.notification_type,
            body=message.body,
        )
