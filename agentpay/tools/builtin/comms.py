"""Built-in communication tools: email."""

import asyncio
import logging
import re
import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from agentpay.tools.registry import Tool
from agentpay.types import (
    ExecutionContext, ParameterType, ToolCategory, ToolDefinition, ToolParameter, utcnow,
)

if TYPE_CHECKING:
    from agentpay.db.repository import Mailer

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class EmailMessage(BaseModel):
    message_id: str
    to: str
    subject: str
    body: str
    html: bool = False
    cc: list[str] = Field(default_factory=list)
    bcc: list[str] = Field(default_factory=list)
    execution_id: Optional[str] = None
    queued_at: datetime = Field(default_factory=utcnow)


class LoggingMailer:
    """Default mailer: records the message in the log and delivers nothing."""

    async def send(self, message: EmailMessage) -> None:
        logger.info(
            "[send_email] Would deliver %s to %s: %s",
            message.message_id, message.to, message.subject,
        )


def validate_send_email(params: dict) -> list[str]:
    errors = []
    if not _EMAIL_RE.match(params.get("to") or ""):
        errors.append("Parameter 'to' is not a valid email address")
    for field in ("cc", "bcc"):
        for addr in params.get(field) or []:
            if not isinstance(addr, str) or not _EMAIL_RE.match(addr):
                errors.append(f"Parameter '{field}' contains an invalid address: {addr!r}")
    return errors


def make_send_email_tool(mailer: Optional["Mailer"] = None) -> Tool:
    """Build the ``send_email`` tool around a mailer collaborator.

    Delivery is fire-and-forget: the tool queues the message on a background
    task and returns immediately with status ``queued``.  Delivery failures
    are logged, never reported back to the step.
    """
    mailer = mailer or LoggingMailer()
    pending: set[asyncio.Task] = set()

    def _on_done(task: asyncio.Task) -> None:
        pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[send_email] Delivery failed: %s", exc)

    async def send_email(params: dict, context: ExecutionContext) -> dict:
        """Queue an email for delivery."""
        message = EmailMessage(
            message_id=f"msg_{secrets.token_hex(8)}",
            to=params["to"],
            subject=params["subject"],
            body=params["body"],
            html=bool(params.get("html")),
            cc=list(params.get("cc") or []),
            bcc=list(params.get("bcc") or []),
            execution_id=context.execution_id,
        )
        logger.info(
            "[send_email] Queueing %s to %s (execution %s)",
            message.message_id, message.to, context.execution_id,
        )
        task = asyncio.create_task(mailer.send(message))
        pending.add(task)
        task.add_done_callback(_on_done)
        return {
            "message_id": message.message_id,
            "status": "queued",
            "to": message.to,
            "subject": message.subject,
            "queued_at": message.queued_at.isoformat(),
        }

    definition = ToolDefinition(
        name="send_email",
        description="Send emails using the configured mailer",
        category=ToolCategory.COMMUNICATION,
        required_permissions=["send_email"],
        parameters=[
            ToolParameter(name="to", type=ParameterType.STRING, required=True,
                          description="Recipient email address"),
            ToolParameter(name="subject", type=ParameterType.STRING, required=True,
                          description="Email subject"),
            ToolParameter(name="body", type=ParameterType.STRING, required=True,
                          description="Email body content"),
            ToolParameter(name="html", type=ParameterType.BOOLEAN, default=False,
                          description="Whether body is HTML"),
            ToolParameter(name="cc", type=ParameterType.ARRAY, default=[],
                          description="CC email addresses"),
            ToolParameter(name="bcc", type=ParameterType.ARRAY, default=[],
                          description="BCC email addresses"),
        ],
    )
    return Tool(definition=definition, execute=send_email, validate=validate_send_email)
