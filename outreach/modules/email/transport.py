"""
Transport interface used by the lifecycle manager and the recovery scheduler.
"""

import re
from dataclasses import dataclass
from typing import Optional

from .email_service import SendResult

VARIABLE_PATTERN = re.compile(r'\{\{\s*(\w+)\s*\}\}')


def substitute(text, values):
    """Replace {{name}} placeholders; unknown names are left untouched."""
    if not text:
        return text
    return VARIABLE_PATTERN.sub(lambda m: str(values.get(m.group(1), m.group(0))), text)


@dataclass(frozen=True)
class OutboundMessage:
    subject: str
    html_body: str
    text_body: Optional[str] = None
    sender_name: Optional[str] = None
    sender_email: Optional[str] = None
    reply_to: Optional[str] = None


class Transport:
    """
    Hands one message to one address.

    Returns a SendResult for accepted or rejected messages. Raises for
    transient failures (timeouts, connection errors) so callers can retry.
    """

    def send(self, address: str, message: OutboundMessage, timeout: float) -> SendResult:
        raise NotImplementedError


class EmailTransport(Transport):

    def __init__(self, service):
        self.service = service

    def send(self, address, message, timeout):
        return self.service.send_message(
            address, message.subject, message.html_body, message.text_body,
            sender_name=message.sender_name, sender_email=message.sender_email,
            reply_to=message.reply_to, timeout=timeout,
        )
