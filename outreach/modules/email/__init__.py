"""
Email Module
============

Provides email sending through Resend, Amazon SES, SMTP or an HTTP relay,
wrapped in the Transport interface the engine dispatches through.
"""

from .email_service import EmailService, SendResult, email_service, is_valid_email
from .transport import EmailTransport, OutboundMessage, Transport, substitute

__all__ = [
    'EmailService', 'SendResult', 'email_service', 'is_valid_email',
    'EmailTransport', 'OutboundMessage', 'Transport', 'substitute',
]
