"""
Email Service Module
====================

Configurable email service supporting Resend, Amazon SES, SMTP (e.g. Gmail)
and a generic HTTP relay. Provider is selected via EMAIL_PROVIDER config
('resend', 'ses', 'smtp' or 'http').

Every provider sends one message per call and reports the outcome as a
SendResult. Rejections are returned; network failures and timeouts raise so
the caller's retry budget can apply.
"""

import logging
import re
import smtplib
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Optional

import requests

# Rejects consecutive dots, leading/trailing dots in local part
_VALID_EMAIL = re.compile(r'^[a-zA-Z0-9_%+-]+(\.[a-zA-Z0-9_%+-]+)*@[a-zA-Z0-9-]+(\.[a-zA-Z0-9-]+)*\.[a-zA-Z]{2,}$')

logger = logging.getLogger(__name__)

# Try to import resend - it's optional
try:
    import resend
    RESEND_AVAILABLE = True
except ImportError:
    RESEND_AVAILABLE = False
    logger.info("resend package not installed.")

# Try to import boto3 for SES - it's optional
try:
    import boto3
    from botocore.exceptions import ClientError
    BOTO3_AVAILABLE = True
except ImportError:
    BOTO3_AVAILABLE = False
    logger.info("boto3 package not installed.")


def is_valid_email(address):
    return bool(address) and bool(_VALID_EMAIL.match(address))


@dataclass(frozen=True)
class SendResult:
    accepted: bool
    message_id: Optional[str] = None
    reason: Optional[str] = None


class EmailService:
    """
    Configuration (set in Flask app.config):
        EMAIL_PROVIDER: 'resend' (default), 'ses', 'smtp' or 'http'
        RESEND_API_KEY: Your Resend API key (required if provider is 'resend')
        AWS_REGION: AWS region for SES (default: 'eu-west-1')
        EMAIL_HOST / EMAIL_PORT / EMAIL_PASSWORD: SMTP settings
        EMAIL_HTTP_ENDPOINT / EMAIL_HTTP_TOKEN: HTTP relay settings
        EMAIL_ADDRESS: Default sender address
    """

    def __init__(self, app=None):
        self.provider = 'resend'
        self.api_key = None
        self.ses_client = None
        self.sender_email = None
        self.smtp_host = None
        self.smtp_port = 587
        self.smtp_password = None
        self.http_endpoint = None
        self.http_token = None

        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        """Initialize email service with Flask app configuration"""
        self.provider = (app.config.get('EMAIL_PROVIDER') or 'resend').lower()
        self.sender_email = app.config.get('EMAIL_ADDRESS', 'onboarding@resend.dev')
        logger.info(f"Initializing email service (provider: {self.provider}, sender: {self.sender_email})")

        if self.provider == 'ses':
            self._init_ses(app)
        elif self.provider == 'smtp':
            self._init_smtp(app)
        elif self.provider == 'http':
            self._init_http(app)
        else:
            self._init_resend(app)

    def _init_resend(self, app):
        self.api_key = app.config.get('RESEND_API_KEY')

        if not self.api_key:
            logger.warning("RESEND_API_KEY not configured - email sending disabled")
            return

        if not RESEND_AVAILABLE:
            logger.error("resend package not installed")
            return

        resend.api_key = self.api_key
        logger.info("Resend API client initialized successfully")

    def _init_ses(self, app):
        if not BOTO3_AVAILABLE:
            logger.error("boto3 package not installed - SES email sending disabled")
            return

        aws_region = app.config.get('AWS_REGION', 'eu-west-1')
        self.ses_client = boto3.client('ses', region_name=aws_region)
        logger.info(f"SES client initialized successfully (region: {aws_region})")

    def _init_smtp(self, app):
        self.smtp_host = app.config.get('EMAIL_HOST', 'smtp.gmail.com')
        self.smtp_port = int(app.config.get('EMAIL_PORT', 587))
        self.smtp_password = app.config.get('EMAIL_PASSWORD')

        if not self.smtp_password:
            logger.warning("EMAIL_PASSWORD not configured - SMTP email sending disabled")
            return

        logger.info(f"SMTP configured: {self.smtp_host}:{self.smtp_port}")

    def _init_http(self, app):
        self.http_endpoint = app.config.get('EMAIL_HTTP_ENDPOINT')
        self.http_token = app.config.get('EMAIL_HTTP_TOKEN')
        if not self.http_endpoint:
            logger.warning("EMAIL_HTTP_ENDPOINT not configured - email sending disabled")
            return
        logger.info(f"HTTP relay configured: {self.http_endpoint}")

    def send_message(self, recipient: str, subject: str, html_body: str,
                     text_body: Optional[str] = None, sender_name: Optional[str] = None,
                     sender_email: Optional[str] = None, reply_to: Optional[str] = None,
                     timeout: float = 15.0) -> SendResult:
        """
        Send a single email via the configured provider.

        Returns:
            SendResult: accepted flag, provider message id or rejection reason
        """
        if not is_valid_email(recipient):
            return SendResult(False, reason=f"Invalid email address: {recipient}")

        sender = sender_email or self.sender_email
        if not sender:
            return SendResult(False, reason='Sender email not configured')
        from_header = formataddr((sender_name, sender)) if sender_name else sender

        logger.debug(f"Sending email from: {from_header} to: {recipient} ({subject})")
        if self.provider == 'ses':
            return self._send_via_ses(from_header, recipient, subject, html_body, text_body, reply_to)
        if self.provider == 'smtp':
            return self._send_via_smtp(from_header, sender, recipient, subject, html_body, text_body,
                                       reply_to, timeout)
        if self.provider == 'http':
            return self._send_via_http(from_header, recipient, subject, html_body, text_body, reply_to, timeout)
        return self._send_via_resend(from_header, recipient, subject, html_body, text_body, reply_to)

    def _send_via_resend(self, from_header, recipient, subject, html_body, text_body, reply_to):
        if not RESEND_AVAILABLE:
            return SendResult(False, reason='resend package not installed')
        if not self.api_key:
            return SendResult(False, reason='Resend API key not configured')

        email_params = {"from": from_header, "to": recipient, "subject": subject, "html": html_body}
        if text_body:
            email_params["text"] = text_body
        if reply_to:
            email_params["reply_to"] = reply_to

        r = resend.Emails.send(email_params)
        if r and r.get('id'):
            return SendResult(True, message_id=r['id'])
        logger.error(f"Resend error for {recipient}: {r}")
        return SendResult(False, reason=f"Resend rejected message: {r}")

    def _send_via_ses(self, from_header, recipient, subject, html_body, text_body, reply_to):
        if not BOTO3_AVAILABLE:
            return SendResult(False, reason='boto3 package not installed')
        if not self.ses_client:
            return SendResult(False, reason='SES client not initialized')

        body = {'Html': {'Charset': 'UTF-8', 'Data': html_body}}
        if text_body:
            body['Text'] = {'Charset': 'UTF-8', 'Data': text_body}
        params = {
            'Source': from_header,
            'Destination': {'ToAddresses': [recipient]},
            'Message': {'Subject': {'Charset': 'UTF-8', 'Data': subject}, 'Body': body},
        }
        if reply_to:
            params['ReplyToAddresses'] = [reply_to]

        try:
            response = self.ses_client.send_email(**params)
        except ClientError as e:
            message = e.response['Error']['Message']
            logger.error(f"SES error for {recipient}: {message}")
            return SendResult(False, reason=message)
        return SendResult(True, message_id=response.get('MessageId'))

    def _send_via_smtp(self, from_header, sender, recipient, subject, html_body, text_body, reply_to, timeout):
        if not self.smtp_password:
            return SendResult(False, reason='SMTP password not configured')

        msg = MIMEMultipart('alternative')
        msg['From'] = from_header
        msg['To'] = recipient
        msg['Subject'] = subject
        if reply_to:
            msg['Reply-To'] = reply_to
        if text_body:
            msg.attach(MIMEText(text_body, 'plain', 'utf-8'))
        msg.attach(MIMEText(html_body, 'html', 'utf-8'))

        try:
            with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=timeout) as server:
                server.starttls()
                server.login(sender, self.smtp_password)
                server.send_message(msg)
        except smtplib.SMTPRecipientsRefused as e:
            return SendResult(False, reason=f"Recipient refused: {e.recipients}")
        logger.info(f"SMTP email sent to {recipient}")
        return SendResult(True)

    def _send_via_http(self, from_header, recipient, subject, html_body, text_body, reply_to, timeout):
        if not self.http_endpoint:
            return SendResult(False, reason='HTTP relay endpoint not configured')

        headers = {'Content-Type': 'application/json'}
        if self.http_token:
            headers['Authorization'] = f"Bearer {self.http_token}"
        payload = {
            'from': from_header, 'to': recipient, 'subject': subject,
            'html': html_body, 'text': text_body, 'reply_to': reply_to,
        }
        response = requests.post(self.http_endpoint, json=payload, headers=headers, timeout=timeout)
        if response.status_code >= 500:
            response.raise_for_status()
        if response.status_code >= 400:
            return SendResult(False, reason=f"Relay rejected message ({response.status_code}): {response.text[:200]}")
        data = response.json() if response.content else {}
        return SendResult(True, message_id=data.get('id'))


# Global instance
email_service = EmailService()
