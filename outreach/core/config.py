import os
from dotenv import load_dotenv

load_dotenv(override=True)


class Config:
    """
    Base configuration for the outreach engine.
    Deployments provide database paths and provider keys via environment variables.
    """
    SECRET_KEY = os.getenv('FLASK_SECRET_KEY')

    # Get DB_DIR from environment, or use a default if not set
    DB_DIR = os.getenv('DB_DIR', os.path.join(os.getcwd(), 'databases'))

    # Database paths - use environment variables or fallback to DB_DIR
    OUTREACH_DB = os.getenv('OUTREACH_DB', os.path.join(DB_DIR, "outreach.db"))
    ANALYTICS_DB = os.getenv('ANALYTICS_DB', os.path.join(DB_DIR, "analytics_log.db"))

    # Email settings
    EMAIL_PROVIDER = os.getenv('EMAIL_PROVIDER', 'resend')
    EMAIL_ADDRESS = os.getenv("EMAIL_ADDRESS", "no-reply@example.com")
    EMAIL_SENDER_NAME = os.getenv("EMAIL_SENDER_NAME")
    EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
    EMAIL_HOST = os.getenv("EMAIL_HOST", "smtp.gmail.com")
    EMAIL_PORT = int(os.getenv("EMAIL_PORT", "587"))
    EMAIL_HTTP_ENDPOINT = os.getenv('EMAIL_HTTP_ENDPOINT')
    EMAIL_HTTP_TOKEN = os.getenv('EMAIL_HTTP_TOKEN')
    AWS_REGION = os.getenv('AWS_REGION', 'eu-west-1')
    RESEND_API_KEY = os.getenv('RESEND_API_KEY') or os.getenv('RESEND')

    # Tracking links embedded in outgoing mail
    TRACKING_BASE_URL = os.getenv('TRACKING_BASE_URL', 'http://localhost:5000')
    OUTREACH_WEBHOOK_SECRET = os.getenv('OUTREACH_WEBHOOK_SECRET')
    OUTREACH_CORS_ORIGINS = os.getenv('OUTREACH_CORS_ORIGINS', '*')

    # Send engine tunables
    OUTREACH_SEND_WORKERS = int(os.getenv('OUTREACH_SEND_WORKERS', '4'))
    OUTREACH_TRANSPORT_TIMEOUT_SECONDS = float(os.getenv('OUTREACH_TRANSPORT_TIMEOUT_SECONDS', '15'))
    OUTREACH_TRANSPORT_RETRIES = int(os.getenv('OUTREACH_TRANSPORT_RETRIES', '3'))
    OUTREACH_RETRY_BACKOFF_SECONDS = float(os.getenv('OUTREACH_RETRY_BACKOFF_SECONDS', '1.0'))
    OUTREACH_RESOLUTION_MAX_ATTEMPTS = int(os.getenv('OUTREACH_RESOLUTION_MAX_ATTEMPTS', '5'))
    OUTREACH_RESOLUTION_BACKOFF_SECONDS = float(os.getenv('OUTREACH_RESOLUTION_BACKOFF_SECONDS', '60'))
    OUTREACH_DISPATCH_CLAIM_TTL_SECONDS = int(os.getenv('OUTREACH_DISPATCH_CLAIM_TTL_SECONDS', '600'))

    # Background loop
    OUTREACH_SCHEDULER_ENABLED = os.getenv('OUTREACH_SCHEDULER_ENABLED', 'false').lower() in ('1', 'true', 'yes')
    OUTREACH_TICK_SECONDS = int(os.getenv('OUTREACH_TICK_SECONDS', '60'))
    OUTREACH_STEP_CLAIM_TTL_SECONDS = int(os.getenv('OUTREACH_STEP_CLAIM_TTL_SECONDS', '900'))

    # Table names
    CAMPAIGNS_TABLE = "campaigns"
    RECIPIENTS_TABLE = "campaign_recipients"
    SEGMENTS_TABLE = "segments"


def get_setting(key, default=None):
    """Resolve a setting: Flask app.config, then Config, then the environment."""
    try:
        from flask import current_app
        val = current_app.config.get(key)
        if val is not None:
            return val
    except RuntimeError:
        pass
    val = getattr(Config, key, None)
    if val is not None:
        return val
    return os.getenv(key, default)
