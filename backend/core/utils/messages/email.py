"""
Mailgun email service for sending emails
"""
import logging
import os
from typing import Any, Dict, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import Settings, settings as default_settings
from core.exceptions import ExternalServiceException

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
TEMPLATES_DIR = os.path.join(BASE_DIR, "templates")

env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(['html', 'xml'])
)

SUBJECTS = {
    "order_confirmation": "Order Confirmation",
}

TEMPLATES = {
    "order_confirmation": "purchase/order_confirmation.html",
}


def render_email(template_name: str, context: dict) -> str:
    """Render Jinja2 template with context"""
    template = env.get_template(template_name)
    return template.render(**context)


async def send_email_mailgun(
    to_email: str,
    mail_type: str,
    context: Optional[Dict[str, Any]] = None,
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """
    Send email using Mailgun API (async)

    Args:
        to_email: Recipient email address
        mail_type: Email template type
        context: Template context variables

    Returns False without calling Mailgun when no API key is configured.
    """
    settings = settings or default_settings
    context = context or {}

    template_name = TEMPLATES.get(mail_type)
    if not template_name:
        raise ValueError(f"No template found for mail_type: {mail_type}")

    subject = context.get("subject") or SUBJECTS.get(mail_type, "Notification")
    html_body = render_email(template_name, context)

    if not settings.MAILGUN_API_KEY or not settings.MAILGUN_DOMAIN:
        logger.info(f"Mailgun not configured; skipping {mail_type} email to {to_email}")
        return False

    data = {
        "from": settings.MAILGUN_FROM_EMAIL,
        "to": [to_email],
        "subject": subject,
        "html": html_body,
        "text": context.get("text_body", subject),
    }
    mailgun_url = f"https://api.mailgun.net/v3/{settings.MAILGUN_DOMAIN}/messages"

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=30)
    try:
        response = await client.post(mailgun_url, auth=("api", settings.MAILGUN_API_KEY), data=data)
    except httpx.HTTPError as e:
        raise ExternalServiceException(
            message="Email delivery failed", service="mailgun", provider_message=str(e)
        )
    finally:
        if owns_client:
            await client.aclose()

    if response.status_code != 200:
        raise ExternalServiceException(
            message="Email delivery failed",
            service="mailgun",
            provider_message=f"Mailgun API error ({response.status_code}): {response.text}",
        )

    logger.info(f"{mail_type} email sent to {to_email} via Mailgun")
    return True
