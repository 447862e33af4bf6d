"""
email_client.py: Transactional email collaborator (SendGrid v3 mail/send API).

Only the share-link notification is sent from here. Delivery errors are raised
as EmailDeliveryError; the caller decides what the user sees.
"""

import os
import logging
from typing import List, Optional

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
SENDGRID_API_URL = os.getenv("SENDGRID_API_URL", "https://api.sendgrid.com/v3/mail/send")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "no-reply@certwallet.local")
EMAIL_FROM_NAME = os.getenv("EMAIL_FROM_NAME", "Certificate Wallet")
EMAIL_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", "5.0"))
MAX_EMAIL_RECIPIENTS = int(os.getenv("MAX_EMAIL_RECIPIENTS", "10"))
MAX_MESSAGE_LENGTH = 1000


class EmailDeliveryError(Exception):
    """The email provider is not configured, unreachable, or refused the message."""


def render_share_email(sender_name: str, certificate_titles: List[str], share_url: str,
                       message: Optional[str] = None, expires_at: Optional[str] = None) -> dict:
    count = len(certificate_titles)
    subject = f"{sender_name} shared {count} certificate{'s' if count != 1 else ''} with you"
    lines = [
        "Hello,",
        "",
        f"{sender_name} would like to share the following certificate{'s' if count != 1 else ''} with you:",
        "",
    ]
    lines += [f"  {i}. {title}" for i, title in enumerate(certificate_titles, 1)]
    lines.append("")
    if message:
        lines += [f"Message: {message[:MAX_MESSAGE_LENGTH]}", ""]
    lines.append(f"View: {share_url}")
    if expires_at:
        lines.append(f"This link expires at {expires_at}.")
    return {"subject": subject, "text": "\n".join(lines)}


class EmailClient:

    def __init__(self, api_key: str = SENDGRID_API_KEY, api_url: str = SENDGRID_API_URL,
                 timeout: float = EMAIL_TIMEOUT):
        self.api_key = api_key
        self.api_url = api_url
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def send(self, recipients: List[str], subject: str, text: str) -> None:
        if not self.configured:
            raise EmailDeliveryError("Email provider is not configured")
        if not recipients or len(recipients) > MAX_EMAIL_RECIPIENTS:
            raise EmailDeliveryError(f"Between 1 and {MAX_EMAIL_RECIPIENTS} recipients are required")

        payload = {
            "personalizations": [{"to": [{"email": r} for r in recipients]}],
            "from": {"email": EMAIL_FROM_ADDRESS, "name": EMAIL_FROM_NAME},
            "subject": subject,
            "content": [{"type": "text/plain", "value": text}],
            "categories": ["certificate-share"],
        }
        try:
            response = httpx.post(
                self.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning(f"Email provider timeout after {self.timeout}s")
            raise EmailDeliveryError("Email provider timeout") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Email provider refused message: status={e.response.status_code}")
            raise EmailDeliveryError("Email provider refused the message") from e
        except httpx.HTTPError as e:
            logger.error(f"Email provider unreachable: {e}")
            raise EmailDeliveryError("Email provider unreachable") from e

        logger.info(f"Share email sent to {len(recipients)} recipient(s)")


email_client = EmailClient()


def get_email_client() -> EmailClient:
    return email_client
