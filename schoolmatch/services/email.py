"""Jinja2 email template rendering and the Resend delivery channel."""

from pathlib import Path

import httpx
import structlog
from jinja2 import Environment, FileSystemLoader

from schoolmatch.core.config import Settings, get_settings
from schoolmatch.schemas.notification import DeliveryResult

logger = structlog.get_logger()

_TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
_env = Environment(loader=FileSystemLoader(str(_TEMPLATE_DIR)), autoescape=True)


def render(template_name: str, **ctx) -> str:
    """Render an email template with the given context."""
    tpl = _env.get_template(template_name)
    return tpl.render(**ctx)


class ResendEmailChannel:
    """Sends one HTML email through the Resend API.

    ``send`` never raises: every outcome, including a missing API key or a
    transport error, comes back as a DeliveryResult.
    """

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings or get_settings()
        self.transport = transport

    async def send(self, to: str, subject: str, html: str) -> DeliveryResult:
        if not self.settings.RESEND_API_KEY:
            logger.warning("email_skip_no_api_key", to=to)
            return DeliveryResult(success=False, error="Email API key is not configured")

        payload = {
            "from": self.settings.EMAIL_FROM,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if self.settings.EMAIL_REPLY_TO:
            payload["reply_to"] = self.settings.EMAIL_REPLY_TO

        try:
            async with httpx.AsyncClient(
                transport=self.transport,
                timeout=self.settings.NOTIFICATION_SEND_TIMEOUT_SECONDS,
            ) as client:
                response = await client.post(
                    self.settings.RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self.settings.RESEND_API_KEY}"},
                    json=payload,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("email_error", to=to, status_code=e.response.status_code)
            return DeliveryResult(success=False, error=f"Email API returned {e.response.status_code}: {e.response.text}")
        except httpx.HTTPError as e:
            logger.error("email_error", to=to, error=str(e))
            return DeliveryResult(success=False, error=str(e) or e.__class__.__name__)

        try:
            message_id = response.json().get("id")
        except ValueError:
            message_id = None
        logger.info("email_sent", to=to, message_id=message_id)
        return DeliveryResult(success=True, message_id=message_id)
