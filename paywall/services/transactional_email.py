"""
Billing notices to members, sent through SendGrid.

Sends are fire-and-forget for callers: every function here returns a
result dict ({"message_id", "status", "error"}) and logs failures instead
of raising.
"""
import asyncio
import logging
from typing import Optional

from paywall.config import get_settings

logger = logging.getLogger(__name__)

# Stripe amounts for these currencies are already in whole units
ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

CURRENCY_SYMBOLS = {"jpy": "¥", "usd": "$", "eur": "€", "gbp": "£"}

SUBSCRIPTION_PAGE_PATH = "/media/mypage/subscription"

PAYMENT_FAILED_SUBJECT = "Important: your payment failed"

PAYMENT_FAILED_HTML = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2>Action required: your payment failed</h2>
  <p>We could not collect the payment for your subscription.</p>
  <table style="background: #f8f9fa; padding: 16px; border-radius: 8px;">
    <tr><td>Amount due</td><td><strong>{amount}</strong></td></tr>
    <tr><td>Payment attempts</td><td>{attempts}</td></tr>
  </table>
  <p><a href="{update_url}">Update your payment method</a> to keep your membership.</p>
  <p style="color: #dc3545;">Member content may become unavailable if the payment stays unpaid.</p>
  <p style="font-size: 14px; color: #6c757d;">{sender} Support</p>
</div>
"""

PAYMENT_FAILED_TEXT = """\
Action required: your payment failed

We could not collect the payment for your subscription.

Amount due: {amount}
Payment attempts: {attempts}

Update your payment method to keep your membership: {update_url}

Member content may become unavailable if the payment stays unpaid.

-- {sender} Support
"""


def format_amount(amount: Optional[int], currency: Optional[str]) -> str:
    """Render a Stripe smallest-unit amount, e.g. 980 jpy -> ¥980, 1999 usd -> $19.99."""
    if amount is None:
        return "N/A"
    code = (currency or "").lower()
    value = f"{amount:,}" if code in ZERO_DECIMAL_CURRENCIES else f"{amount / 100:,.2f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    return f"{symbol}{value}" if symbol else f"{value} {code.upper()}".strip()


def _mask(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}" if domain else "***"


def _result(status: str, message_id: Optional[str] = None, error: Optional[str] = None) -> dict:
    return {"message_id": message_id, "status": status, "error": error}


async def _send(to_email: str, subject: str, html: str, text: str) -> dict:
    settings = get_settings()
    if not settings.sendgrid_api_key:
        logger.error("Transactional email skipped: SENDGRID_API_KEY not set")
        return _result("error", error="SendGrid not configured")

    try:
        from sendgrid import SendGridAPIClient
        from sendgrid.helpers.mail import Content, Email, Mail, To

        mail = Mail(
            from_email=Email(settings.from_email_transactional, settings.from_name_transactional),
            to_emails=To(to_email),
            subject=subject,
        )
        mail.content = [Content("text/plain", text), Content("text/html", html)]

        client = SendGridAPIClient(api_key=settings.sendgrid_api_key)
        # The SendGrid SDK is synchronous
        response = await asyncio.to_thread(client.send, mail)
    except Exception as e:
        logger.error("Transactional email to %s failed: %s", _mask(to_email), str(e))
        return _result("error", error=str(e))

    logger.info("Transactional email sent to %s: %s", _mask(to_email), subject)
    return _result("sent", message_id=response.headers.get("X-Message-Id", ""))


async def send_payment_failed(
    email: str,
    amount: Optional[int],
    currency: Optional[str],
    attempt_count: Optional[int],
) -> dict:
    """Ask a member to update their card after an invoice payment failed."""
    settings = get_settings()
    fields = {
        "amount": format_amount(amount, currency),
        "attempts": attempt_count or 1,
        "update_url": settings.app_base_url.rstrip("/") + SUBSCRIPTION_PAGE_PATH,
        "sender": settings.from_name_transactional,
    }
    return await _send(
        email,
        PAYMENT_FAILED_SUBJECT,
        PAYMENT_FAILED_HTML.format(**fields),
        PAYMENT_FAILED_TEXT.format(**fields),
    )
