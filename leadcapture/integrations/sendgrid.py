import os
from typing import Any, Dict, Optional

import httpx

from leadcapture import monitoring


SENDGRID_API_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_TIMEOUT = float(os.getenv("SENDGRID_TIMEOUT_SECONDS", "10"))


def _token() -> str:
    token = os.getenv("SENDGRID_API_KEY")
    if not token:
        raise RuntimeError("SendGrid API key not configured")
    return token


def is_configured() -> bool:
    return bool(os.getenv("SENDGRID_API_KEY") and os.getenv("SENDGRID_FROM_EMAIL"))


async def send_email(to: str, subject: str, body: str, html_body: Optional[str] = None) -> Dict[str, Any]:
    token = _token()
    sender = os.getenv("SENDGRID_FROM_EMAIL")
    if not sender:
        raise RuntimeError("SendGrid sender address not configured")

    content = [{"type": "text/plain", "value": body}]
    if html_body:
        content.append({"type": "text/html", "value": html_body})
    payload = {
        "personalizations": [{"to": [{"email": to}]}],
        "from": {"email": sender},
        "subject": subject,
        "content": content,
    }
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
        response = await client.post(SENDGRID_API_URL, json=payload, headers=headers)
    try:
        response.raise_for_status()
    except Exception as exc:
        monitoring.capture_exception(exc)
        raise RuntimeError(f"SendGrid request failed: {exc}") from exc
    return {"status_code": response.status_code, "message_id": response.headers.get("X-Message-Id")}
