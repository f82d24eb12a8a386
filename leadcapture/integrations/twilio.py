import os
from typing import Any, Dict

import httpx

from leadcapture import monitoring


TWILIO_API_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"
DEFAULT_TIMEOUT = float(os.getenv("TWILIO_TIMEOUT_SECONDS", "10"))


def _credentials() -> tuple:
    sid = os.getenv("TWILIO_ACCOUNT_SID")
    token = os.getenv("TWILIO_AUTH_TOKEN")
    sender = os.getenv("TWILIO_FROM_NUMBER")
    if not (sid and token and sender):
        raise RuntimeError("Twilio credentials not configured")
    return sid, token, sender


def is_configured() -> bool:
    return all(os.getenv(name) for name in ("TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_FROM_NUMBER"))


async def send_sms(to: str, body: str) -> Dict[str, Any]:
    sid, token, sender = _credentials()
    payload = {"To": to, "From": sender, "Body": body}

    async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
        response = await client.post(TWILIO_API_URL.format(sid=sid), data=payload, auth=(sid, token))
    try:
        response.raise_for_status()
        data = response.json()
    except Exception as exc:
        monitoring.capture_exception(exc)
        raise RuntimeError(f"Twilio request failed: {exc}") from exc

    if data.get("error_code"):
        raise RuntimeError(f"Twilio API error: {data.get('error_message') or data['error_code']}")
    return data
