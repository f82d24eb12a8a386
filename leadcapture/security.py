import logging
import re
from dataclasses import dataclass
from typing import Optional

from leadcapture.errors import AccessDenied

logger = logging.getLogger("leadcapture.security")

MAX_MESSAGE_LENGTH = 2000

# checked against the lower-cased message, in order
INJECTION_PATTERNS = [
    re.compile(r"ignore\s+(all\s+)?(previous\s+)?instructions?"),
    re.compile(r"system\s+prompt"),
    re.compile(r"you\s+are\s+(now\s+)?a\s+"),
    re.compile(r"new\s+(system\s+)?instructions?"),
    re.compile(r"disregard\s+(all\s+)?"),
    re.compile(r"forget\s+(everything|all|previous)"),
    re.compile(r"act\s+as\s+(if\s+)?"),
    re.compile(r"roleplay\s+as"),
    re.compile(r"pretend\s+(to\s+be|you\s+are)"),
    re.compile(r"simulate\s+"),
]

REPEATED_CHARACTER = re.compile(r"(.)\1{20,}")
ALL_CAPS_WALL = re.compile(r"^[A-Z\s!]{50,}$")
LINK = re.compile(r"https?://\S+")
MAX_LINKS = 5

DEFLECTION_REPLY = (
    "I'm sorry, but I can only help with questions about our services. "
    "If you have a genuine inquiry, please rephrase your message."
)


@dataclass(frozen=True)
class ScreenResult:
    passed: bool
    reason: Optional[str] = None


def screen(text: str) -> ScreenResult:
    """Pre-screen visitor text for prompt injection and spam. First match wins."""
    if not text or not text.strip():
        return ScreenResult(passed=True)

    lowered = text.lower()
    for pattern in INJECTION_PATTERNS:
        if pattern.search(lowered):
            return ScreenResult(passed=False, reason="prompt_injection")

    if REPEATED_CHARACTER.search(text):
        return ScreenResult(passed=False, reason="spam_repetition")
    if ALL_CAPS_WALL.match(text):
        return ScreenResult(passed=False, reason="spam_all_caps")
    if len(LINK.findall(text)) >= MAX_LINKS:
        return ScreenResult(passed=False, reason="spam_link_flood")

    return ScreenResult(passed=True)


def sanitize_message(text: str) -> str:
    cleaned = (text or "").replace("\x00", "")
    return cleaned[:MAX_MESSAGE_LENGTH].strip()


def audit_blocked(customer_id: str, session_id: str, text: str, reason: Optional[str]) -> None:
    logger.warning(
        "Blocked visitor message",
        extra={
            "security": {
                "customer_id": customer_id,
                "session_id": session_id,
                "reason": reason,
                "sample": (text or "")[:100],
            }
        },
    )


@dataclass(frozen=True)
class LeadAccess:
    """Outcome of a tenant-scoped lead lookup: either ``lead`` or ``denied`` is set, or neither."""

    lead: Optional[object] = None
    denied: Optional[AccessDenied] = None

    @property
    def found(self) -> bool:
        return self.lead is not None


def check_lead_access(lead, customer_id: str, *, lead_id: Optional[int] = None) -> LeadAccess:
    if lead is None:
        return LeadAccess()
    if lead.customer_id != customer_id:
        denied = AccessDenied(lead_id if lead_id is not None else lead.id, customer_id)
        logger.warning("Cross-tenant lead access rejected: %s", denied)
        return LeadAccess(denied=denied)
    return LeadAccess(lead=lead)
