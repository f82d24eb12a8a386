from typing import Optional


class LeadCaptureError(Exception):
    """Base class for errors raised inside the lead engine."""


class InputValidationError(LeadCaptureError):
    """Raised when a widget payload is malformed or oversized."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SecurityBlock(LeadCaptureError):
    """Raised when visitor text trips the injection or spam screen."""

    def __init__(self, reason: str):
        super().__init__(f"Message blocked: {reason}")
        self.reason = reason


class ModelError(LeadCaptureError):
    """Raised when a model tier exhausts its retries or returns unusable output."""

    def __init__(self, message: str, *, tier: Optional[str] = None, provider: Optional[str] = None):
        super().__init__(message)
        self.tier = tier
        self.provider = provider


class PersistenceError(LeadCaptureError):
    """Raised when the lead store cannot complete a read or write."""


class ConfigurationError(LeadCaptureError):
    """Raised when a tenant lacks the pricing or prompt data a branch needs."""


class AccessDenied(LeadCaptureError):
    """A lead exists but belongs to another tenant.

    Returned inside ``LeadAccess`` rather than raised so callers have to
    look at it.
    """

    def __init__(self, lead_id: int, customer_id: str):
        super().__init__(f"Lead {lead_id} is not owned by customer {customer_id}")
        self.lead_id = lead_id
        self.customer_id = customer_id
