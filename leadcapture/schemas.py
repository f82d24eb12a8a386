from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator

from leadcapture.errors import InputValidationError
from leadcapture.security import MAX_MESSAGE_LENGTH


class VisitorInfo(BaseModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=40)
    address: Optional[str] = Field(default=None, max_length=300)


class WidgetMessageRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    message: str = Field(min_length=1, max_length=MAX_MESSAGE_LENGTH)
    visitor: Optional[VisitorInfo] = None

    @field_validator("message")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be blank")
        return value


def parse_widget_message(payload: Any) -> WidgetMessageRequest:
    """Validate a raw widget payload, raising ``InputValidationError`` on any problem."""
    try:
        return WidgetMessageRequest.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise InputValidationError(first.get("msg", "Invalid request"), field=field) from exc


class WidgetMessageResponse(BaseModel):
    lead_id: Optional[int] = None
    state: str
    classification: Optional[Dict[str, Any]] = None
    quote: Optional[Dict[str, Any]] = None
    requires_followup: bool = False
    reply_message: str
    conversation_ended: bool = False


class ReferralRequest(BaseModel):
    lead_id: int


class ReferralResponse(BaseModel):
    success: bool
    message: str


class MetricsOut(BaseModel):
    window: Dict[str, str]
    leads_captured: int
    qualified: int
    quoted: int
    completed: int
    recovered: int
    needs_review: int
    estimated_revenue: float
    recovered_revenue: float
    actual_revenue: float
    ai_cost: float
    roi: int
    top_service: Optional[str] = None
    out_of_area: int
    emergency: int
    junk: int
    total_messages: int
    nudges_sent: int
    alerts_sent: int
    alerts_failed: int
    status_breakdown: Dict[str, int]


class HotLeadOut(BaseModel):
    lead_id: int
    visitor_name: Optional[str] = None
    visitor_phone: Optional[str] = None
    service_type: Optional[str] = None
    urgency_score: float
    estimated_range: Optional[str] = None
    updated_at: Optional[str] = None


class InsightOut(BaseModel):
    headline: str
    briefing_text: str
    action_items: List[str]
    recovery_shoutout: str = ""


class SummaryOut(BaseModel):
    period: str
    insights: InsightOut
    metrics: MetricsOut
    hot_leads: List[HotLeadOut]


class ErrorOut(BaseModel):
    error: str
    code: str
    details: Optional[List[Dict[str, Any]]] = None
