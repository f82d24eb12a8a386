"""Deterministic quote arithmetic and dimension sanity checks.

Prices come from the tenant's pricing rules, never from the model: the
capable tier only writes the prose around a range computed here.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

from leadcapture.errors import ConfigurationError

COMPLEXITY_BUFFER = 0.15
PRICE_STEP = 5
DIMENSION_TOLERANCE = 0.05
UNITS = ("sq_ft", "linear_ft", "flat_rate", "hourly")

_DIMENSION_X = re.compile(r"(\d+\.?\d*)\s*x\s*(\d+\.?\d*)", re.IGNORECASE)
_DIMENSION_BY = re.compile(
    r"(\d+\.?\d*)\s*(?:feet?|ft|')?\s*by\s*(\d+\.?\d*)\s*(?:feet?|ft|')?",
    re.IGNORECASE,
)
_STATED_AREA = re.compile(
    r"(\d+\.?\d*)\s*(?:sq\.?\s*f(?:ee)?t|square\s*f(?:ee)?t|sqft)",
    re.IGNORECASE,
)
_STATED_LENGTH = re.compile(
    r"(\d+\.?\d*)\s*(?:linear\s*f(?:ee)?t|lin\.?\s*ft|lf\b)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class PricingRule:
    service_type: str
    unit: str
    min_rate: float
    max_rate: float
    base_fee: float = 0.0
    service_call_fee: float = 0.0
    typical_units: Optional[float] = None

    @property
    def fixed_fees(self) -> float:
        return self.base_fee + self.service_call_fee

    @property
    def is_dimensional(self) -> bool:
        return self.unit in ("sq_ft", "linear_ft")


@dataclass(frozen=True)
class DimensionCheck:
    width: Optional[float] = None
    length: Optional[float] = None
    calculated_area: Optional[float] = None
    stated_area: Optional[float] = None
    stated_length: Optional[float] = None
    has_mismatch: bool = False

    @property
    def has_dimensions(self) -> bool:
        return self.calculated_area is not None or self.stated_area is not None or self.stated_length is not None

    @property
    def area(self) -> Optional[float]:
        """Area to price on; the computed area always wins over a stated one."""
        if self.calculated_area is not None:
            return self.calculated_area
        return self.stated_area

    def correction_message(self) -> str:
        if not self.has_mismatch:
            return ""
        return (
            f"Just to confirm: a {_fmt(self.width)}x{_fmt(self.length)} area is "
            f"{_fmt(self.calculated_area)} square feet (not {_fmt(self.stated_area)} sqft). "
            f"I'll base the estimate on {_fmt(self.calculated_area)} square feet. "
        )


@dataclass(frozen=True)
class Estimate:
    unit: str
    unit_value: float
    low: int
    high: int
    high_unbuffered: float
    base_fee: float
    is_calculated: bool

    @property
    def estimated_range(self) -> str:
        return format_range(self.low, self.high)

    def breakdown(self) -> Dict[str, Any]:
        return {
            "base_fee": self.base_fee,
            "estimated_labor_low": self.low,
            "estimated_labor_high": self.high,
            "buffer_applied": f"{int(COMPLEXITY_BUFFER * 100)}%",
        }


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "?"
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def round_price(amount: float, *, up: bool = False) -> int:
    """Round to a multiple of $5: nearest with halves away from zero, or the next one up when ``up``."""
    step = Decimal(PRICE_STEP)
    rounding = ROUND_CEILING if up else ROUND_HALF_UP
    return int((Decimal(str(amount)) / step).quantize(Decimal(1), rounding=rounding) * step)


def format_range(low: float, high: float) -> str:
    return f"${low:,.0f} - ${high:,.0f}"


def normalize_service(service_type: Optional[str]) -> str:
    return re.sub(r"[\s\-]+", "_", (service_type or "").strip().lower())


def resolve_pricing_rule(pricing_rules: Optional[Dict[str, Any]], service_type: Optional[str]) -> PricingRule:
    if not pricing_rules:
        raise ConfigurationError("Tenant has no pricing rules configured")
    wanted = normalize_service(service_type)
    raw = None
    for key, value in pricing_rules.items():
        if normalize_service(key) == wanted:
            raw = value
            break
    if raw is None:
        raise ConfigurationError(f"No pricing rule for service '{service_type}'")

    unit = raw.get("unit")
    if unit not in UNITS:
        raise ConfigurationError(f"Pricing rule for '{service_type}' has unknown unit '{unit}'")
    try:
        return PricingRule(
            service_type=wanted,
            unit=unit,
            min_rate=float(raw["min"]),
            max_rate=float(raw["max"]),
            base_fee=float(raw.get("base_fee") or 0.0),
            service_call_fee=float(raw.get("service_call_fee") or 0.0),
            typical_units=float(raw["typical_units"]) if raw.get("typical_units") else None,
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Pricing rule for '{service_type}' is malformed: {exc}") from exc


def extract_dimensions(text: str) -> Optional[tuple]:
    match = _DIMENSION_X.search(text) or _DIMENSION_BY.search(text)
    if not match:
        return None
    return float(match.group(1)), float(match.group(2))


def extract_stated_area(text: str) -> Optional[float]:
    match = _STATED_AREA.search(text)
    return float(match.group(1)) if match else None


def extract_stated_length(text: str) -> Optional[float]:
    match = _STATED_LENGTH.search(text)
    return float(match.group(1)) if match else None


def validate_dimensions(text: str) -> DimensionCheck:
    text = text or ""
    dimensions = extract_dimensions(text)
    stated_area = extract_stated_area(text)
    stated_length = extract_stated_length(text)
    if not dimensions:
        return DimensionCheck(stated_area=stated_area, stated_length=stated_length)

    width, length = dimensions
    calculated = width * length
    mismatch = stated_area is not None and abs(calculated - stated_area) > calculated * DIMENSION_TOLERANCE
    return DimensionCheck(
        width=width,
        length=length,
        calculated_area=calculated,
        stated_area=stated_area,
        stated_length=stated_length,
        has_mismatch=mismatch,
    )


def resolve_unit_value(rule: PricingRule, dimensions: DimensionCheck) -> tuple:
    """Return ``(unit_value, is_calculated)``; unit_value is None when nothing usable is known."""
    if rule.unit == "sq_ft" and dimensions.area is not None:
        return dimensions.area, True
    if rule.unit == "linear_ft":
        if dimensions.stated_length is not None:
            return dimensions.stated_length, True
        if dimensions.length is not None:
            return dimensions.length, True
    if rule.typical_units:
        return rule.typical_units, False
    if rule.unit == "flat_rate":
        return 1.0, False
    return None, False


def compute_estimate(rule: PricingRule, unit_value: float, *, is_calculated: bool = True) -> Estimate:
    low_raw = unit_value * rule.min_rate + rule.fixed_fees
    high_raw = unit_value * rule.max_rate + rule.fixed_fees
    high_buffered = high_raw * (1 + COMPLEXITY_BUFFER)
    low = round_price(low_raw)
    high = round_price(high_buffered)
    if high < high_raw:
        # tiny amounts can round below the unbuffered figure
        high = round_price(high_buffered, up=True)
    high = max(high, low)
    return Estimate(
        unit=rule.unit,
        unit_value=unit_value,
        low=low,
        high=high,
        high_unbuffered=high_raw,
        base_fee=rule.fixed_fees,
        is_calculated=is_calculated,
    )


_MONEY = re.compile(r"\$?\s*([\d,]+(?:\.\d+)?)")


def range_high(estimated_range: Optional[str]) -> float:
    """Numeric high end of a range string like ``"$700 - $1,265"``; 0.0 when unparseable."""
    if not estimated_range:
        return 0.0
    amounts = [float(value.replace(",", "")) for value in _MONEY.findall(estimated_range) if value.strip(",")]
    return max(amounts) if amounts else 0.0
