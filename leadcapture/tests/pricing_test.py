import pytest

from leadcapture.errors import ConfigurationError
from leadcapture.pricing import (
    PricingRule,
    compute_estimate,
    format_range,
    range_high,
    resolve_pricing_rule,
    resolve_unit_value,
    round_price,
    validate_dimensions,
)

DECK = PricingRule(service_type="deck_staining", unit="sq_ft", min_rate=3, max_rate=5, base_fee=100, typical_units=200)


@pytest.mark.parametrize(
    "amount,expected",
    [(702.4, 700), (702.5, 705), (997.5, 1000), (1000, 1000), (1264.9, 1265), (1265, 1265), (1267.5, 1270), (12.0, 10)],
)
def test_round_price(amount, expected):
    assert round_price(amount) == expected


def test_round_price_up_never_goes_below():
    assert round_price(2.3, up=True) == 5
    assert round_price(1265, up=True) == 1265
    assert round_price(1265.01, up=True) == 1270


def test_deck_estimate_applies_buffer_to_high_end_only():
    estimate = compute_estimate(DECK, 200)
    # low: 200*3 + 100 = 700; high: (200*5 + 100) * 1.15 = 1265
    assert estimate.low == 700
    assert estimate.high == 1265
    assert estimate.estimated_range == "$700 - $1,265"
    assert estimate.high > estimate.high_unbuffered
    assert estimate.breakdown()["buffer_applied"] == "15%"


def test_high_never_below_low():
    flat = PricingRule(service_type="gutter_cleaning", unit="flat_rate", min_rate=150, max_rate=150)
    estimate = compute_estimate(flat, 1.0, is_calculated=False)
    assert estimate.high >= estimate.low


@pytest.mark.parametrize("min_rate", [0.5, 1, 2, 3])
@pytest.mark.parametrize("max_rate", [1, 2, 4, 7, 11])
@pytest.mark.parametrize("unit_value", [1.0, 2.0, 3.5])
def test_buffered_high_never_drops_below_unbuffered_high(min_rate, max_rate, unit_value):
    rule = PricingRule(service_type="handyman", unit="flat_rate", min_rate=min_rate, max_rate=max(min_rate, max_rate))
    estimate = compute_estimate(rule, unit_value)
    assert estimate.high >= estimate.high_unbuffered
    assert estimate.high % 5 == 0


def test_small_flat_rate_rounds_high_end_up():
    tiny = PricingRule(service_type="handyman", unit="flat_rate", min_rate=1, max_rate=2)
    estimate = compute_estimate(tiny, 1.0)
    assert estimate.high_unbuffered == 2.0
    assert estimate.high == 5


def test_dimension_mismatch_prefers_computed_area():
    check = validate_dimensions("I have a 10x10 deck, about 500 square feet")
    assert check.has_mismatch
    assert check.calculated_area == 100
    assert check.area == 100
    assert check.correction_message().startswith("Just to confirm: a 10x10 area is 100 square feet (not 500 sqft).")

    value, is_calculated = resolve_unit_value(DECK, check)
    assert value == 100 and is_calculated


def test_dimensions_within_tolerance_are_not_a_mismatch():
    check = validate_dimensions("12 by 20 feet, roughly 245 sq ft")
    assert check.calculated_area == 240
    assert not check.has_mismatch
    assert check.correction_message() == ""


def test_typical_units_used_without_measurements():
    value, is_calculated = resolve_unit_value(DECK, validate_dimensions("my deck needs staining"))
    assert value == 200
    assert not is_calculated


def test_linear_feet_uses_stated_length():
    fence = PricingRule(service_type="fence_install", unit="linear_ft", min_rate=25, max_rate=40, base_fee=150)
    value, is_calculated = resolve_unit_value(fence, validate_dimensions("about 120 linear feet of fence"))
    assert value == 120 and is_calculated


def test_resolve_pricing_rule_matches_loosely_and_reports_missing():
    rules = {"Deck Staining": {"unit": "sq_ft", "min": 3, "max": 5}}
    assert resolve_pricing_rule(rules, "deck-staining").unit == "sq_ft"
    with pytest.raises(ConfigurationError):
        resolve_pricing_rule(rules, "roofing")
    with pytest.raises(ConfigurationError):
        resolve_pricing_rule(None, "deck_staining")
    with pytest.raises(ConfigurationError):
        resolve_pricing_rule({"deck_staining": {"unit": "per_bucket", "min": 1, "max": 2}}, "deck_staining")


def test_range_high_parses_formatted_ranges():
    assert range_high(format_range(700, 1265)) == 1265
    assert range_high(None) == 0.0
    assert range_high("call us") == 0.0
