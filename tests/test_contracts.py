from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from tripbrief.contracts import (
    BudgetValue,
    DateRangeValue,
    DestinationValue,
    RouteLeg,
    RoutePlan,
    RouteSegment,
    TripBrief,
    TurnToken,
)


def _plan(mode: str, provider: str) -> RoutePlan:
    return RoutePlan(
        strategy=mode,
        segments=[
            RouteSegment(
                mode=mode,
                provider=provider,
                origin="Rome",
                destination="Florence",
                duration_minutes=90,
                cost=Decimal("30"),
            )
        ],
        total_minutes=90,
        total_cost=Decimal("30"),
        reliability=90,
        convenience=100,
    )


def test_date_range_derives_duration_from_dates() -> None:
    value = DateRangeValue(start=date(2027, 3, 1), end=date(2027, 3, 7))
    assert value.duration == 7


def test_date_range_rejects_inconsistent_duration() -> None:
    with pytest.raises(ValidationError):
        DateRangeValue(start=date(2027, 3, 1), end=date(2027, 3, 7), duration=5)
    with pytest.raises(ValidationError):
        DateRangeValue(start=date(2027, 3, 7), end=date(2027, 3, 1))
    with pytest.raises(ValidationError):
        DateRangeValue(start=date(2027, 3, 1))


def test_multi_city_destination_needs_two_cities() -> None:
    with pytest.raises(ValidationError):
        DestinationValue(type="multi-city", primary="Rome", detected_cities=["Rome"])
    value = DestinationValue(type="multi-city", primary="Rome", detected_cities=["Rome", "Florence"])
    assert value.detected_cities == ["Rome", "Florence"]


def test_budget_pending_currency_flag() -> None:
    assert BudgetValue(amount=Decimal("2500"), currency="PENDING").currency_pending is True
    assert BudgetValue(amount=Decimal("2500"), currency="GBP").currency_pending is False
    with pytest.raises(ValidationError):
        BudgetValue(amount=Decimal("0"), currency="GBP")


def test_new_trip_brief_has_every_slot_empty() -> None:
    brief = TripBrief(trip_id="t1")
    assert brief.phase == "collecting"
    assert set(brief.slots) == {
        "destination",
        "origin",
        "date_range",
        "travelers",
        "budget",
        "style",
        "preferences",
    }
    assert all(constraint.status == "empty" for constraint in brief.slots.values())


def test_route_leg_requires_backup_or_risk_flag() -> None:
    with pytest.raises(ValidationError):
        RouteLeg(origin="Rome", destination="Florence", distance_km=230, primary=_plan("train", "rail"))

    flagged = RouteLeg(
        origin="Rome",
        destination="Florence",
        distance_km=230,
        primary=_plan("train", "rail"),
        single_route_risk=True,
    )
    assert flagged.backup is None


def test_route_leg_backup_must_differ_from_primary() -> None:
    with pytest.raises(ValidationError):
        RouteLeg(
            origin="Rome",
            destination="Florence",
            distance_km=230,
            primary=_plan("train", "rail"),
            backup=_plan("train", "rail"),
        )
    leg = RouteLeg(
        origin="Rome",
        destination="Florence",
        distance_km=230,
        primary=_plan("train", "rail"),
        backup=_plan("bus", "coach"),
    )
    assert leg.backup is not None
    assert leg.backup.main_mode == "bus"


def test_turn_token_is_immutable_and_keyed() -> None:
    token = TurnToken(trip_id="t1", counter=3, timestamp=datetime(2026, 10, 17, tzinfo=timezone.utc))
    assert token.key.startswith("t1:3:")
    with pytest.raises(ValidationError):
        token.counter = 4
