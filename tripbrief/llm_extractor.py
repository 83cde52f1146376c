"""Model-backed fallback extractor, used only when the rule-based pass finds nothing."""

from __future__ import annotations

from decimal import Decimal
import os
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from tripbrief.contracts import (
    BudgetValue,
    DateRangeValue,
    DestinationValue,
    OriginValue,
    PreferencesValue,
    TravelersValue,
    TripBrief,
)
from tripbrief.extractor import SingleCandidate


class SlotDraft(BaseModel):
    destination_text: str | None = None
    destination_country_code: str | None = None
    origin_text: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    duration_days: int | None = None
    adults: int | None = None
    children: int | None = None
    budget_amount: float | None = None
    budget_currency: str | None = None
    budget_scope: Literal["total", "per_person"] | None = None
    style: Literal["budget", "mid-range", "luxury", "mixed"] | None = None
    interests: list[str] = Field(default_factory=list)
    dietary: list[str] = Field(default_factory=list)
    confidence: int = Field(default=60, ge=0, le=100)


class DatapizzaGeminiCandidateExtractor:
    """Gemini slot extractor implemented through the Datapizza Google client."""

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        resolved_api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not resolved_api_key:
            raise ValueError("GEMINI_API_KEY is required for Datapizza Gemini extraction.")

        resolved_model = model or os.getenv("TRIPBRIEF_GEMINI_MODEL", "gemini-2.0-flash")
        system_prompt = (
            "Extract trip-planning facts from one chat message into a SlotDraft. "
            "Leave a field empty unless the message states it. Do not ask questions."
        )
        from datapizza.clients.factory import ClientFactory

        self._client = ClientFactory.create(
            provider="google",
            api_key=resolved_api_key,
            model=resolved_model,
            system_prompt=system_prompt,
            temperature=0.0,
        )

    def extract(self, utterance: str, brief: TripBrief | None) -> list[SingleCandidate]:
        prompt = f"Extract a SlotDraft from the message.\nmessage: {utterance}"
        if brief is not None:
            known = {
                name: constraint.value
                for name, constraint in brief.slots.items()
                if constraint.value is not None
            }
            prompt += f"\nalready_known: {known}"
        response = self._client.structured_response(input=prompt, output_cls=SlotDraft)
        if not response.structured_data:
            return []
        payload = response.structured_data[0]
        draft = payload if isinstance(payload, SlotDraft) else SlotDraft.model_validate(payload.model_dump())
        return draft_to_candidates(draft, evidence=utterance)


def draft_to_candidates(draft: SlotDraft, *, evidence: str = "") -> list[SingleCandidate]:
    """Turn a structured draft into candidates; fields that fail validation are dropped."""
    values: list[tuple[str, Any]] = []
    if draft.destination_text:
        values.append(
            (
                "destination",
                lambda: DestinationValue(
                    type="city",
                    primary=draft.destination_text,
                    country_code=(draft.destination_country_code or "").lower() or None,
                ),
            )
        )
    if draft.origin_text:
        values.append(("origin", lambda: OriginValue(name=draft.origin_text)))
    if draft.start_date or draft.end_date or draft.duration_days:
        values.append(
            (
                "date_range",
                lambda: DateRangeValue(
                    start=draft.start_date,
                    end=draft.end_date,
                    duration=draft.duration_days,
                ),
            )
        )
    if draft.adults:
        values.append(
            ("travelers", lambda: TravelersValue(adults=draft.adults, children=draft.children or 0))
        )
    if draft.budget_amount and draft.budget_currency:
        values.append(
            (
                "budget",
                lambda: BudgetValue(
                    amount=Decimal(str(draft.budget_amount)),
                    currency=draft.budget_currency.upper(),
                    scope=draft.budget_scope or "total",
                ),
            )
        )
    if draft.style:
        values.append(("style", lambda: draft.style))
    if draft.interests or draft.dietary:
        values.append(
            ("preferences", lambda: PreferencesValue(interests=draft.interests, dietary=draft.dietary))
        )

    candidates: list[SingleCandidate] = []
    for slot, build in values:
        try:
            value = build()
        except ValidationError:
            continue
        candidates.append(
            SingleCandidate(
                slot=slot,
                value=value,
                confidence=draft.confidence,
                source="inferred",
                evidence=evidence,
            )
        )
    return candidates
