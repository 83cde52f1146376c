from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest

from tripbrief.brief import new_brief
from tripbrief.llm_extractor import DatapizzaGeminiCandidateExtractor, SlotDraft, draft_to_candidates


class FakeClient:
    def __init__(self, draft: SlotDraft | None) -> None:
        self.draft = draft
        self.prompts: list[str] = []

    def structured_response(self, *, input: str, output_cls):  # type: ignore[no-untyped-def]
        assert output_cls is SlotDraft
        self.prompts.append(input)
        return SimpleNamespace(structured_data=[self.draft] if self.draft is not None else [])


def test_missing_api_key_raises(monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        DatapizzaGeminiCandidateExtractor()


def test_extract_goes_through_datapizza_client(monkeypatch) -> None:
    client = FakeClient(SlotDraft(destination_text="Lisbon", destination_country_code="PT", confidence=88))
    created: dict[str, object] = {}

    def fake_create(**kwargs):  # type: ignore[no-untyped-def]
        created.update(kwargs)
        return client

    monkeypatch.setattr("datapizza.clients.factory.ClientFactory.create", fake_create)
    extractor = DatapizzaGeminiCandidateExtractor(api_key="dummy", model="gemini-test")

    brief = new_brief("t1")
    brief.slots["style"].value = "budget"
    candidates = extractor.extract("somewhere sunny by the sea", brief)

    assert created["provider"] == "google"
    assert created["model"] == "gemini-test"
    assert created["temperature"] == 0.0
    assert "somewhere sunny by the sea" in client.prompts[0]
    assert "already_known" in client.prompts[0]
    assert len(candidates) == 1
    assert candidates[0].value.primary == "Lisbon"
    assert candidates[0].value.country_code == "pt"
    assert candidates[0].source == "inferred"


def test_empty_structured_response_yields_nothing(monkeypatch) -> None:
    monkeypatch.setattr("datapizza.clients.factory.ClientFactory.create", lambda **kwargs: FakeClient(None))
    extractor = DatapizzaGeminiCandidateExtractor(api_key="dummy")
    assert extractor.extract("hello", None) == []


def test_draft_to_candidates_drops_invalid_fields() -> None:
    draft = SlotDraft(
        start_date="2027-03-07",
        end_date="2027-03-01",
        adults=2,
        budget_amount=1500,
        budget_currency="eur",
        style="luxury",
        interests=["food"],
        confidence=75,
    )

    candidates = {candidate.slot: candidate for candidate in draft_to_candidates(draft, evidence="msg")}

    assert "date_range" not in candidates
    assert candidates["travelers"].value.adults == 2
    assert candidates["budget"].value.amount == Decimal("1500")
    assert candidates["budget"].value.currency == "EUR"
    assert candidates["style"].value == "luxury"
    assert candidates["preferences"].value.interests == ["food"]
    assert all(candidate.confidence == 75 for candidate in candidates.values())


def test_budget_without_currency_is_not_a_candidate() -> None:
    assert draft_to_candidates(SlotDraft(budget_amount=900)) == []
