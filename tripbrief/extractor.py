"""Entity extraction: one utterance in, typed slot candidates out.

Every slot finding is one of four variants so callers can handle them exhaustively:

- `SingleCandidate`: one value above the confidence threshold.
- `AmbiguousCandidates`: several readings above the ambiguity threshold; ask which.
- `PendingUnit`: the value is usable but a unit is missing (currency, trip length).
- `NoCandidate`: nothing usable for the slot.

`EntityExtractor.extract` returns only the first three; an empty list means
"nothing cleared the threshold, ask again" and is not an error.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
import re
from typing import Annotated, Any, Callable, Literal, Protocol, Union

from pydantic import BaseModel, Field, ValidationError

from tripbrief.contracts import (
    PENDING_CURRENCY,
    BudgetValue,
    Clarification,
    ConstraintSource,
    DateRangeValue,
    DestinationValue,
    OriginValue,
    PreferencesValue,
    SlotName,
    TravelersValue,
    TripBrief,
)
from tripbrief.guardrails import (
    DateGuardrailError,
    duration_span,
    parse_date_expression,
    parse_duration_days,
    reconcile_date_range,
    resolve_weekend_range,
)
from tripbrief.places import Place, PlaceCatalog, PlaceMention


class SingleCandidate(BaseModel):
    kind: Literal["single"] = "single"
    slot: SlotName
    value: Any
    confidence: int = Field(ge=0, le=100)
    source: ConstraintSource = "explicit"
    evidence: str = ""


class AmbiguousCandidates(BaseModel):
    kind: Literal["ambiguous"] = "ambiguous"
    slot: SlotName
    question: str
    options: list[SingleCandidate] = Field(min_length=2)
    labels: list[str] = Field(default_factory=list)


class PendingUnit(BaseModel):
    kind: Literal["pending_unit"] = "pending_unit"
    slot: SlotName
    value: Any
    missing: Literal["currency", "duration"]
    question: str
    confidence: int = Field(ge=0, le=100)
    evidence: str = ""


class NoCandidate(BaseModel):
    kind: Literal["none"] = "none"
    slot: SlotName | None = None
    reason: str = "no_candidate_above_threshold"


ExtractionResult = Annotated[
    Union[SingleCandidate, AmbiguousCandidates, PendingUnit, NoCandidate],
    Field(discriminator="kind"),
]
ReplyKind = Literal["affirm", "deny"]

SLOT_ORDER: tuple[str, ...] = (
    "destination",
    "origin",
    "date_range",
    "travelers",
    "budget",
    "style",
    "preferences",
)


class CandidateExtractor(Protocol):
    def extract(self, utterance: str, brief: TripBrief | None) -> list[SingleCandidate]:
        ...


_AFFIRM_RE = re.compile(
    r"^\s*(yes|yeah|yep|yup|ya|sure|correct|right|ok(?:ay)?|confirm(?:ed)?|sounds good|"
    r"that'?s right|that is right|exactly|perfect|great|absolutely|definitely|go ahead|"
    r"looks good|lock it in|y)\b",
    re.IGNORECASE,
)
_DENY_RE = re.compile(
    r"^\s*(no|nope|nah|wrong|incorrect|not quite|not really|that'?s wrong|that is wrong|cancel|n)\b",
    re.IGNORECASE,
)
_NO_QUALIFIER_RE = re.compile(r"^\s*no\s+[a-z]", re.IGNORECASE)
_ORIGIN_CONTEXT_RE = re.compile(
    r"\b(from|leaving|departing|flying out of|fly out of|out of|live in|living in|based in|home is(?: in)?)\s+(?:the\s+)?$",
    re.IGNORECASE,
)
_DESTINATION_CONTEXT_RE = re.compile(
    r"\b(to|visit|visiting|see|explore|in|go to|going to|trip to|travel to|fly to|heading to|make it)\s+(?:the\s+)?$",
    re.IGNORECASE,
)
_JOINER_RE = re.compile(r"^\s*(,|&|and|then|,\s*and|,\s*then|and then|->|to)\s*$", re.IGNORECASE)

_MONTH = (
    r"(?:jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|aug(?:ust)?|"
    r"sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)"
)
_ORD = r"(?:st|nd|rd|th)?"
_RANGE_SEP = r"\s*(?:to|until|till|through|thru|-|–)\s*"
_ISO_RANGE_RE = re.compile(
    r"(?P<start>\d{4}-\d{2}-\d{2})" + r"\s*(?:to|until|till|through|-|–|and)\s*" + r"(?P<end>\d{4}-\d{2}-\d{2})"
)
_MONTH_FIRST_RANGE_RE = re.compile(
    rf"\b(?P<m1>{_MONTH})\s+(?P<d1>\d{{1,2}}){_ORD}(?:,?\s*(?P<y1>\d{{4}}))?{_RANGE_SEP}"
    rf"(?:(?P<m2>{_MONTH})\s+)?(?P<d2>\d{{1,2}}){_ORD}(?:,?\s*(?P<y2>\d{{4}}))?\b",
    re.IGNORECASE,
)
_DAY_FIRST_RANGE_RE = re.compile(
    rf"\b(?P<d1>\d{{1,2}}){_ORD}(?:\s+(?P<m1>{_MONTH}))?{_RANGE_SEP}"
    rf"(?P<d2>\d{{1,2}}){_ORD}\s+(?P<m2>{_MONTH})(?:,?\s*(?P<y2>\d{{4}}))?\b",
    re.IGNORECASE,
)
_SINGLE_DATE_RE = re.compile(
    rf"\b(?P<lead>from|starting(?: on)?|start(?:ing)? on|on|leaving(?: on)?|departing(?: on)?|arriving(?: on)?|begin(?:ning)?(?: on)?)\s+"
    rf"(?P<when>{_MONTH}\s+\d{{1,2}}{_ORD}(?:,?\s*\d{{4}})?|\d{{1,2}}{_ORD}\s+{_MONTH}(?:,?\s*\d{{4}})?|\d{{4}}-\d{{2}}-\d{{2}})",
    re.IGNORECASE,
)
_BARE_ISO_RE = re.compile(r"\b\d{4}-\d{2}-\d{2}\b")
_IN_MONTH_RE = re.compile(rf"\bin\s+(?P<month>{_MONTH})\b", re.IGNORECASE)
_WEEKEND_RE = re.compile(r"\b(next|this)\s+weekend\b", re.IGNORECASE)

_NUMBER_WORDS = {
    "one": 1,
    "two": 2,
    "three": 3,
    "four": 4,
    "five": 5,
    "six": 6,
    "seven": 7,
    "eight": 8,
    "nine": 9,
    "ten": 10,
}
_COUNT = r"(?P<n>\d{1,2}|one|two|three|four|five|six|seven|eight|nine|ten)"
_ADULTS_RE = re.compile(
    rf"\b{_COUNT}\s+(?:adults?|people|persons|travell?ers|guests|of us|pax|grown[- ]ups)\b",
    re.IGNORECASE,
)
_PARTY_RE = re.compile(rf"\b(?:party|group) of\s+{_COUNT}\b", re.IGNORECASE)
_CHILDREN_RE = re.compile(rf"\b{_COUNT}\s+(?:kids|children|child|little ones)\b", re.IGNORECASE)
_GROUP_PATTERNS: tuple[tuple[re.Pattern[str], str, int], ...] = (
    (re.compile(r"\b(solo|alone|by myself|on my own|just me)\b", re.IGNORECASE), "solo", 1),
    (
        re.compile(
            r"\b(couple|my (?:partner|wife|husband|girlfriend|boyfriend|fianc[eé]e?)|honeymoon|the two of us)\b",
            re.IGNORECASE,
        ),
        "couple",
        2,
    ),
    (re.compile(r"\b(family|my kids|the kids|with children)\b", re.IGNORECASE), "family", 2),
    (re.compile(r"\b(friends|mates|buddies)\b", re.IGNORECASE), "friends", 3),
    (re.compile(r"\b(business|work trip|conference)\b", re.IGNORECASE), "business", 1),
)

_CURRENCY_WORDS = {
    "£": "GBP",
    "gbp": "GBP",
    "pound": "GBP",
    "pounds": "GBP",
    "quid": "GBP",
    "sterling": "GBP",
    "$": "USD",
    "usd": "USD",
    "dollar": "USD",
    "dollars": "USD",
    "bucks": "USD",
    "€": "EUR",
    "eur": "EUR",
    "euro": "EUR",
    "euros": "EUR",
    "¥": "JPY",
    "jpy": "JPY",
    "yen": "JPY",
    "chf": "CHF",
    "francs": "CHF",
    "aud": "AUD",
    "cad": "CAD",
}
_AMOUNT = r"(?P<amt>\d[\d,]*(?:\.\d+)?)(?P<k>\s?[kK])?"
_CUR_WORD = r"(?P<cur>gbp|usd|eur|jpy|chf|aud|cad|pounds?|quid|sterling|dollars?|bucks|euros?|yen|francs)"
_SYMBOL_AMOUNT_RE = re.compile(rf"(?P<sym>[£$€¥])\s?{_AMOUNT}(?![\w])")
_AMOUNT_WORD_RE = re.compile(rf"{_AMOUNT}\s*{_CUR_WORD}\b", re.IGNORECASE)
_CODE_AMOUNT_RE = re.compile(rf"\b(?P<cur>gbp|usd|eur|jpy|chf|aud|cad)\s?{_AMOUNT}(?![\w])", re.IGNORECASE)
_BARE_AMOUNT_RE = re.compile(rf"(?<![\w.£$€¥:/-]){_AMOUNT}(?![\w%:/-])")
_CURRENCY_ONLY_RE = re.compile(rf"(?P<sym>[£$€¥])|\b{_CUR_WORD}\b", re.IGNORECASE)
_PER_NIGHT_RE = re.compile(r"^\s*(?:per|a|/)\s*night", re.IGNORECASE)
_PER_PERSON_RE = re.compile(r"\b(per person|each|pp|a head|per head)\b", re.IGNORECASE)
_BUDGET_CONTEXT_RE = re.compile(
    r"\b(budget|spend|spending|afford|up to|max(?:imum)?|around|about|total|roughly|cap)\b",
    re.IGNORECASE,
)

_STYLE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(
            r"\b(on a (?:tight |shoestring |low |small )?budget|budget[- ](?:trip|travel|style|friendly|options?|hotels?|stays?)|"
            r"cheap(?:est|ly)?|backpack(?:ing|er)?|low[- ]cost|shoestring)\b",
            re.IGNORECASE,
        ),
        "budget",
    ),
    (
        re.compile(r"\b(luxur(?:y|ious)|premium|five[- ]star|5[- ]star|high[- ]end|upscale|splurge)\b", re.IGNORECASE),
        "luxury",
    ),
    (re.compile(r"\b(mid[- ]?range|moderate(?:ly)?|comfortable|middle of the road)\b", re.IGNORECASE), "mid-range"),
    (re.compile(r"\b(mix(?:ed)?|a bit of everything|combination)\b", re.IGNORECASE), "mixed"),
)
_ACCOMMODATION_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\bhostels?\b", re.IGNORECASE), "hostel"),
    (re.compile(r"\b(?:apartments?|aparthotel|serviced apartment)\b", re.IGNORECASE), "apartment"),
    (re.compile(r"\b(?:rental|airbnb|vrbo)\b", re.IGNORECASE), "rental"),
    (re.compile(r"\bvillas?\b", re.IGNORECASE), "villa"),
    (re.compile(r"\b(?:cabin|lodge)s?\b", re.IGNORECASE), "cabin"),
    (re.compile(r"\bryokan\b", re.IGNORECASE), "ryokan"),
    (re.compile(r"\b(?:b&b|bed and breakfast|guesthouse)\b", re.IGNORECASE), "guesthouse"),
    (re.compile(r"\bhotels?\b", re.IGNORECASE), "hotel"),
)
_DIETARY_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:vegetarian|veggie)\b", re.IGNORECASE), "vegetarian"),
    (re.compile(r"\bvegan\b", re.IGNORECASE), "vegan"),
    (re.compile(r"\bhalal\b", re.IGNORECASE), "halal"),
    (re.compile(r"\bkosher\b", re.IGNORECASE), "kosher"),
    (re.compile(r"\b(?:gluten[- ]free|coeliac|celiac)\b", re.IGNORECASE), "gluten_free"),
    (re.compile(r"\blactose[- ]free\b", re.IGNORECASE), "lactose_free"),
    (re.compile(r"\b(?:nut[- ]free|nut allergy)\b", re.IGNORECASE), "nut_free"),
)
_INTEREST_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:museums?|culture|cultural|galleries|gallery)\b", re.IGNORECASE), "culture"),
    (re.compile(r"\b(?:histor(?:y|ic|ical)|ruins|ancient|castles?)\b", re.IGNORECASE), "history"),
    (re.compile(r"\b(?:art|paintings?|architecture)\b", re.IGNORECASE), "art"),
    (re.compile(r"\b(?:food|foodie|cuisine|restaurants?|eating|wine|dining)\b", re.IGNORECASE), "food"),
    (re.compile(r"\b(?:nightlife|bars|clubs|clubbing|parties)\b", re.IGNORECASE), "nightlife"),
    (re.compile(r"\b(?:shopping|markets?|boutiques?)\b", re.IGNORECASE), "shopping"),
    (re.compile(r"\b(?:nature|hiking|hikes?|outdoors?|parks|mountains?|wildlife)\b", re.IGNORECASE), "nature"),
    (re.compile(r"\b(?:beach(?:es)?|swimming|seaside|coast)\b", re.IGNORECASE), "beach"),
    (re.compile(r"\b(?:scenic|views?|sightseeing|viewpoints?)\b", re.IGNORECASE), "scenic"),
    (re.compile(r"\b(?:romantic|romance|honeymoon)\b", re.IGNORECASE), "romance"),
    (re.compile(r"\b(?:spa|wellness|yoga|relax(?:ing|ation)?|thermal baths?)\b", re.IGNORECASE), "wellness"),
    (re.compile(r"\b(?:adventure|kayak\w*|climbing|diving|snorkel\w*)\b", re.IGNORECASE), "adventure"),
    (re.compile(r"\b(?:kids|children|family[- ]friendly|theme parks?)\b", re.IGNORECASE), "family"),
)
_ORDINALS: tuple[tuple[re.Pattern[str], int], ...] = (
    (re.compile(r"\b(first|1st|former|the 1|option 1|number 1|one)\b|^\s*1\s*$", re.IGNORECASE), 0),
    (re.compile(r"\b(second|2nd|latter|the 2|option 2|number 2|two)\b|^\s*2\s*$", re.IGNORECASE), 1),
    (re.compile(r"\b(third|3rd|the 3|option 3|number 3|three)\b|^\s*3\s*$", re.IGNORECASE), 2),
)

_WORDLIKE_QUALIFIERS = {"or", "me", "ma", "al", "in", "ok", "hi"}

_MONTH_NUMBERS = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}


def classify_reply(utterance: str, *, has_content: bool = False) -> ReplyKind | None:
    """Affirmative / negative response pattern match on the start of the utterance.

    A leading "no" that qualifies a noun ("no kids, two adults") is not a denial
    when the rest of the utterance carries slot content.
    """
    if _DENY_RE.match(utterance):
        if has_content and _NO_QUALIFIER_RE.match(utterance):
            return None
        return "deny"
    if _AFFIRM_RE.match(utterance):
        return "affirm"
    return None


class _Spans:
    """Character spans already claimed by an earlier pattern."""

    def __init__(self) -> None:
        self._spans: list[tuple[int, int]] = []

    def claim(self, start: int, end: int) -> None:
        self._spans.append((start, end))

    def free(self, start: int, end: int) -> bool:
        return all(end <= s or start >= e for s, e in self._spans)


class EntityExtractor:
    """Rule-based extractor over a gazetteer, with an optional model-backed fallback."""

    def __init__(
        self,
        catalog: PlaceCatalog | None = None,
        *,
        min_confidence: int = 60,
        ambiguity_confidence: int = 40,
        fallback: CandidateExtractor | None = None,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ambiguity_confidence > min_confidence:
            raise ValueError("ambiguity_confidence must be <= min_confidence")
        self.catalog = catalog or PlaceCatalog()
        self.min_confidence = min_confidence
        self.ambiguity_confidence = ambiguity_confidence
        self._fallback = fallback
        self._timezone_name = timezone_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def extract(
        self,
        utterance: str,
        brief: TripBrief | None = None,
        *,
        expected_slot: str | None = None,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        text = " ".join(utterance.split())
        if not text:
            return []

        spans = _Spans()
        results: list[SingleCandidate | AmbiguousCandidates | PendingUnit] = []
        results.extend(self._places(text, brief, expected_slot, spans))
        results.extend(self._dates(text, brief, expected_slot, spans))
        results.extend(self._travelers(text, expected_slot, spans))
        results.extend(self._budget(text, brief, expected_slot, spans))
        results.extend(self._style(text, expected_slot))
        results.extend(self._preferences(text, brief))

        accepted = [item for item in results if self._clears_threshold(item)]
        if not accepted and self._fallback is not None:
            accepted = self._from_fallback(text, brief)
        accepted.sort(key=lambda item: SLOT_ORDER.index(item.slot))
        return accepted

    def extract_for_slot(
        self,
        utterance: str,
        slot: SlotName,
        brief: TripBrief | None = None,
    ) -> SingleCandidate | AmbiguousCandidates | PendingUnit | NoCandidate:
        for item in self.extract(utterance, brief, expected_slot=slot):
            if item.slot == slot:
                return item
        return NoCandidate(slot=slot)

    def resolve_clarification(
        self,
        utterance: str,
        clarification: Clarification,
    ) -> SingleCandidate | NoCandidate:
        """Pick one option of an earlier ambiguity by ordinal or by naming its qualifier."""
        for option in clarification.options:
            qualifiers = [part.strip() for part in option.label.split(",")[1:]]
            if not qualifiers:
                qualifiers = list(self._qualifiers_of(option.value))
            if any(q and _names_qualifier(utterance, q) for q in qualifiers):
                return self._chosen(clarification, option.value, utterance)
        for pattern, index in _ORDINALS:
            if pattern.search(utterance) and index < len(clarification.options):
                return self._chosen(clarification, clarification.options[index].value, utterance)
        return NoCandidate(slot=clarification.slot, reason="clarification_unresolved")

    def _qualifiers_of(self, value: Any) -> tuple[str, ...]:
        if isinstance(value, BaseModel):
            value = value.model_dump()
        if not isinstance(value, dict):
            return ()
        name = value.get("primary") or value.get("name")
        code = value.get("country_code")
        names = value.get("detected_cities") or [name]
        qualifiers: list[str] = []
        for city in names:
            place = self.catalog.resolve(city, code) if city else None
            if place is not None and (code is None or place.country_code == code):
                qualifiers.extend(place.qualifiers)
        return tuple(qualifiers)

    def _chosen(self, clarification: Clarification, value: Any, utterance: str) -> SingleCandidate:
        return SingleCandidate(
            slot=clarification.slot,
            value=value,
            confidence=95,
            source="explicit",
            evidence=utterance,
        )

    def _clears_threshold(self, item: SingleCandidate | AmbiguousCandidates | PendingUnit) -> bool:
        if isinstance(item, AmbiguousCandidates):
            return True
        return item.confidence >= self.min_confidence

    def _from_fallback(
        self,
        text: str,
        brief: TripBrief | None,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        accepted: list[SingleCandidate | AmbiguousCandidates | PendingUnit] = []
        for candidate in self._fallback.extract(text, brief) if self._fallback else []:
            capped = candidate.model_copy(
                update={"confidence": min(candidate.confidence, 70), "source": "inferred"}
            )
            if capped.confidence >= self.min_confidence:
                accepted.append(capped)
        return accepted

    # -- places -----------------------------------------------------------------

    def _places(
        self,
        text: str,
        brief: TripBrief | None,
        expected_slot: str | None,
        spans: _Spans,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        mentions = self.catalog.find_mentions(text)
        if not mentions:
            return []

        city_mentions = [m for m in mentions if m.places]
        resolved: dict[int, list[tuple[Place, int]]] = {}
        for mention in city_mentions:
            resolved[mention.start] = self._resolve_city(mention, text, brief)
        qualified_codes = {
            options[0][0].country_code for options in resolved.values() if len(options) == 1
        }
        country_mentions = [
            m
            for m in mentions
            if m.country is not None
            and m.country.code not in qualified_codes
            and not _is_qualifier_of(m, city_mentions, text)
        ]

        ordered = sorted([*city_mentions, *country_mentions], key=lambda m: m.start)
        # Once a destination is on the brief, a lone place with no cue is the starting point.
        bare_origin = len(ordered) == 1 and brief is not None and brief.slot("destination").status in {"filled", "confirmed"}
        origin_mentions: list[PlaceMention] = []
        destination_mentions: list[PlaceMention] = []
        for mention in ordered:
            spans.claim(mention.start, mention.end)
            before = text[: mention.start]
            if _ORIGIN_CONTEXT_RE.search(before):
                origin_mentions.append(mention)
            elif _DESTINATION_CONTEXT_RE.search(before):
                destination_mentions.append(mention)
            elif (expected_slot == "origin" or bare_origin) and not destination_mentions:
                origin_mentions.append(mention)
            else:
                destination_mentions.append(mention)

        results: list[SingleCandidate | AmbiguousCandidates | PendingUnit] = []
        destination = self._destination_candidate(text, destination_mentions, resolved)
        if destination is not None:
            results.append(destination)
        if origin_mentions:
            origin = self._origin_candidate(origin_mentions[0], resolved)
            if origin is not None:
                results.append(origin)
        return results

    def _resolve_city(
        self,
        mention: PlaceMention,
        text: str,
        brief: TripBrief | None,
    ) -> list[tuple[Place, int]]:
        places = mention.places
        tail = text[mention.end : mention.end + 40]
        for place in places:
            for qualifier in place.qualifiers:
                if _names_qualifier(tail, qualifier, anchored=True):
                    return [(place, 95)]

        contenders = [place for place in places if place.prior >= self.ambiguity_confidence]
        if len(contenders) >= 2:
            known_country = _brief_country(brief)
            for place in contenders:
                if known_country and place.country_code == known_country:
                    return [(place, 85)]
            return [(place, place.prior) for place in contenders]

        best = places[0]
        before = text[: mention.start]
        boost = 3 if _DESTINATION_CONTEXT_RE.search(before) or _ORIGIN_CONTEXT_RE.search(before) else 0
        return [(best, min(99, best.prior + boost))]

    def _destination_candidate(
        self,
        text: str,
        mentions: list[PlaceMention],
        resolved: dict[int, list[tuple[Place, int]]],
    ) -> SingleCandidate | AmbiguousCandidates | None:
        if not mentions:
            return None

        cities = [m for m in mentions if m.places]
        if not cities:
            country = mentions[0].country
            if country is None:
                return None
            return SingleCandidate(
                slot="destination",
                value=DestinationValue(type="country", primary=country.name, country_code=country.code),
                confidence=85,
                evidence=mentions[0].text,
            )

        joined = [cities[0]]
        for previous, current in zip(cities, cities[1:]):
            if _JOINER_RE.match(text[previous.end : current.start]):
                joined.append(current)
            else:
                break

        ambiguous_index = next(
            (i for i, m in enumerate(joined) if len(resolved[m.start]) > 1),
            None,
        )
        if ambiguous_index is not None:
            mention = joined[ambiguous_index]
            options: list[SingleCandidate] = []
            labels: list[str] = []
            for place, confidence in resolved[mention.start]:
                chosen = [
                    place if i == ambiguous_index else resolved[m.start][0][0]
                    for i, m in enumerate(joined)
                ]
                options.append(
                    SingleCandidate(
                        slot="destination",
                        value=_destination_value(chosen),
                        confidence=confidence,
                        evidence=mention.text,
                    )
                )
                labels.append(place.label)
            return AmbiguousCandidates(
                slot="destination",
                question=f"Which {mention.text} do you mean: {' or '.join(labels)}?",
                options=options,
                labels=labels,
            )

        chosen_places = _unique_places([resolved[m.start][0][0] for m in joined])
        confidence = min(resolved[m.start][0][1] for m in joined)
        if len(joined) < len(cities):
            confidence -= 10
        return SingleCandidate(
            slot="destination",
            value=_destination_value(chosen_places),
            confidence=max(0, confidence),
            evidence=text[joined[0].start : joined[-1].end],
        )

    def _origin_candidate(
        self,
        mention: PlaceMention,
        resolved: dict[int, list[tuple[Place, int]]],
    ) -> SingleCandidate | AmbiguousCandidates | None:
        if mention.country is not None:
            return SingleCandidate(
                slot="origin",
                value=OriginValue(name=mention.country.name, country_code=mention.country.code),
                confidence=80,
                evidence=mention.text,
            )
        options = resolved[mention.start]
        if len(options) > 1:
            labels = [place.label for place, _ in options]
            return AmbiguousCandidates(
                slot="origin",
                question=f"Which {mention.text} are you leaving from: {' or '.join(labels)}?",
                options=[
                    SingleCandidate(
                        slot="origin",
                        value=OriginValue(name=place.name, country_code=place.country_code),
                        confidence=confidence,
                        evidence=mention.text,
                    )
                    for place, confidence in options
                ],
                labels=labels,
            )
        place, confidence = options[0]
        return SingleCandidate(
            slot="origin",
            value=OriginValue(name=place.name, country_code=place.country_code),
            confidence=confidence,
            evidence=mention.text,
        )

    # -- dates ------------------------------------------------------------------

    def _dates(
        self,
        text: str,
        brief: TripBrief | None,
        expected_slot: str | None,
        spans: _Spans,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        now_ts = self._clock()
        tz = self._timezone_name
        start: date | None = None
        end: date | None = None
        confidence = 0
        evidence: list[str] = []
        source: ConstraintSource = "explicit"

        try:
            iso = _ISO_RANGE_RE.search(text)
            month_first = _MONTH_FIRST_RANGE_RE.search(text)
            day_first = _DAY_FIRST_RANGE_RE.search(text)
            weekend = _WEEKEND_RE.search(text)
            single = _SINGLE_DATE_RE.search(text)
            if iso:
                start = date.fromisoformat(iso.group("start"))
                end = date.fromisoformat(iso.group("end"))
                confidence = 95
                spans.claim(*iso.span())
                evidence.append(iso.group(0))
            elif month_first:
                start, end = self._month_range(month_first, now_ts, tz)
                confidence = 92
                spans.claim(*month_first.span())
                evidence.append(month_first.group(0))
            elif day_first:
                start, end = self._month_range(day_first, now_ts, tz)
                confidence = 92
                spans.claim(*day_first.span())
                evidence.append(day_first.group(0))
            elif weekend:
                start, end = resolve_weekend_range(weekend.group(0), now_ts, tz)
                confidence = 90
                spans.claim(*weekend.span())
                evidence.append(weekend.group(0))
            elif single:
                start = parse_date_expression(single.group("when"), now_ts, tz)
                confidence = 90
                spans.claim(*single.span("when"))
                evidence.append(single.group(0))
            else:
                bare = _BARE_ISO_RE.search(text)
                in_month = _IN_MONTH_RE.search(text)
                if bare:
                    start = date.fromisoformat(bare.group(0))
                    confidence = 85
                    spans.claim(*bare.span())
                    evidence.append(bare.group(0))
                elif in_month:
                    start = parse_date_expression(f"1 {in_month.group('month')}", now_ts, tz)
                    confidence = 65
                    source = "inferred"
                    evidence.append(in_month.group(0))
        except (DateGuardrailError, ValueError):
            start = end = None
            confidence = 0

        duration: int | None = None
        span = duration_span(text)
        if span is not None and spans.free(*span):
            duration = parse_duration_days(text)
            if duration is not None:
                spans.claim(*span)
                evidence.append(text[span[0] : span[1]])
                confidence = max(confidence, 85) if start is None else confidence
        elif expected_slot == "date_range" and start is None and end is None:
            bare_number = re.fullmatch(r"\s*(\d{1,2})\s*", text)
            if bare_number:
                duration = int(bare_number.group(1))
                spans.claim(*bare_number.span(1))
                evidence.append(bare_number.group(1))
                confidence = 80

        if start is None and end is None and duration is None:
            return []

        previous, previous_start = _previous_dates(brief)
        if start is not None and end is None and duration is None and (previous is None or previous.duration is None):
            return [
                PendingUnit(
                    slot="date_range",
                    value={"start": start.isoformat()},
                    missing="duration",
                    question="How many days will the trip last?",
                    confidence=confidence,
                    evidence=" ".join(evidence),
                )
            ]
        if start is None and end is None and previous is None and previous_start is not None:
            start = previous_start
        try:
            value = reconcile_date_range(start=start, end=end, duration=duration, previous=previous)
        except DateGuardrailError:
            return []
        return [
            SingleCandidate(
                slot="date_range",
                value=value,
                confidence=confidence,
                source=source,
                evidence=" ".join(evidence),
            )
        ]

    def _month_range(self, match: re.Match[str], now_ts: datetime, tz: str) -> tuple[date, date]:
        groups = match.groupdict()
        month_1 = groups.get("m1") or groups.get("m2")
        month_2 = groups.get("m2") or month_1
        year_1 = groups.get("y1") or groups.get("y2")
        start_text = f"{match.group('d1')} {month_1}" + (f" {year_1}" if year_1 else "")
        start = parse_date_expression(start_text, now_ts, tz)
        month_number = _MONTH_NUMBERS[month_2[:3].lower()]
        year_2 = int(groups["y2"]) if groups.get("y2") else start.year
        end = date(year_2, month_number, int(match.group("d2")))
        if end < start and not groups.get("y2"):
            end = date(end.year + 1, end.month, end.day)
        return start, end

    # -- travelers --------------------------------------------------------------

    def _travelers(
        self,
        text: str,
        expected_slot: str | None,
        spans: _Spans,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        adults: int | None = None
        children = 0
        group_type: str | None = None
        confidence = 0
        source: ConstraintSource = "explicit"
        evidence: list[str] = []

        for pattern in (_ADULTS_RE, _PARTY_RE):
            match = pattern.search(text)
            if match and spans.free(*match.span()):
                adults = _to_int(match.group("n"))
                confidence = 90
                spans.claim(*match.span())
                evidence.append(match.group(0))
                break

        kids = _CHILDREN_RE.search(text)
        if kids and spans.free(*kids.span()):
            children = _to_int(kids.group("n"))
            spans.claim(*kids.span())
            evidence.append(kids.group(0))
            group_type = "family"

        for pattern, kind, default_adults in _GROUP_PATTERNS:
            match = pattern.search(text)
            if match:
                group_type = group_type or kind
                if adults is None:
                    adults = default_adults
                    confidence = max(confidence, 80 if kind in {"solo", "couple"} else 70)
                    source = "inferred" if kind not in {"solo"} else "explicit"
                evidence.append(match.group(0))
                break

        if adults is None and expected_slot == "travelers":
            bare = re.fullmatch(r"\s*(?:just\s+)?(\d{1,2}|one|two|three|four|five|six|seven|eight|nine|ten)\s*", text, re.IGNORECASE)
            if bare:
                adults = _to_int(bare.group(1))
                confidence = 85
                spans.claim(*bare.span(1))
                evidence.append(bare.group(1))

        if adults is None or adults < 1:
            return []
        if group_type is None:
            group_type = "solo" if adults == 1 else "couple" if adults == 2 else "group"
        try:
            value = TravelersValue(adults=adults, children=children, group_type=group_type)
        except ValidationError:
            return []
        return [
            SingleCandidate(
                slot="travelers",
                value=value,
                confidence=confidence,
                source=source,
                evidence=" ".join(evidence),
            )
        ]

    # -- budget -----------------------------------------------------------------

    def _budget(
        self,
        text: str,
        brief: TripBrief | None,
        expected_slot: str | None,
        spans: _Spans,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        scope = "per_person" if _PER_PERSON_RE.search(text) else "total"
        existing = _existing_budget(brief)

        for pattern in (_SYMBOL_AMOUNT_RE, _CODE_AMOUNT_RE, _AMOUNT_WORD_RE):
            for match in pattern.finditer(text):
                if not spans.free(*match.span()) or _PER_NIGHT_RE.match(text[match.end() :]):
                    continue
                amount = _to_amount(match.group("amt"), match.group("k"))
                marker = (match.groupdict().get("sym") or match.group("cur")).lower()
                if amount is None:
                    continue
                spans.claim(*match.span())
                return [
                    SingleCandidate(
                        slot="budget",
                        value=BudgetValue(amount=amount, currency=_CURRENCY_WORDS[marker], scope=scope),
                        confidence=95,
                        evidence=match.group(0),
                    )
                ]

        if existing is not None and existing.currency_pending:
            currency = _CURRENCY_ONLY_RE.search(text)
            if currency:
                marker = (currency.group("sym") or currency.group("cur")).lower()
                return [
                    SingleCandidate(
                        slot="budget",
                        value=BudgetValue(
                            amount=existing.amount,
                            currency=_CURRENCY_WORDS[marker],
                            scope=existing.scope if scope == "total" else scope,
                        ),
                        confidence=95,
                        evidence=currency.group(0),
                    )
                ]

        for match in _BARE_AMOUNT_RE.finditer(text):
            if not spans.free(*match.span()) or _PER_NIGHT_RE.match(text[match.end() :]):
                continue
            amount = _to_amount(match.group("amt"), match.group("k"))
            if amount is None:
                continue
            whole_message = text.strip() == match.group(0).strip()
            budget_context = bool(_BUDGET_CONTEXT_RE.search(text)) or expected_slot == "budget"
            if not budget_context and not (whole_message and amount >= 50):
                continue
            spans.claim(*match.span())
            if existing is not None and not existing.currency_pending:
                return [
                    SingleCandidate(
                        slot="budget",
                        value=BudgetValue(amount=amount, currency=existing.currency, scope=scope),
                        confidence=85,
                        source="inferred",
                        evidence=match.group(0),
                    )
                ]
            return [
                PendingUnit(
                    slot="budget",
                    value=BudgetValue(amount=amount, currency=PENDING_CURRENCY, scope=scope),
                    missing="currency",
                    question=f"Which currency is that {_format_amount(amount)} in?",
                    confidence=90,
                    evidence=match.group(0),
                )
            ]
        return []

    # -- style & preferences ----------------------------------------------------

    def _style(
        self,
        text: str,
        expected_slot: str | None,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        if expected_slot == "style":
            bare = text.strip().lower().rstrip(".!")
            direct = {"budget": "budget", "mid-range": "mid-range", "midrange": "mid-range", "luxury": "luxury", "mixed": "mixed"}
            if bare in direct:
                return [SingleCandidate(slot="style", value=direct[bare], confidence=90, evidence=text)]
        for pattern, style in _STYLE_PATTERNS:
            match = pattern.search(text)
            if match:
                return [SingleCandidate(slot="style", value=style, confidence=85, evidence=match.group(0))]
        return []

    def _preferences(
        self,
        text: str,
        brief: TripBrief | None,
    ) -> list[SingleCandidate | AmbiguousCandidates | PendingUnit]:
        accommodation = next(
            (kind for pattern, kind in _ACCOMMODATION_PATTERNS if pattern.search(text)),
            None,
        )
        dietary = [tag for pattern, tag in _DIETARY_PATTERNS if pattern.search(text)]
        interests = [tag for pattern, tag in _INTEREST_PATTERNS if pattern.search(text)]
        if accommodation is None and not dietary and not interests:
            return []

        current = _existing_preferences(brief)
        merged = PreferencesValue(
            accommodation_type=accommodation or (current.accommodation_type if current else None),
            dietary=_merge_tags(current.dietary if current else [], dietary),
            interests=_merge_tags(current.interests if current else [], interests),
        )
        if current is not None and merged == current:
            return []
        return [SingleCandidate(slot="preferences", value=merged, confidence=80, evidence=text)]


def _destination_value(places: list[Place]) -> DestinationValue:
    if len(places) == 1:
        place = places[0]
        return DestinationValue(type="city", primary=place.name, country_code=place.country_code)
    codes = {place.country_code for place in places}
    return DestinationValue(
        type="multi-city",
        primary=places[0].name,
        country_code=places[0].country_code if len(codes) == 1 else None,
        detected_cities=[place.name for place in places],
    )


def _unique_places(places: list[Place]) -> list[Place]:
    seen: set[tuple[str, str]] = set()
    unique: list[Place] = []
    for place in places:
        key = (place.name, place.country_code)
        if key in seen:
            continue
        seen.add(key)
        unique.append(place)
    return unique


def _names_qualifier(text: str, qualifier: str, *, anchored: bool = False) -> bool:
    # State codes that are also English words ("OR", "ME") only count in capitals.
    flags = 0 if qualifier.lower() in _WORDLIKE_QUALIFIERS else re.IGNORECASE
    if anchored:
        return re.match(rf"^\s*,?\s*(?:in\s+)?{re.escape(qualifier)}\b", text, flags) is not None
    return re.search(rf"\b{re.escape(qualifier)}\b", text, flags) is not None


def _is_qualifier_of(country_mention: PlaceMention, city_mentions: list[PlaceMention], text: str) -> bool:
    for city in city_mentions:
        between = text[city.end : country_mention.start]
        if country_mention.start > city.end and re.fullmatch(r"\s*,?\s*(?:in\s+)?", between):
            return True
    return False


def _brief_country(brief: TripBrief | None) -> str | None:
    if brief is None:
        return None
    value = brief.slot("destination").value
    if isinstance(value, dict):
        return value.get("country_code")
    if isinstance(value, DestinationValue):
        return value.country_code
    return None


def _previous_dates(brief: TripBrief | None) -> tuple[DateRangeValue | None, date | None]:
    if brief is None:
        return None, None
    value = brief.slot("date_range").value
    if isinstance(value, DateRangeValue):
        return value, value.start
    if isinstance(value, dict):
        try:
            return DateRangeValue.model_validate(value), None
        except ValidationError:
            raw_start = value.get("start")
            return None, date.fromisoformat(raw_start) if raw_start else None
    return None, None


def _existing_budget(brief: TripBrief | None) -> BudgetValue | None:
    if brief is None:
        return None
    value = brief.slot("budget").value
    if isinstance(value, BudgetValue):
        return value
    if isinstance(value, dict):
        try:
            return BudgetValue.model_validate(value)
        except ValidationError:
            return None
    return None


def _existing_preferences(brief: TripBrief | None) -> PreferencesValue | None:
    if brief is None:
        return None
    value = brief.slot("preferences").value
    if isinstance(value, PreferencesValue):
        return value
    if isinstance(value, dict):
        return PreferencesValue.model_validate(value)
    return None


def _merge_tags(current: list[str], new: list[str]) -> list[str]:
    return list(dict.fromkeys([*current, *new]))


def _to_int(raw: str) -> int:
    lowered = raw.lower()
    return int(lowered) if lowered.isdigit() else _NUMBER_WORDS[lowered]


def _to_amount(raw: str, thousands: str | None) -> Decimal | None:
    try:
        amount = Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None
    if thousands:
        amount *= 1000
    if amount <= 0:
        return None
    return amount


def _format_amount(amount: Decimal) -> str:
    if amount == amount.to_integral_value():
        return str(int(amount))
    return f"{amount:.2f}"
