"""Offline gazetteer of cities and countries plus great-circle distance helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
import math
import re


_EARTH_RADIUS_KM = 6371.0
# Place names that are also everyday words only count when capitalised.
_COMMON_WORDS = {"nice", "reading", "split"}


@dataclass(frozen=True)
class Place:
    name: str
    country_code: str
    lat: float
    lon: float
    prior: int
    highlights: tuple[str, ...] = ()
    qualifiers: tuple[str, ...] = ()
    aliases: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        if self.qualifiers:
            return f"{self.name}, {self.qualifiers[0]}"
        return self.name


@dataclass(frozen=True)
class Country:
    name: str
    code: str
    gateway_cities: tuple[str, ...]
    aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class PlaceMention:
    text: str
    start: int
    end: int
    places: tuple[Place, ...] = ()
    country: Country | None = None


_CITIES: tuple[Place, ...] = (
    Place("Rome", "it", 41.9028, 12.4964, 95, ("culture", "food", "history"), ("Italy",), ("roma",)),
    Place("Florence", "it", 43.7696, 11.2558, 90, ("culture", "food", "art"), ("Italy",), ("firenze",)),
    Place("Venice", "it", 45.4408, 12.3155, 90, ("culture", "scenic", "romance"), ("Italy",), ("venezia",)),
    Place("Milan", "it", 45.4642, 9.1900, 88, ("shopping", "culture", "food"), ("Italy",), ("milano",)),
    Place("Naples", "it", 40.8518, 14.2681, 85, ("food", "culture", "history"), ("Italy",), ("napoli",)),
    Place("Amalfi", "it", 40.6340, 14.6027, 75, ("beach", "scenic", "food"), ("Italy",)),
    Place("Paris", "fr", 48.8566, 2.3522, 95, ("culture", "food", "shopping", "romance"), ("France",)),
    Place("Nice", "fr", 43.7102, 7.2620, 82, ("beach", "scenic", "food"), ("France",)),
    Place("Lyon", "fr", 45.7640, 4.8357, 80, ("food", "culture"), ("France",)),
    Place("London", "gb", 51.5074, -0.1278, 95, ("culture", "nightlife", "shopping", "history"), ("UK", "England", "United Kingdom")),
    Place("Edinburgh", "gb", 55.9533, -3.1883, 85, ("culture", "history", "scenic"), ("UK", "Scotland")),
    Place("Manchester", "gb", 53.4808, -2.2426, 80, ("nightlife", "shopping", "culture"), ("UK", "England")),
    Place("Cambridge", "gb", 52.2053, 0.1218, 70, ("culture", "history", "scenic"), ("UK", "England")),
    Place("Birmingham", "gb", 52.4862, -1.8904, 70, ("shopping", "culture"), ("UK", "England")),
    Place("Barcelona", "es", 41.3874, 2.1686, 93, ("beach", "culture", "nightlife", "food"), ("Spain",)),
    Place("Madrid", "es", 40.4168, -3.7038, 90, ("culture", "food", "nightlife"), ("Spain",)),
    Place("Seville", "es", 37.3891, -5.9845, 84, ("culture", "history", "food"), ("Spain",), ("sevilla",)),
    Place("Valencia", "es", 39.4699, -0.3763, 75, ("beach", "food", "culture"), ("Spain",)),
    Place("Lisbon", "pt", 38.7223, -9.1393, 90, ("culture", "food", "scenic"), ("Portugal",), ("lisboa",)),
    Place("Porto", "pt", 41.1579, -8.6291, 85, ("food", "scenic", "culture"), ("Portugal",)),
    Place("Amsterdam", "nl", 52.3676, 4.9041, 92, ("culture", "nightlife", "scenic"), ("Netherlands",)),
    Place("Berlin", "de", 52.5200, 13.4050, 92, ("culture", "nightlife", "history"), ("Germany",)),
    Place("Munich", "de", 48.1351, 11.5820, 86, ("culture", "food", "nature"), ("Germany",), ("munchen", "münchen")),
    Place("Prague", "cz", 50.0755, 14.4378, 90, ("culture", "history", "nightlife"), ("Czech Republic",), ("praha",)),
    Place("Vienna", "at", 48.2082, 16.3738, 90, ("culture", "history", "food"), ("Austria",), ("wien",)),
    Place("Budapest", "hu", 47.4979, 19.0402, 88, ("culture", "wellness", "nightlife"), ("Hungary",)),
    Place("Athens", "gr", 37.9838, 23.7275, 90, ("history", "culture", "food"), ("Greece",)),
    Place("Dublin", "ie", 53.3498, -6.2603, 88, ("nightlife", "culture", "history"), ("Ireland",)),
    Place("Tokyo", "jp", 35.6762, 139.6503, 95, ("culture", "food", "shopping", "nightlife"), ("Japan",)),
    Place("Kyoto", "jp", 35.0116, 135.7681, 90, ("culture", "history", "scenic"), ("Japan",)),
    Place("Osaka", "jp", 34.6937, 135.5023, 86, ("food", "nightlife", "shopping"), ("Japan",)),
    Place("New York", "us", 40.7128, -74.0060, 95, ("culture", "shopping", "nightlife", "food"), ("USA", "NY"), ("nyc", "new york city")),
    Place("Portland", "us", 45.5152, -122.6784, 70, ("food", "nature"), ("Oregon", "OR")),
    Place("Portland", "us", 43.6591, -70.2568, 55, ("food", "scenic"), ("Maine", "ME")),
    Place("Cambridge", "us", 42.3736, -71.1097, 65, ("culture", "history"), ("Massachusetts", "MA")),
    Place("Birmingham", "us", 33.5186, -86.8104, 50, ("history", "food"), ("Alabama", "AL")),
    Place("Valencia", "ve", 10.1620, -68.0077, 45, ("culture",), ("Venezuela",)),
    Place("Paris", "us", 33.6609, -95.5555, 30, ("history",), ("Texas", "TX")),
    Place("London", "ca", 42.9849, -81.2453, 30, ("culture",), ("Ontario", "Canada")),
)

_COUNTRIES: tuple[Country, ...] = (
    Country("Italy", "it", ("Rome", "Florence", "Venice")),
    Country("France", "fr", ("Paris", "Lyon", "Nice")),
    Country("Spain", "es", ("Madrid", "Barcelona", "Seville")),
    Country("Portugal", "pt", ("Lisbon", "Porto")),
    Country("Germany", "de", ("Berlin", "Munich")),
    Country("Greece", "gr", ("Athens",)),
    Country("Japan", "jp", ("Tokyo", "Kyoto", "Osaka")),
    Country("United Kingdom", "gb", ("London", "Edinburgh", "Manchester"), ("uk", "britain", "england", "great britain")),
    Country("Netherlands", "nl", ("Amsterdam",), ("holland", "the netherlands")),
    Country("Austria", "at", ("Vienna",)),
    Country("Hungary", "hu", ("Budapest",)),
    Country("Ireland", "ie", ("Dublin",)),
    Country("Czech Republic", "cz", ("Prague",), ("czechia",)),
)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lam = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lam / 2) ** 2
    return 2 * _EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def distance_between(a: Place, b: Place) -> float:
    return haversine_km(a.lat, a.lon, b.lat, b.lon)


@dataclass
class PlaceCatalog:
    """Name lookup over the gazetteer. Homonyms stay grouped under one key."""

    cities: tuple[Place, ...] = _CITIES
    countries: tuple[Country, ...] = _COUNTRIES
    _by_name: dict[str, list[Place]] = field(init=False, repr=False)
    _countries_by_name: dict[str, Country] = field(init=False, repr=False)
    _pattern: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._by_name = {}
        for place in self.cities:
            for key in (place.name, *place.aliases):
                self._by_name.setdefault(_key(key), []).append(place)
        for places in self._by_name.values():
            places.sort(key=lambda item: item.prior, reverse=True)
        self._countries_by_name = {}
        for country in self.countries:
            for key in (country.name, *country.aliases):
                self._countries_by_name[_key(key)] = country
        names = sorted({*self._by_name, *self._countries_by_name}, key=len, reverse=True)
        self._pattern = re.compile(
            r"(?<![\w])(" + "|".join(re.escape(name) for name in names) + r")(?![\w])",
            re.IGNORECASE,
        )

    def lookup(self, name: str) -> list[Place]:
        return list(self._by_name.get(_key(name), []))

    def best(self, name: str) -> Place | None:
        matches = self.lookup(name)
        return matches[0] if matches else None

    def country(self, name: str) -> Country | None:
        return self._countries_by_name.get(_key(name))

    def country_by_code(self, code: str) -> Country | None:
        for country in self.countries:
            if country.code == code.lower():
                return country
        return None

    def resolve(self, name: str, country_code: str | None = None) -> Place | None:
        """Resolve a stored city name, preferring the matching country for homonyms."""
        matches = self.lookup(name)
        if country_code:
            for place in matches:
                if place.country_code == country_code.lower():
                    return place
        return matches[0] if matches else None

    def find_mentions(self, text: str) -> list[PlaceMention]:
        mentions: list[PlaceMention] = []
        for match in self._pattern.finditer(text):
            raw = match.group(1)
            key = _key(raw)
            if key in _COMMON_WORDS and not raw[0].isupper():
                continue
            places = tuple(self._by_name.get(key, ()))
            country = self._countries_by_name.get(key) if not places else None
            if not places and country is None:
                continue
            mentions.append(
                PlaceMention(
                    text=raw,
                    start=match.start(1),
                    end=match.end(1),
                    places=places,
                    country=country,
                )
            )
        return mentions


def _key(value: str) -> str:
    return " ".join(value.strip().lower().split())
