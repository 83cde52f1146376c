"""Runtime configuration read from TRIPBRIEF_* environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field


def load_env_file(path: str = ".env") -> None:
    """Best-effort .env loader; variables already in the environment win."""
    env_path = Path(path)
    if not env_path.exists():
        return

    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip("\"'")
        if key and key not in os.environ:
            os.environ[key] = value


class RouteWeights(BaseModel):
    """Relative importance of route attributes. Normalised to sum to 1 before use."""

    time: float = Field(default=0.30, ge=0)
    cost: float = Field(default=0.25, ge=0)
    reliability: float = Field(default=0.25, ge=0)
    convenience: float = Field(default=0.20, ge=0)

    def normalized(self) -> "RouteWeights":
        total = self.time + self.cost + self.reliability + self.convenience
        if total <= 0:
            raise ValueError("at least one route weight must be positive")
        return RouteWeights(
            time=self.time / total,
            cost=self.cost / total,
            reliability=self.reliability / total,
            convenience=self.convenience / total,
        )

    @classmethod
    def parse(cls, raw: str) -> "RouteWeights":
        """Parse `time=0.5,cost=0.2,...`; unnamed weights keep their defaults."""
        values: dict[str, float] = {}
        for part in raw.split(","):
            if "=" not in part:
                continue
            key, value = part.split("=", 1)
            values[key.strip().lower()] = float(value)
        return cls(**values)


class PlannerSettings(BaseModel):
    min_confidence: int = Field(default=60, ge=0, le=100)
    ambiguity_confidence: int = Field(default=40, ge=0, le=100)
    activity_radius_km: float = Field(default=8.0, gt=0)
    provider_timeout_seconds: float = Field(default=4.0, gt=0)
    cache_ttl_seconds: float = Field(default=3600.0, ge=0)
    cache_max_size: int = Field(default=1024, gt=0)
    route_weights: RouteWeights = Field(default_factory=RouteWeights)
    llm_fallback: bool = False
    timezone: str = "UTC"

    @classmethod
    def from_env(cls) -> "PlannerSettings":
        values: dict[str, object] = {}
        mapping = {
            "TRIPBRIEF_MIN_CONFIDENCE": "min_confidence",
            "TRIPBRIEF_AMBIGUITY_CONFIDENCE": "ambiguity_confidence",
            "TRIPBRIEF_ACTIVITY_RADIUS_KM": "activity_radius_km",
            "TRIPBRIEF_PROVIDER_TIMEOUT_S": "provider_timeout_seconds",
            "TRIPBRIEF_CACHE_TTL_S": "cache_ttl_seconds",
            "TRIPBRIEF_CACHE_MAX_SIZE": "cache_max_size",
            "TRIPBRIEF_TIMEZONE": "timezone",
        }
        for env_name, field_name in mapping.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                values[field_name] = raw.strip()
        weights = os.getenv("TRIPBRIEF_ROUTE_WEIGHTS")
        if weights:
            values["route_weights"] = RouteWeights.parse(weights)
        llm = os.getenv("TRIPBRIEF_LLM_FALLBACK")
        if llm is not None:
            values["llm_fallback"] = llm.strip().lower() in {"1", "true", "yes", "on"}
        return cls.model_validate(values)
