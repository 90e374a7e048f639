from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, Field

from discovery.models import Coordinate, PlaceInfo


class Configuration(BaseModel):
    # Provider backend
    api_base_url: str = Field(default="http://localhost:5000/api")
    api_timeout: float = Field(default=10.0)
    api_retries: int = Field(default=2)
    result_limit: int = Field(default=50)
    page_size: int = Field(default=20)

    # Third-party geocoder (Nominatim-compatible)
    geocoder_base_url: str = Field(default="https://nominatim.openstreetmap.org")
    geocoder_timeout: float = Field(default=5.0)
    geocoder_min_interval: float = Field(default=1.1)
    geocoder_user_agent: str = Field(default="service-discovery/0.1")
    geocoder_country_codes: Optional[str] = Field(default="in")

    # Fallback location
    default_latitude: float = Field(default=28.6139)
    default_longitude: float = Field(default=77.2090)
    default_city: str = Field(default="Delhi")
    default_state: str = Field(default="Delhi")
    default_country: str = Field(default="India")

    # Session
    history_capacity: int = Field(default=5)
    session_ttl_sec: int = Field(default=3600)

    @classmethod
    def from_env(cls, overrides: Optional[dict[str, Any]] = None) -> "Configuration":
        raw: dict[str, Any] = {}

        env_map = {
            "api_base_url": os.getenv("DISCOVERY_API_BASE_URL"),
            "api_timeout": os.getenv("DISCOVERY_API_TIMEOUT"),
            "api_retries": os.getenv("DISCOVERY_API_RETRIES"),
            "result_limit": os.getenv("DISCOVERY_RESULT_LIMIT"),
            "page_size": os.getenv("DISCOVERY_PAGE_SIZE"),
            "geocoder_base_url": os.getenv("GEOCODER_BASE_URL"),
            "geocoder_timeout": os.getenv("GEOCODER_TIMEOUT"),
            "geocoder_min_interval": os.getenv("GEOCODER_MIN_INTERVAL"),
            "geocoder_user_agent": os.getenv("GEOCODER_USER_AGENT"),
            "geocoder_country_codes": os.getenv("GEOCODER_COUNTRY_CODES"),
            "default_latitude": os.getenv("DEFAULT_LATITUDE"),
            "default_longitude": os.getenv("DEFAULT_LONGITUDE"),
            "default_city": os.getenv("DEFAULT_CITY"),
            "default_state": os.getenv("DEFAULT_STATE"),
            "default_country": os.getenv("DEFAULT_COUNTRY"),
            "history_capacity": os.getenv("DISCOVERY_HISTORY_CAPACITY"),
            "session_ttl_sec": os.getenv("DISCOVERY_SESSION_TTL"),
        }

        for k, v in env_map.items():
            if v is None:
                continue
            raw[k] = v

        if overrides:
            raw.update({k: v for k, v in overrides.items() if v is not None})

        return cls(**raw)

    def require_backend(self) -> None:
        if not self.api_base_url:
            raise ValueError("DISCOVERY_API_BASE_URL is required")

    @property
    def default_center(self) -> Coordinate:
        return Coordinate(self.default_latitude, self.default_longitude)

    @property
    def default_place(self) -> PlaceInfo:
        return PlaceInfo(city=self.default_city, state=self.default_state, country=self.default_country)

    def log_summary(self) -> str:
        return (
            "api=%s timeout=%s retries=%s limit=%s geocoder=%s geocoder_timeout=%s default=%s"
            % (
                self.api_base_url,
                self.api_timeout,
                self.api_retries,
                self.result_limit,
                self.geocoder_base_url,
                self.geocoder_timeout,
                self.default_city,
            )
        )
