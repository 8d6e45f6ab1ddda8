from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from content_sync.core.intervals import SyncInterval, parse_sync_interval


class FieldMappingsConfig(BaseModel):
    community: dict[str, str] = Field(default_factory=dict)
    home: dict[str, str] = Field(default_factory=dict)


class IntegrationConfig(BaseModel):
    site_url: str | None = None
    community_endpoint: str | None = None
    home_endpoint: str | None = None
    community_sync_interval: SyncInterval = SyncInterval.MANUAL
    home_sync_interval: SyncInterval = SyncInterval.MANUAL
    field_mappings: FieldMappingsConfig = Field(default_factory=FieldMappingsConfig)

    @field_validator("community_sync_interval", "home_sync_interval", mode="before")
    @classmethod
    def parse_interval(cls, value: object) -> SyncInterval:
        return parse_sync_interval(value if isinstance(value, (str, SyncInterval)) or value is None else str(value))

    @field_validator("community_endpoint", "home_endpoint")
    @classmethod
    def normalize_endpoint(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip().strip("/")
        return cleaned or None


class EndpointStatus(BaseModel):
    kind: str
    rest_base: str
    sync_interval: SyncInterval
    last_sync_at: datetime | None = None
    last_sync_count: int | None = None
    phase: str = "idle"
    last_error_message: str | None = None


class ConfigUpdate(BaseModel):
    """One user edit. ``field`` names the configuration key; ``value`` is its new raw value."""

    field: str
    value: str | None = None

    @field_validator("field")
    @classmethod
    def validate_field(cls, value: str) -> str:
        allowed = {"site_url", "community_endpoint", "home_endpoint", "community_sync_interval", "home_sync_interval"}
        if value not in allowed:
            raise ValueError(f"Unsupported configuration field: {value}")
        return value
