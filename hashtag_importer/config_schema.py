from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _normalize_tag_list(values: list[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()

    for item in values:
        tag = (item or "").strip()
        if tag.startswith("#"):
            tag = tag[1:].strip()
        if not tag:
            continue
        key = tag.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(tag)

    return out


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]
NonNegativeFloat = Annotated[float, Field(ge=0.0)]


class SourceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["mastodon", "apify", "file"] = "file"
    page_size: PositiveInt = 40

    # mastodon
    endpoint: str | None = None
    hashtag: str | None = None
    any_hashtags: list[str] = Field(default_factory=list)
    requests_per_minute: NonNegativeFloat = 1.0

    # apify
    dataset_id: str | None = None

    # file
    path: str | None = None

    token_env: str = "HASHTAG_IMPORTER_SOURCE_TOKEN"

    @field_validator("token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)

    @field_validator("any_hashtags")
    @classmethod
    def _normalize_any(cls, v: list[str]) -> list[str]:
        return _normalize_tag_list(v)

    @model_validator(mode="after")
    def _kind_requirements(self) -> "SourceConfig":
        if self.kind == "mastodon":
            if not (self.endpoint or "").strip():
                raise ValueError("endpoint is required for the mastodon source")
            if not (self.hashtag or "").strip().lstrip("#"):
                raise ValueError("hashtag is required for the mastodon source")
        elif self.kind == "apify":
            if not (self.dataset_id or "").strip():
                raise ValueError("dataset_id is required for the apify source")
        elif self.kind == "file":
            if not (self.path or "").strip():
                raise ValueError("path is required for the file source")
        return self


class SinkConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["sqlite", "memory"] = "sqlite"
    path: str = "state/hashtags.sqlite"


class CursorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["sqlite", "file"] = "sqlite"
    # For sqlite, defaults to the sink database.
    path: str | None = None
    name: str = "default"

    @model_validator(mode="after")
    def _file_needs_path(self) -> "CursorConfig":
        if self.kind == "file" and not (self.path or "").strip():
            raise ValueError("path is required for the file cursor store")
        return self


class PumpConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    cycle_interval_seconds: NonNegativeFloat = 300.0
    base_backoff_seconds: NonNegativeFloat = 1.0
    max_backoff_seconds: NonNegativeFloat = 300.0
    jitter_ratio: float = Field(0.25, ge=0.0, le=1.0)
    max_consecutive_failures: NonNegativeInt = 20  # 0 retries forever

    @model_validator(mode="after")
    def _max_covers_base(self) -> "PumpConfig":
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= base_backoff_seconds")
        return self


class HealthConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    host: str = "0.0.0.0"
    port: int = Field(8080, ge=0, le=65535)  # 0 disables the probe server


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str | None = None  # stderr when unset
    level: Literal["DEBUG", "INFO", "WARN", "ERROR"] = "INFO"

    @field_validator("level", mode="before")
    @classmethod
    def _upper_level(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip().upper()
            return "WARN" if v == "WARNING" else v
        return v


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    source: SourceConfig
    sink: SinkConfig = Field(default_factory=SinkConfig)
    cursor: CursorConfig = Field(default_factory=CursorConfig)
    pump: PumpConfig = Field(default_factory=PumpConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def _sqlite_cursor_needs_db(self) -> "AppConfig":
        if self.cursor.kind == "sqlite" and self.sink.kind != "sqlite" and not self.cursor.path:
            raise ValueError("cursor.path is required when the sink is not sqlite")
        return self
