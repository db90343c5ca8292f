from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from .config_schema import AppConfig
from .errors import ConfigError

ENV_PREFIX = "HASHTAG_IMPORTER_"
CONFIG_PATH_ENV = f"{ENV_PREFIX}CONFIG"

# Environment variable suffix => (config section, field).
_ENV_FIELDS: dict[str, tuple[str, str]] = {
    "SOURCE_KIND": ("source", "kind"),
    "SOURCE_ENDPOINT": ("source", "endpoint"),
    "SOURCE_HASHTAG": ("source", "hashtag"),
    "SOURCE_ANY_HASHTAGS": ("source", "any_hashtags"),
    "SOURCE_DATASET_ID": ("source", "dataset_id"),
    "SOURCE_PATH": ("source", "path"),
    "SOURCE_TOKEN_ENV": ("source", "token_env"),
    "SOURCE_REQUESTS_PER_MINUTE": ("source", "requests_per_minute"),
    "PAGE_SIZE": ("source", "page_size"),
    "SINK_KIND": ("sink", "kind"),
    "SINK_PATH": ("sink", "path"),
    "CURSOR_KIND": ("cursor", "kind"),
    "CURSOR_PATH": ("cursor", "path"),
    "CURSOR_NAME": ("cursor", "name"),
    "CYCLE_INTERVAL_SECONDS": ("pump", "cycle_interval_seconds"),
    "BASE_BACKOFF_SECONDS": ("pump", "base_backoff_seconds"),
    "MAX_BACKOFF_SECONDS": ("pump", "max_backoff_seconds"),
    "BACKOFF_JITTER_RATIO": ("pump", "jitter_ratio"),
    "MAX_CONSECUTIVE_FAILURES": ("pump", "max_consecutive_failures"),
    "PROBE_HOST": ("health", "host"),
    "PROBE_PORT": ("health", "port"),
    "LOG_PATH": ("logging", "path"),
    "LOG_LEVEL": ("logging", "level"),
}

_LIST_FIELDS = {"any_hashtags"}


@dataclass(frozen=True)
class RuntimeSecrets:
    source_token: str | None


def _read_yaml(p: Path) -> dict[str, Any]:
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")

    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {p}") from e

    try:
        data = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML in {p}: {e}") from e

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML in {p} must be a mapping/object")

    return data


def env_overrides(environ: Mapping[str, str]) -> dict[str, dict[str, Any]]:
    """Collect `HASHTAG_IMPORTER_*` settings into a nested config mapping."""
    out: dict[str, dict[str, Any]] = {}
    for suffix, (section, field) in _ENV_FIELDS.items():
        raw = environ.get(f"{ENV_PREFIX}{suffix}")
        if raw is None:
            continue
        value: Any = raw.strip()
        if not value:
            continue
        if field in _LIST_FIELDS:
            value = [v.strip() for v in value.split(",") if v.strip()]
        out.setdefault(section, {})[field] = value
    return out


def load_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Build the typed AppConfig from an optional YAML file plus environment variables.

    The file comes from `path` or HASHTAG_IMPORTER_CONFIG; environment variables override
    its values. Raises ConfigError with a readable validation message on failure.
    """
    env = os.environ if environ is None else environ

    file_path = path if path is not None else (env.get(CONFIG_PATH_ENV) or "").strip() or None

    data: dict[str, Any] = {}
    source_label = "environment"
    if file_path is not None:
        p = Path(file_path)
        data = _read_yaml(p)
        source_label = str(p)

    for section, values in env_overrides(env).items():
        current = data.get(section)
        if current is None:
            current = {}
        if not isinstance(current, dict):
            raise ConfigError(f"Config section {section!r} in {source_label} must be a mapping")
        data[section] = {**current, **values}

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_pydantic_errors(e, source_label)) from e


def resolve_runtime_secrets(
    config: AppConfig, *, environ: Mapping[str, str] | None = None
) -> RuntimeSecrets:
    """
    Read the source credential from the environment.

    The Apify source cannot run without a token; for Mastodon it is optional since public
    hashtag timelines can be read anonymously.
    """
    env = os.environ if environ is None else environ

    token_env = config.source.token_env
    token = (env.get(token_env) or "").strip() or None

    if config.source.kind == "apify" and token is None:
        raise ConfigError(f"Missing required environment variables: {token_env}")

    return RuntimeSecrets(source_token=token)


def config_sha256(config: AppConfig) -> str:
    """
    Compute a stable SHA-256 hash of the config values for run records.
    """
    payload = json.dumps(
        config.model_dump(mode="json"),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _format_pydantic_errors(err: ValidationError, source: str) -> str:
    lines: list[str] = [f"Invalid configuration in {source}:"]
    for item in err.errors():
        loc = ".".join(str(part) for part in item.get("loc", [])) or "<root>"
        msg = item.get("msg", "invalid value")
        lines.append(f"- {loc}: {msg}")
    return "\n".join(lines)
