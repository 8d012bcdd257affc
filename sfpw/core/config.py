"""Configuration loading and validation for YAML-based sfpw settings."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from sfpw.core.errors import ConfigLoadError, ConfigValidationError

_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
CONFIG_ENV_VAR = "SFPW_CONFIG"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class BLEConfig:
    service_uuid: str
    write_char_uuid: str
    notify_char_uuid: str
    info_char_uuid: str
    connect_timeout_s: float
    subscribe_settle_s: float


@dataclass(frozen=True)
class TransportConfig:
    mtu: int
    chunk_delay_s: float
    timeout_s: float
    bulk_timeout_s: float
    inbox_size: int


@dataclass(frozen=True)
class TransferConfig:
    default_chunk: int
    chunk_delay_s: float
    abort_settle_s: float


@dataclass(frozen=True)
class APIConfig:
    prefix: str


@dataclass(frozen=True)
class Config:
    ble: BLEConfig
    transport: TransportConfig
    transfer: TransferConfig
    api: APIConfig


@dataclass(frozen=True)
class LoadedConfig:
    config: Config
    sources: tuple[str, ...]
    overrides: tuple[str, ...]


def _load_schema_validator() -> Any:
    schema_text = resources.files("sfpw.schemas").joinpath("config.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def user_config_path() -> Path:
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        return Path(explicit)
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "sfpw/config.yaml"


def _read_yaml(path: Path | Traversable) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _validate(doc: dict[str, Any], source: Path | Traversable) -> None:
    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ConfigValidationError(
            f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string"
        )
    return normalized


def _merge(base: dict[str, Any], override: dict[str, Any], *, prefix: str = "") -> tuple[dict[str, Any], list[str]]:
    merged = dict(base)
    changed: list[str] = []
    for key, value in override.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key], nested = _merge(merged[key], value, prefix=f"{dotted}.")
            changed.extend(nested)
        else:
            if merged.get(key) != value:
                changed.append(dotted)
            merged[key] = value
    return merged, changed


def _build_config(doc: dict[str, Any]) -> Config:
    ble = doc["ble"]
    transport = doc["transport"]
    transfer = doc["transfer"]
    return Config(
        ble=BLEConfig(
            service_uuid=_normalize_uuid(ble["service_uuid"], context="ble.service_uuid"),
            write_char_uuid=_normalize_uuid(ble["write_char_uuid"], context="ble.write_char_uuid"),
            notify_char_uuid=_normalize_uuid(ble["notify_char_uuid"], context="ble.notify_char_uuid"),
            info_char_uuid=_normalize_uuid(ble["info_char_uuid"], context="ble.info_char_uuid"),
            connect_timeout_s=float(ble["connect_timeout_s"]),
            subscribe_settle_s=float(ble["subscribe_settle_s"]),
        ),
        transport=TransportConfig(
            mtu=int(transport["mtu"]),
            chunk_delay_s=float(transport["chunk_delay_s"]),
            timeout_s=float(transport["timeout_s"]),
            bulk_timeout_s=float(transport["bulk_timeout_s"]),
            inbox_size=int(transport["inbox_size"]),
        ),
        transfer=TransferConfig(
            default_chunk=int(transfer["default_chunk"]),
            chunk_delay_s=float(transfer["chunk_delay_s"]),
            abort_settle_s=float(transfer["abort_settle_s"]),
        ),
        api=APIConfig(prefix=doc["api"]["prefix"].rstrip("/")),
    )


def load_config(path: Path | None = None) -> LoadedConfig:
    """Load packaged defaults, then merge the user file over them if it exists."""
    defaults_path = resources.files("sfpw.config").joinpath("defaults.yaml")
    doc = _read_yaml(defaults_path)
    _validate(doc, defaults_path)
    sources = [str(defaults_path)]
    overrides: list[str] = []

    user_path = path or user_config_path()
    if path is not None or user_path.is_file():
        user_doc = _read_yaml(user_path)
        _validate(user_doc, user_path)
        doc, overrides = _merge(doc, user_doc)
        sources.append(str(user_path))
        for key in overrides:
            LOGGER.debug("User config %s overrides '%s'", user_path, key)

    return LoadedConfig(config=_build_config(doc), sources=tuple(sources), overrides=tuple(overrides))
