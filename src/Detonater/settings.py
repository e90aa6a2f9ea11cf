# === NAVMAP v1 ===
# {
#   "module": "Detonater.settings",
#   "purpose": "Typed settings models, environment overrides, and config file loading",
#   "sections": [
#     {"id": "loggingsettings", "name": "LoggingSettings", "anchor": "class-loggingsettings", "kind": "class"},
#     {"id": "optimizersettings", "name": "OptimizerSettings", "anchor": "class-optimizersettings", "kind": "class"},
#     {"id": "recompressionsettings", "name": "RecompressionSettings", "anchor": "class-recompressionsettings", "kind": "class"},
#     {"id": "scratchsettings", "name": "ScratchSettings", "anchor": "class-scratchsettings", "kind": "class"},
#     {"id": "detonatersettings", "name": "DetonaterSettings", "anchor": "class-detonatersettings", "kind": "class"},
#     {"id": "get-default-config", "name": "get_default_config", "anchor": "function-get-default-config", "kind": "function"},
#     {"id": "load-config", "name": "load_config", "anchor": "function-load-config", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Configuration models for the recompression pipeline.

Settings are grouped into small frozen domain models (logging, optimiser,
recompression, scratch store) hung off a single :class:`DetonaterSettings`
root. The root is a ``pydantic-settings`` model, so every field can be
overridden through ``DETONATER_*`` environment variables using ``__`` as the
nesting delimiter (``DETONATER_OPTIMIZER__TIMEOUT_SEC=30``). Configuration files
may be YAML or JSON; both are validated through the same models and surface
problems as :class:`~Detonater.errors.UserConfigError`.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import UserConfigError

__all__ = [
    "DEFAULT_MIME_TYPE",
    "DetonaterSettings",
    "LoggingSettings",
    "OptimizerSettings",
    "RecompressionSettings",
    "ScratchSettings",
    "get_default_config",
    "invalidate_default_config_cache",
    "load_config",
    "load_raw_config",
    "build_settings",
]

DEFAULT_MIME_TYPE = "application/java-archive"
WINDOWS_MAX_PATH = 260


def _normalize_suffixes(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [part for part in value.split(",")]
    normalized: List[str] = []
    for item in value:
        suffix = str(item).strip().lower()
        if not suffix:
            continue
        if not suffix.startswith("."):
            suffix = f".{suffix}"
        normalized.append(suffix)
    return tuple(normalized)


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    emit_json_logs: bool = Field(
        default=True,
        description="Emit JSON-formatted logs when a log directory is configured",
        validation_alias=AliasChoices("emit_json_logs", "json"),
    )
    log_dir: Optional[Path] = Field(
        default=None,
        description="Directory for JSONL log files (console only when unset)",
    )
    retention_days: int = Field(default=30, ge=1, le=3650, description="Log retention window")
    max_log_size_mb: int = Field(default=100, ge=1, le=10240, description="Rotate after N MiB")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        """Normalize and validate logging level."""
        upper = str(v).upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR"}
        if upper not in valid_levels:
            raise ValueError(f"level must be one of {sorted(valid_levels)}, got '{v}'")
        return upper

    @field_validator("log_dir", mode="before")
    @classmethod
    def expand_log_dir(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return Path(v).expanduser()

    def level_int(self) -> int:
        """Convert level string to logging module integer."""
        return getattr(logging, self.level, logging.INFO)


class OptimizerSettings(BaseModel):
    """External PNG optimiser invocation."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    enabled: bool = Field(default=True, description="Run the optimiser on image entries")
    binary: str = Field(default="oxipng", description="Executable name or path")
    args: Tuple[str, ...] = Field(
        default=("--opt", "max", "--strip", "safe", "--alpha"),
        description="Arguments placed before the target path",
    )
    timeout_sec: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description="Per-image subprocess timeout in seconds",
    )

    @field_validator("args", mode="before")
    @classmethod
    def split_args(cls, v: Any) -> Any:
        if isinstance(v, str):
            return tuple(v.split())
        return v


class RecompressionSettings(BaseModel):
    """Entry dispatch and serialisation policy."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    structured_suffixes: Tuple[str, ...] = Field(
        default=(".json", ".mcmeta"),
        description="Suffixes re-serialised as indented JSON",
    )
    image_suffixes: Tuple[str, ...] = Field(
        default=(".png",),
        description="Suffixes handed to the image optimiser",
    )
    archive_suffixes: Tuple[str, ...] = Field(
        default=(".jar",),
        description="Suffixes treated as nested archives (and folder-mode inputs)",
    )
    deflate_level: int = Field(default=9, ge=1, le=9, description="DEFLATE level for top-level output")
    indent: int = Field(default=2, ge=0, le=8, description="Indentation for structured text")
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, description="Container MIME type")
    digest_algorithm: str = Field(default="sha256", description="hashlib algorithm for cache keys")
    long_path_threshold: int = Field(
        default=WINDOWS_MAX_PATH,
        ge=1,
        le=32767,
        description="Path length at which the Windows long-path prefix is applied",
    )

    @field_validator("structured_suffixes", "image_suffixes", "archive_suffixes", mode="before")
    @classmethod
    def normalize_suffixes(cls, v: Any) -> Tuple[str, ...]:
        return _normalize_suffixes(v)

    @field_validator("digest_algorithm", mode="before")
    @classmethod
    def validate_digest_algorithm(cls, v: str) -> str:
        """Reject algorithms hashlib cannot construct."""
        candidate = str(v).strip().lower()
        try:
            hashlib.new(candidate)
        except ValueError as exc:
            raise ValueError(f"Unsupported digest algorithm '{v}'") from exc
        return candidate


class ScratchSettings(BaseModel):
    """Scratch store placement."""

    model_config = ConfigDict(frozen=True, validate_assignment=False)

    prefix: str = Field(default="detonater_", min_length=1, description="Temp directory prefix")
    base_dir: Optional[Path] = Field(
        default=None,
        description="Parent directory for the scratch root (system temp when unset)",
    )
    keep: bool = Field(default=False, description="Keep the scratch root after the run")

    @field_validator("base_dir", mode="before")
    @classmethod
    def expand_base_dir(cls, v: Any) -> Any:
        if v is None or v == "":
            return None
        return Path(v).expanduser()


class DetonaterSettings(BaseSettings):
    """Root settings object consumed by the pipeline and the CLI."""

    model_config = SettingsConfigDict(
        env_prefix="DETONATER_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    recompression: RecompressionSettings = Field(default_factory=RecompressionSettings)
    scratch: ScratchSettings = Field(default_factory=ScratchSettings)
    output_dir: Path = Field(
        default=Path("detonatedmods"),
        description="Directory receiving recompressed top-level archives",
    )
    workers: int = Field(default=1, ge=1, le=64, description="Parallel archives in folder mode")

    @field_validator("output_dir", mode="before")
    @classmethod
    def expand_output_dir(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v

    def with_overrides(self, **updates: Any) -> "DetonaterSettings":
        """Return a copy with top-level fields replaced (validated)."""

        payload = self.model_dump()
        payload.update({key: value for key, value in updates.items() if value is not None})
        return build_settings(payload)


_DEFAULT_CONFIG_LOCK = threading.Lock()
_DEFAULT_CONFIG_CACHE: Optional[DetonaterSettings] = None


def build_settings(raw_config: Mapping[str, object]) -> DetonaterSettings:
    """Validate ``raw_config`` into :class:`DetonaterSettings`."""

    try:
        return DetonaterSettings(**dict(raw_config))
    except PydanticValidationError as exc:
        messages = []
        for error in exc.errors():
            location = " -> ".join(str(part) for part in error.get("loc", ()))
            messages.append(f"{location or '<root>'}: {error.get('msg')}")
        raise UserConfigError("Invalid configuration:\n" + "\n".join(messages)) from exc


def get_default_config(*, copy: bool = False) -> DetonaterSettings:
    """Return a memoised :class:`DetonaterSettings` built from defaults and environment."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        if _DEFAULT_CONFIG_CACHE is None:
            _DEFAULT_CONFIG_CACHE = build_settings({})
        cached = _DEFAULT_CONFIG_CACHE
    if copy:
        return cached.model_copy(deep=True)
    return cached


def invalidate_default_config_cache() -> None:
    """Invalidate the cached default configuration."""

    global _DEFAULT_CONFIG_CACHE  # noqa: PLW0603

    with _DEFAULT_CONFIG_LOCK:
        _DEFAULT_CONFIG_CACHE = None


def normalize_config_path(config_path: Path) -> Path:
    """Return a user-supplied configuration path with ``~`` and symlinks resolved."""

    expanded = Path(config_path).expanduser()
    try:
        return expanded.resolve(strict=False)
    except (OSError, RuntimeError):  # pragma: no cover - only triggered on rare filesystems
        return expanded


def load_raw_config(config_path: Path) -> Mapping[str, object]:
    """Read a YAML or JSON configuration file and return its top-level mapping."""

    normalized_path = normalize_config_path(config_path)

    if not normalized_path.exists():
        raise UserConfigError(f"Configuration file not found: {normalized_path}")

    text = normalized_path.read_text(encoding="utf-8")
    if normalized_path.suffix.lower() == ".json":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise UserConfigError(
                f"Configuration file '{normalized_path}' contains invalid JSON"
            ) from exc
    else:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise UserConfigError(
                f"Configuration file '{normalized_path}' contains invalid YAML"
            ) from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise UserConfigError("Configuration file must contain a mapping at the root")
    return data


def load_config(config_path: Path) -> DetonaterSettings:
    """Load and validate configuration from ``config_path``."""

    return build_settings(load_raw_config(config_path))
