"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override it using ``__``
as the nested delimiter (e.g. ``DAEMON__COUNT=4``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from pyexecd.config import get_settings

    s = get_settings()
    print(s.daemon.count)
    print(s.process.kill_timeout)
"""

from __future__ import annotations

import tomllib
import types
import typing
from pathlib import Path

from pydantic import BaseModel, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ProcessConfig(_StrictModel):
    encoding: str = "utf-8"
    kill_timeout: float = 5.0  # seconds between terminate and kill
    max_output_size: int = 10485760  # 10MB; also the read buffer size for daemon replies

    @field_validator("encoding")
    @classmethod
    def validate_encoding(cls, v: str) -> str:
        import codecs

        codecs.lookup(v)
        return v

    @field_validator("kill_timeout")
    @classmethod
    def validate_kill_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("kill_timeout must be positive")
        return v


class DaemonConfig(_StrictModel):
    enabled: bool = True
    module: str = "pyexecd.daemon"  # module exposing a PythonDaemon class
    count: int = 2
    observable_count: int = 1
    startup_timeout: float = 10.0  # seconds to answer the handshake ping

    @field_validator("count", "observable_count")
    @classmethod
    def clamp_count(cls, v: int) -> int:
        return max(1, v)


class InterpreterConfig(_StrictModel):
    path: str | None = None  # None → the interpreter running pyexecd

    @field_validator("path")
    @classmethod
    def resolve_path(cls, v: str | None) -> str | None:
        if v is None:
            return None
        p = Path(v).expanduser()
        if not p.is_absolute():
            p = (Path.cwd() / p).resolve()
        return str(p)


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Explicit-fields validation
# ---------------------------------------------------------------------------


def _is_exempt_field(model_cls: type[BaseModel], field_name: str) -> bool:
    """Optional fields are exempt — TOML has no null type."""
    annotation = model_cls.model_fields[field_name].annotation
    if isinstance(annotation, types.UnionType) and type(None) in annotation.__args__:
        return True
    origin = getattr(annotation, "__origin__", None)
    return origin is typing.Union and type(None) in annotation.__args__


def _toml_sections(path: str | Path) -> dict[str, set[str]]:
    """Keys spelled out per [section] in the TOML file (empty if it doesn't exist)."""
    p = Path(path)
    if not p.is_file():
        return {}
    with p.open("rb") as f:
        data = tomllib.load(f)
    return {k: set(v) for k, v in data.items() if isinstance(v, dict)}


def _collect_implicit_fields(model: BaseModel, toml_sections: dict[str, set[str]]) -> list[str]:
    """Find fields missing from sections that were present in config.toml.

    Sections omitted entirely use known defaults and are not checked. Fields
    set through environment variables don't count as a section being present.
    """
    errors: list[str] = []
    for field_name in type(model).model_fields:
        value = getattr(model, field_name)
        if isinstance(value, _StrictModel) and field_name in toml_sections:
            child_cls = type(value)
            missing = {
                f
                for f in set(child_cls.model_fields) - toml_sections[field_name]
                if not _is_exempt_field(child_cls, f)
            }
            if missing:
                errors.append(f"{field_name}: missing {sorted(missing)}")
    return errors


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    process: ProcessConfig = ProcessConfig()
    daemon: DaemonConfig = DaemonConfig()
    interpreter: InterpreterConfig = InterpreterConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _require_explicit_fields(self) -> Settings:
        """If a section is in config.toml, spell out every field."""
        errors = _collect_implicit_fields(self, _toml_sections(self.model_config["toml_file"]))
        if errors:
            msg = "Config fields must be explicitly set:\n"
            msg += "\n".join(f"  - {e}" for e in errors)
            raise ValueError(msg)
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
        from pyexecd.logger import set_level

        set_level(_settings.logging.level)
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
