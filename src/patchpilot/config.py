"""Process-wide settings, read once at startup.

Values come from three layers applied in order: built-in defaults, an optional
YAML file, then environment variables.  The result is an immutable
:class:`Settings` value passed explicitly to every component.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .tools.preflight import PREFLIGHT_ORDER, PreflightStageConfig

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "patchpilot.yaml"


class PreflightCommands(BaseModel):
    """Shell commands for each preflight stage; ``None`` skips the stage."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    install: Optional[str] = None
    typecheck: Optional[str] = None
    lint: Optional[str] = None
    test: Optional[str] = None
    smoke: Optional[str] = None


class Settings(BaseModel):
    """Immutable runtime configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True, protected_namespaces=())

    max_iterations: int = Field(default=6, ge=1)
    max_context_chars: int = Field(default=50_000, ge=1)
    max_diff_lines: int = Field(default=5_000, ge=1)
    max_diff_chars: int = Field(default=200_000, ge=1)
    preflight_timeout: float = Field(default=300.0, gt=0)
    git_timeout: float = Field(default=300.0, gt=0)
    preflight: PreflightCommands = Field(default_factory=PreflightCommands)
    verify_timeout: float = Field(default=120.0, gt=0)
    repair_verify: Dict[str, List[str]] = Field(default_factory=dict)

    patches_dir: Path = Path(".patchpilot/patches")
    jobs_dir: Path = Path(".patchpilot/jobs")
    sandbox_root: Path = Field(default_factory=lambda: Path(tempfile.gettempdir()))

    github_token: Optional[str] = None
    github_api_url: str = "https://api.github.com"
    git_author_name: str = "patchpilot"
    git_author_email: str = "patchpilot@users.noreply.github.com"

    max_workers: int = Field(default=1, ge=1)
    fallback_after_apply_failures: int = Field(default=2, ge=0)
    max_consecutive_failures: int = Field(default=0, ge=0)

    model: str = "gpt-5"
    model_timeout: float = Field(default=120.0, gt=0)
    model_max_attempts: int = Field(default=3, ge=1)
    model_base_url: str = "https://api.openai.com/v1/responses"

    def preflight_stages(self) -> List[PreflightStageConfig]:
        """Return the fixed-order preflight stage list."""

        return [
            PreflightStageConfig(
                name=name,
                command=getattr(self.preflight, name),
                timeout=self.preflight_timeout,
            )
            for name in PREFLIGHT_ORDER
        ]

    def redacted(self) -> Dict[str, Any]:
        """Return a JSON-friendly dump with secrets masked."""

        data = self.model_dump(mode="json")
        if data.get("github_token"):
            data["github_token"] = "***"
        return data


def _positive_int(value: str) -> int:
    parsed = int(value)
    if parsed <= 0:
        raise ValueError(value)
    return parsed


def _positive_float(value: str) -> float:
    parsed = float(value)
    if parsed <= 0:
        raise ValueError(value)
    return parsed


def _millis(value: str) -> float:
    return _positive_int(value) / 1000.0


def _optional_text(value: str) -> Optional[str]:
    return value.strip() or None


_ENV_FIELDS: Dict[str, tuple[str, Callable[[str], Any]]] = {
    "MAX_ITERATIONS": ("max_iterations", _positive_int),
    "MAX_CONTEXT_SIZE": ("max_context_chars", _positive_int),
    "MAX_DIFF_SIZE": ("max_diff_lines", _positive_int),
    "MAX_DIFF_CHARS": ("max_diff_chars", _positive_int),
    "PREFLIGHT_TIMEOUT": ("preflight_timeout", _millis),
    "VERIFY_TIMEOUT": ("verify_timeout", _positive_float),
    "GIT_TIMEOUT": ("git_timeout", _positive_float),
    "PATCHES_DIR": ("patches_dir", Path),
    "JOBS_DIR": ("jobs_dir", Path),
    "SANDBOX_ROOT": ("sandbox_root", Path),
    "GITHUB_TOKEN": ("github_token", _optional_text),
    "GITHUB_API_URL": ("github_api_url", str),
    "GIT_AUTHOR_NAME": ("git_author_name", str),
    "GIT_AUTHOR_EMAIL": ("git_author_email", str),
    "MAX_WORKERS": ("max_workers", _positive_int),
    "PATCHPILOT_MODEL": ("model", str),
}

_ENV_COMMANDS = {
    "INSTALL_COMMAND": "install",
    "TYPECHECK_COMMAND": "typecheck",
    "LINT_COMMAND": "lint",
    "TEST_COMMAND": "test",
    "SMOKE_COMMAND": "smoke",
}


def _load_yaml(config_path: Path) -> dict[str, Any]:
    """Read the YAML configuration from disk, returning an empty mapping if blank."""
    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration root must be a mapping: {config_path}")
    return data


def _apply_env(data: dict[str, Any], env: Mapping[str, str]) -> dict[str, Any]:
    merged = dict(data)
    for variable, (field_name, parser) in _ENV_FIELDS.items():
        raw = env.get(variable)
        if raw is None or not raw.strip():
            continue
        try:
            merged[field_name] = parser(raw.strip())
        except ValueError:
            LOGGER.warning("Ignoring invalid value for %s: %r", variable, raw)

    commands = dict(merged.get("preflight") or {})
    for variable, stage in _ENV_COMMANDS.items():
        if variable in env:
            commands[stage] = _optional_text(env[variable])
    if commands:
        merged["preflight"] = commands
    return merged


def load_settings(
    config_path: Path | str | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Settings:
    """Build :class:`Settings` from defaults, ``config_path`` and ``env``.

    Raises ``ValueError`` when the YAML file holds values that fail validation.
    """

    data: dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            data = _load_yaml(path)
        else:
            LOGGER.debug("Config file %s not found; using defaults", path)

    merged = _apply_env(data, os.environ if env is None else env)
    try:
        return Settings.model_validate(merged)
    except ValidationError as error:
        raise ValueError(f"Invalid configuration: {error}") from error


def default_config_yaml() -> str:
    """Render a starter configuration file."""

    payload = {
        "max_iterations": 6,
        "max_context_chars": 50_000,
        "max_diff_lines": 5_000,
        "preflight_timeout": 300,
        "preflight": {name: None for name in PREFLIGHT_ORDER},
        "verify_timeout": 120,
        "git_timeout": 300,
        "patches_dir": ".patchpilot/patches",
        "jobs_dir": ".patchpilot/jobs",
        "model": "gpt-5",
    }
    return yaml.safe_dump(payload, sort_keys=False)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "PreflightCommands",
    "Settings",
    "default_config_yaml",
    "load_settings",
]
