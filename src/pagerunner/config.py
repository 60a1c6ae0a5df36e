"""
Configuration models for browser sessions and test runs.

Provides typed configuration for:
- Which browser identifiers participate in a run and the engine behind each
- Dev-server origin and the in-page invoke endpoint
- Launch, bridge and action timeouts
- Environment variable and YAML file support
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import StrEnum
from pathlib import Path
from typing import Any, Self

import structlog
import yaml

logger = structlog.get_logger(__name__)

DEFAULT_DEV_SERVER_URL = "http://127.0.0.1:5173"
DEFAULT_INVOKE_PATH = "/__test_invoke"
CHROMIUM_CI_ARGS: tuple[str, ...] = ("--no-sandbox", "--disable-setuid-sandbox")


class EngineType(StrEnum):
    """Browser engine families that can be launched."""

    CHROMIUM = "chromium"
    FIREFOX = "firefox"
    WEBKIT = "webkit"


KNOWN_BROWSERS: dict[str, EngineType] = {
    "chrome": EngineType.CHROMIUM,
    "chromium": EngineType.CHROMIUM,
    "edge": EngineType.CHROMIUM,
    "firefox": EngineType.FIREFOX,
    "webkit": EngineType.WEBKIT,
    "safari": EngineType.WEBKIT,
}


@dataclass(frozen=True, slots=True)
class BrowserSpec:
    """
    A configured browser identifier and the engine that backs it.

    Specs with the same family key can share one launched engine.
    """

    name: str
    """Browser identifier, unique within a run."""

    engine: EngineType
    """Engine family to launch."""

    channel: str | None = None
    """Optional distribution channel (e.g. "chrome", "msedge")."""

    headless: bool = True
    """Launch without a visible window."""

    args: tuple[str, ...] = ()
    """Extra command-line arguments for the engine process."""

    @property
    def family_key(self) -> tuple[Any, ...]:
        """Key identifying specs that can share one engine process."""
        return (self.engine, self.channel, self.headless, self.args)

    @classmethod
    def parse(
        cls,
        value: str,
        headless: bool = True,
        chromium_args: tuple[str, ...] = CHROMIUM_CI_ARGS,
    ) -> BrowserSpec:
        """
        Parse a browser entry of the form ``name`` or ``name:engine``.

        Raises:
            ValueError: If the engine cannot be determined
        """
        name, _, engine_name = value.strip().partition(":")
        name = name.strip()
        if not name:
            raise ValueError("Browser identifier must not be empty")

        if engine_name:
            try:
                engine = EngineType(engine_name.strip().lower())
            except ValueError:
                raise ValueError(
                    f"Unknown engine '{engine_name}' for browser '{name}' "
                    f"(valid: {', '.join(EngineType)})"
                ) from None
        elif name.lower() in KNOWN_BROWSERS:
            engine = KNOWN_BROWSERS[name.lower()]
        else:
            raise ValueError(
                f"Cannot infer engine for browser '{name}'; use '{name}:<engine>'"
            )

        channel = "msedge" if name.lower() == "edge" else None
        args = chromium_args if engine == EngineType.CHROMIUM else ()
        return cls(name=name, engine=engine, channel=channel, headless=headless, args=args)


def _parse_browsers(
    values: list[str] | tuple[str, ...],
    headless: bool,
    chromium_args: tuple[str, ...],
) -> tuple[BrowserSpec, ...]:
    return tuple(BrowserSpec.parse(v, headless, chromium_args) for v in values if v.strip())


@dataclass(slots=True)
class RunnerConfig:
    """
    Configuration for a browser test run.

    Supports loading from environment variables and YAML with sensible defaults.
    """

    browsers: tuple[str, ...] = ("chrome", "firefox")
    """Configured browser entries, ``name`` or ``name:engine``."""

    dev_server_url: str = DEFAULT_DEV_SERVER_URL
    """Origin every primary page is navigated to."""

    invoke_path: str = DEFAULT_INVOKE_PATH
    """Local endpoint path for invoke requests made from inside the page."""

    headless: bool = True
    """Launch engines headless."""

    chromium_args: tuple[str, ...] = CHROMIUM_CI_ARGS
    """Arguments passed to chromium-family engines."""

    selected_browser: str | None = None
    """Restrict initialization to one identifier when set."""

    session_timeout_seconds: float = 30.0
    """Upper bound on launching and navigating a new session."""

    bridge_timeout_seconds: float = 30.0
    """Upper bound on a single bridge handshake or invoke."""

    action_timeout_ms: int = 5000
    """Default wait for wait_for_element."""

    navigate_action_pages: bool = True
    """Navigate interactive-action pages to the dev-server origin first."""

    specs: tuple[BrowserSpec, ...] = field(init=False, default=())
    """Parsed browser specs, derived from ``browsers``."""

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self.browsers = tuple(self.browsers)
        self.chromium_args = tuple(self.chromium_args)
        self.specs = _parse_browsers(self.browsers, self.headless, self.chromium_args)
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values."""
        if not self.specs:
            raise ValueError("At least one browser must be configured")
        names = [spec.name for spec in self.specs]
        if len(set(names)) != len(names):
            raise ValueError(f"Browser identifiers must be unique: {names}")
        if not self.dev_server_url.startswith(("http://", "https://")):
            raise ValueError("dev_server_url must be an http(s) URL")
        if not self.invoke_path.startswith("/"):
            raise ValueError("invoke_path must start with '/'")
        if self.session_timeout_seconds <= 0:
            raise ValueError("session_timeout_seconds must be positive")
        if self.bridge_timeout_seconds <= 0:
            raise ValueError("bridge_timeout_seconds must be positive")
        if self.action_timeout_ms <= 0:
            raise ValueError("action_timeout_ms must be positive")
        if self.selected_browser is not None and self.selected_browser not in names:
            raise ValueError(
                f"Selected browser '{self.selected_browser}' is not configured "
                f"(configured: {', '.join(names)})"
            )

    @property
    def browser_names(self) -> list[str]:
        """All configured browser identifiers in configuration order."""
        return [spec.name for spec in self.specs]

    def spec_for(self, name: str) -> BrowserSpec:
        """Get the spec for a configured identifier."""
        for spec in self.specs:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def active_browsers(self) -> list[BrowserSpec]:
        """Specs that participate in this run after applying the selection signal."""
        if self.selected_browser is None:
            return list(self.specs)
        return [spec for spec in self.specs if spec.name == self.selected_browser]

    def with_overrides(self, **changes: Any) -> Self:
        """
        Create a new config with specified overrides.

        Returns a new instance - does not mutate the original.
        """
        changes = {k: v for k, v in changes.items() if v is not None}
        return replace(self, **changes)


def load_runner_config(
    env_prefix: str = "PAGERUNNER_",
    defaults: RunnerConfig | None = None,
) -> RunnerConfig:
    """
    Load runner configuration from environment variables.

    Environment variables (all optional):
    - PAGERUNNER_BROWSERS: Comma-separated browser entries
    - PAGERUNNER_BROWSER: Run only this browser identifier
    - PAGERUNNER_DEV_SERVER_URL: Dev-server origin
    - PAGERUNNER_INVOKE_PATH: In-page invoke endpoint path
    - PAGERUNNER_HEADLESS: Launch headless (true/false)
    - PAGERUNNER_SESSION_TIMEOUT: Session creation timeout in seconds
    - PAGERUNNER_BRIDGE_TIMEOUT: Bridge invoke timeout in seconds
    - PAGERUNNER_ACTION_TIMEOUT_MS: Default wait_for_element timeout

    Args:
        env_prefix: Prefix for environment variables
        defaults: Default configuration to use as base

    Returns:
        Loaded and validated RunnerConfig
    """
    base = defaults or RunnerConfig()

    def get_str(key: str, default: str | None) -> str | None:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None or not value.strip():
            return default
        return value.strip()

    def get_int(key: str, default: int) -> int:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_float(key: str, default: float) -> float:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(
                "Invalid float value for config",
                key=key,
                value=value,
                using_default=default,
            )
            return default

    def get_bool(key: str, default: bool) -> bool:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    def get_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        value = os.environ.get(f"{env_prefix}{key}")
        if value is None:
            return default
        items = tuple(item.strip() for item in value.split(",") if item.strip())
        if not items:
            logger.warning("Empty browser list in config", key=key, using_default=default)
            return default
        return items

    return RunnerConfig(
        browsers=get_list("BROWSERS", base.browsers),
        dev_server_url=get_str("DEV_SERVER_URL", base.dev_server_url) or base.dev_server_url,
        invoke_path=get_str("INVOKE_PATH", base.invoke_path) or base.invoke_path,
        headless=get_bool("HEADLESS", base.headless),
        chromium_args=base.chromium_args,
        selected_browser=get_str("BROWSER", base.selected_browser),
        session_timeout_seconds=get_float("SESSION_TIMEOUT", base.session_timeout_seconds),
        bridge_timeout_seconds=get_float("BRIDGE_TIMEOUT", base.bridge_timeout_seconds),
        action_timeout_ms=get_int("ACTION_TIMEOUT_MS", base.action_timeout_ms),
        navigate_action_pages=get_bool("NAVIGATE_ACTION_PAGES", base.navigate_action_pages),
    )


def load_runner_config_file(
    path: str | Path,
    env_prefix: str = "PAGERUNNER_",
) -> RunnerConfig:
    """
    Load runner configuration from a YAML file, then apply environment overrides.

    Unknown keys are ignored with a warning.
    """
    config_path = Path(path)
    with config_path.open() as f:
        file_config: dict[str, Any] = yaml.safe_load(f) or {}

    if not isinstance(file_config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    known = set(RunnerConfig.__dataclass_fields__) - {"specs"}
    unknown = sorted(set(file_config) - known)
    if unknown:
        logger.warning("Ignoring unknown config keys", path=str(config_path), keys=unknown)

    values = {k: v for k, v in file_config.items() if k in known}
    for key in ("browsers", "chromium_args"):
        if isinstance(values.get(key), str):
            values[key] = tuple(v.strip() for v in values[key].split(","))

    return load_runner_config(env_prefix=env_prefix, defaults=RunnerConfig(**values))
