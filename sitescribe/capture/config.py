"""Configuration system for page capture.

This module provides the capture settings model (format toggles, script and
network data options, auto-capture, LLM pass-through) and the engine timings,
plus settings stores loading them from YAML with environment-specific
overrides.
"""

import copy
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..models.capture import CaptureKind


logger = logging.getLogger(__name__)


ENVIRONMENT_VARIABLE = "SITESCRIBE_ENV"

VALID_ENVIRONMENTS = {'production', 'staging', 'development', 'test'}


class CaptureFormatToggles(BaseModel):
    """Which optional capture kinds are enabled."""

    screenshot: bool = Field(default=True, description="Visible and full-page screenshots")
    html: bool = Field(default=True, description="Cleaned page HTML")
    markdown: bool = Field(default=True, description="Markdown content")
    mhtml: bool = Field(default=False, description="Single-file MHTML snapshot")
    text: bool = Field(default=False, description="Plain text content")
    readable: bool = Field(default=False, description="Readable article text")

    def enabled_kinds(self) -> List[CaptureKind]:
        """Optional capture kinds switched on by these toggles."""
        kinds = []
        if self.screenshot:
            kinds.extend([CaptureKind.SCREENSHOT_VISIBLE, CaptureKind.SCREENSHOT_FULL])
        for name in ('mhtml', 'html', 'text', 'markdown', 'readable'):
            if getattr(self, name):
                kinds.append(CaptureKind(name))
        return kinds


class LLMSettings(BaseModel):
    """Summarization settings, passed through read-only."""

    enabled: bool = Field(default=False, description="Enable LLM summaries")
    endpoint: Optional[str] = Field(default=None, description="Completion endpoint URL")
    api_key: Optional[str] = Field(default=None, description="API key")
    model: str = Field(default="gpt-3.5-turbo", description="Model name")
    prompt: Optional[str] = Field(default=None, description="Summary prompt")


class EngineTimings(BaseModel):
    """Timeouts, delays and limits of the capture pipeline (milliseconds)."""

    probe_timeout: int = Field(default=1000, ge=1, description="Agent liveness probe timeout")
    inject_settle: int = Field(default=500, ge=0, description="Wait after injecting the agent")
    agent_attempts: int = Field(default=3, ge=1, le=10, description="Agent readiness attempts")
    agent_backoff: int = Field(default=1000, ge=0, description="Backoff unit between attempts")
    content_timeout: int = Field(default=5000, ge=1, description="Content collection timeout")
    request_timeout: int = Field(default=5000, ge=1, description="Timeout of other agent requests")
    dimension_timeout: int = Field(default=5000, ge=1, description="Page dimension probe timeout")
    scroll_step_px: int = Field(default=200, ge=1, description="Pixels per scroll step")
    scroll_interval: int = Field(default=500, ge=0, description="Delay after each scroll step")
    settle_timeout: int = Field(default=5000, ge=0, description="Quiet period after the sweep")
    fallback_height: int = Field(default=5000, ge=0, description="Sweep height without dimensions")
    screenshot_min_delay: int = Field(default=1000, ge=0, description="Spacing between screenshots")
    capture_delay: int = Field(default=2000, ge=0, description="Debounce after page load")
    script_cache_ttl: int = Field(default=1800000, ge=1, description="Script cache clear interval")
    max_concurrent_captures: int = Field(default=4, ge=1, le=32, description="Parallel capture kinds")


class BrowserSettings(BaseModel):
    """Browser launched by the Playwright host."""

    engine: str = Field(default="chromium", description="Browser engine")
    headless: bool = Field(default=True, description="Run without a window")
    window_width: int = Field(default=1366, ge=320, description="Viewport width")
    window_height: int = Field(default=768, ge=240, description="Viewport height")
    user_agent: Optional[str] = Field(default=None, description="User agent override")
    locale: str = Field(default="en-US", description="Browser locale")
    ignore_https_errors: bool = Field(default=False, description="Ignore TLS errors")
    navigation_timeout_ms: int = Field(default=30000, ge=1000, description="Page load timeout")

    @field_validator('engine')
    @classmethod
    def validate_engine(cls, v):
        valid_engines = {'chromium', 'firefox', 'webkit'}
        if v not in valid_engines:
            raise ValueError(f"Browser engine must be one of: {valid_engines}")
        return v


class CaptureSettings(BaseModel):
    """Root configuration for the capture system."""

    environment: str = Field(default="production", description="Environment name")
    capture_formats: CaptureFormatToggles = Field(default_factory=CaptureFormatToggles)
    capture_scripts: bool = Field(default=True, description="Collect page scripts")
    capture_network_requests: bool = Field(default=True, description="Collect network requests")
    max_network_requests: int = Field(default=100, ge=1, description="Network requests kept")
    auto_capture_enabled: bool = Field(default=True, description="Capture pages after load")
    llm: LLMSettings = Field(default_factory=LLMSettings)
    base_dir: str = Field(default="webData", description="Root folder of all bundles")
    timings: EngineTimings = Field(default_factory=EngineTimings)
    browser: BrowserSettings = Field(default_factory=BrowserSettings)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in VALID_ENVIRONMENTS:
            raise ValueError(f"Environment must be one of: {VALID_ENVIRONMENTS}")
        return v

    @field_validator('base_dir')
    @classmethod
    def validate_base_dir(cls, v):
        v = v.strip().strip('/')
        if not v:
            raise ValueError("base_dir cannot be empty")
        return v

    def optional_kinds(self) -> List[CaptureKind]:
        return self.capture_formats.enabled_kinds()

    def agent_content_options(self) -> Dict[str, Any]:
        """Options sent with the agent's content request."""
        return {
            'captureScripts': self.capture_scripts,
            'captureNetworkRequests': self.capture_network_requests,
            'maxNetworkRequests': self.max_network_requests,
        }


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def settings_from_dict(
    data: Optional[Dict[str, Any]],
    environment: Optional[str] = None,
    source: str = "<dict>"
) -> CaptureSettings:
    """Build settings from raw config data, applying environment overrides.

    Args:
        data: Parsed configuration, optionally with an ``environments`` mapping
        environment: Environment name (defaults to ``$SITESCRIBE_ENV`` or the file's value)
        source: Name used in error messages

    Returns:
        Validated settings

    Raises:
        ValueError: If validation fails
    """
    data = dict(data or {})
    environments = data.pop('environments', None) or {}
    environment = environment or os.environ.get(ENVIRONMENT_VARIABLE) or data.get('environment')

    if environment:
        data['environment'] = environment
        if environment in environments:
            data = _deep_merge(data, environments[environment] or {})

    try:
        return CaptureSettings(**data)
    except ValidationError as e:
        raise ValueError(f"Configuration validation failed for {source}: {e}")


class SettingsStore(ABC):
    """Read-only key-value settings store."""

    @abstractmethod
    async def load(self) -> CaptureSettings:
        """Current settings with every field defaulted."""


class StaticSettingsStore(SettingsStore):
    """Settings held in memory."""

    def __init__(self, settings: Optional[CaptureSettings] = None):
        self.settings = settings or CaptureSettings()

    async def load(self) -> CaptureSettings:
        return self.settings


class YamlSettingsStore(SettingsStore):
    """Settings loaded from a YAML file, re-read when the file changes."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialize the store.

        Args:
            config_path: Path to the YAML settings file; a missing file yields defaults
        """
        self.config_path = Path(config_path)
        self._settings: Optional[CaptureSettings] = None
        self._loaded_mtime: Optional[float] = None
        self._loaded_env: Optional[str] = None

    async def load(self) -> CaptureSettings:
        return self.load_sync()

    def load_sync(self, force_reload: bool = False) -> CaptureSettings:
        """Load settings, reusing the cached copy while file and environment are unchanged.

        Raises:
            ValueError: If the YAML is invalid or validation fails
        """
        current_env = os.environ.get(ENVIRONMENT_VARIABLE)
        mtime = self.config_path.stat().st_mtime if self.config_path.exists() else None

        if (
            self._settings is not None
            and not force_reload
            and mtime == self._loaded_mtime
            and current_env == self._loaded_env
        ):
            return self._settings

        if mtime is None:
            logger.info(f"Settings file {self.config_path} not found, using defaults")
            data: Dict[str, Any] = {}
        else:
            try:
                with open(self.config_path, 'r') as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {self.config_path}: {e}")
            if not isinstance(data, dict):
                raise ValueError(f"Settings in {self.config_path} must be a mapping")

        self._settings = settings_from_dict(data, current_env, source=str(self.config_path))
        self._loaded_mtime = mtime
        self._loaded_env = current_env
        logger.debug(f"Loaded settings from {self.config_path} ({self._settings.environment})")
        return self._settings
