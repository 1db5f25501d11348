"""Configuration loader for Space Relay using Pydantic settings.

Config precedence (highest wins):
  1. CLI flags (where applicable)
  2. Environment variables (SPACERELAY_* with __ for nesting)
  3. settings.local.toml
  4. settings.<env>.toml
  5. settings.default.toml
"""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

_THIS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = Path(os.getenv("SPACERELAY_PROJECT_ROOT", _THIS_DIR.parents[2]))
CONFIG_DIR = PROJECT_ROOT / "config"

ENV_VAR_NAME = "SPACERELAY_ENV"
DEFAULT_ENV = "local"


def _resolve_env() -> str:
    return (os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()


def _load_toml(path: Path) -> dict[str, Any]:
    if path.is_file():
        with open(path, "rb") as f:
            return tomllib.load(f)
    return {}


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class BrowserSettings(BaseSettings):
    """Playwright browser settings."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_BROWSER__")

    headless: bool = True
    timeout_ms: int = 60_000
    user_agent: str = ""
    proxy: str = ""
    sandbox: bool = False
    slow_mo_ms: int = 0
    viewport_width: int = 1280
    viewport_height: int = 720
    apply_stealth_scripts: bool = True


class PlatformSettings(BaseSettings):
    """Target platform URLs and URL canonicalization rules."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_PLATFORM__")

    login_url: str = "https://twitter.com/i/flow/login"
    login_path_marker: str = "/i/flow/login"
    primary_domain: str = "twitter.com"
    alternate_domains: list[str] = Field(
        default_factory=lambda: ["x.com", "www.x.com", "mobile.x.com", "www.twitter.com", "mobile.twitter.com"]
    )
    preview_suffixes: list[str] = Field(default_factory=lambda: ["/peek"])

    @property
    def url_rules(self) -> dict[str, Any]:
        """Keyword arguments for ``normalize_room_url``."""
        return {
            "primary_domain": self.primary_domain,
            "alternate_domains": tuple(self.alternate_domains),
            "preview_suffixes": tuple(self.preview_suffixes),
        }


class CredentialSettings(BaseSettings):
    """Platform credentials. Never logged in plaintext."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_CREDENTIALS__")

    username: str = ""
    password: SecretStr = SecretStr("")
    email: str = ""


class SelectorSettings(BaseSettings):
    """Ordered selector, phrase and coordinate lists used by the session driver.

    Every list is tried top-down; order matters.
    """

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_SELECTORS__")

    username_fields: list[str] = Field(
        default_factory=lambda: [
            'input[name="text"]',
            'input[autocomplete="username"]',
            'input[name="username"]',
            'input[data-testid="ocfEnterTextTextInput"]',
            'input[autocapitalize="none"]',
            'input[type="text"]',
        ]
    )
    verification_fields: list[str] = Field(
        default_factory=lambda: [
            'input[data-testid="ocfEnterTextTextInput"]',
            'input[name="text"]',
            'input[autocomplete="email"]',
            'input[type="text"]',
        ]
    )
    password_fields: list[str] = Field(
        default_factory=lambda: [
            'input[name="password"]',
            'input[type="password"]',
            'input[autocomplete="current-password"]',
        ]
    )
    next_buttons: list[str] = Field(
        default_factory=lambda: [
            'div[data-testid="ocfLoginNextButton"]',
            'div[data-testid="LoginForm_Forward_Button"]',
            'button[data-testid="ocfEnterTextNextButton"]',
            'div[role="button"]:has-text("Next")',
            'button:has-text("Next")',
            'button[type="submit"]',
        ]
    )
    login_buttons: list[str] = Field(
        default_factory=lambda: [
            'div[data-testid="LoginForm_Login_Button"]',
            'button[data-testid="LoginForm_Login_Button"]',
            'div[role="button"]:has-text("Log in")',
            'button:has-text("Log in")',
            'button[type="submit"]',
        ]
    )
    next_phrases: list[str] = Field(default_factory=lambda: ["Next"])
    login_phrases: list[str] = Field(default_factory=lambda: ["Log in"])
    verification_phrases: list[str] = Field(
        default_factory=lambda: [
            "Enter your phone number or username",
            "Enter your phone number or email",
            "Enter your email",
            "unusual login activity",
        ]
    )
    login_failure_phrases: list[str] = Field(
        default_factory=lambda: [
            "Wrong password",
            "Incorrect password",
            "Login failed",
            "Sorry, we could not find your account",
        ]
    )
    login_success_markers: list[str] = Field(
        default_factory=lambda: [
            '[data-testid="SideNav_AccountSwitcher_Button"]',
            '[data-testid="AppTabBar_Home_Link"]',
            '[data-testid="primaryColumn"]',
            'a[href="/home"]',
        ]
    )
    room_negative_phrases: list[str] = Field(
        default_factory=lambda: [
            "This Space has ended",
            "This Space is unavailable",
            "Space ended",
            "This Space doesn't exist",
            "Hmm...this page doesn't exist",
        ]
    )
    rate_limit_phrases: list[str] = Field(
        default_factory=lambda: ["Rate limit exceeded", "Too many requests"]
    )
    already_joined_markers: list[str] = Field(
        default_factory=lambda: ['[data-testid="leaveSpace"]', '[data-testid="audioSpaceControls"]']
    )
    playback_selectors: list[str] = Field(
        default_factory=lambda: [
            '[data-testid="startListeningButton"]',
            '[data-testid="audioSpaceBarPlayButton"]',
            'div[role="button"][aria-label*="Start listening"]',
            'button[aria-label*="Start listening"]',
            'div[role="button"]:has-text("Start listening")',
            'div[role="button"]:has-text("Listen")',
        ]
    )
    playback_phrases: list[str] = Field(
        default_factory=lambda: ["Start listening", "Listen", "Join this Space", "Tune in", "Play"]
    )
    playback_coordinates: list[tuple[float, float]] = Field(
        default_factory=lambda: [(0.5, 0.5), (0.5, 0.7), (0.5, 0.85), (0.5, 0.3)]
    )
    playback_strategies: list[str] = Field(
        default_factory=lambda: ["attribute", "text", "largest", "coordinate"]
    )
    pause_controls: list[str] = Field(
        default_factory=lambda: [
            'div[aria-label="Pause"]',
            'button[aria-label="Pause"]',
            '[data-testid="audioSpacePauseButton"]',
        ]
    )
    visualizers: list[str] = Field(
        default_factory=lambda: ['[data-testid="audioSpaceVisualizer"]', ".visualizer-container"]
    )
    speaker_markers: list[str] = Field(
        default_factory=lambda: [
            '[data-testid="audioSpaceSpeakerInfo"]',
            '[data-testid="audioSpaceHostInfo"]',
            ".speaker-info",
        ]
    )
    room_markers: list[str] = Field(
        default_factory=lambda: ['[data-testid="audioSpaceTitle"]', ".space-title"]
    )
    mute_controls: list[str] = Field(default_factory=lambda: ['[data-testid="muteButton"]'])


class AudioSettings(BaseSettings):
    """Audio capture configuration (canonical S16LE mono 16 kHz)."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_AUDIO__")

    mode: str = "auto"  # auto | device | graph
    sample_rate: int = 16_000
    channels: int = 1
    bits_per_sample: int = 16
    encoding: str = "S16LE"
    chunk_bytes: int = 4096
    device_command: list[str] = Field(
        default_factory=lambda: [
            "sox", "-q", "-d", "-t", "raw", "-r", "{rate}", "-b", "{bits}",
            "-c", "{channels}", "-e", "signed-integer", "-L", "-",
        ]
    )
    graph_buffer_size: int = 4096
    drain_interval_ms: int = 250
    max_buffer_depth: int = 100
    start_retries: int = 3
    retry_wait_ms: int = 3_000
    skip_audio_verification: bool = False
    recordings_dir: str = "recordings"


class TransportSettings(BaseSettings):
    """Relay WebSocket configuration."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_TRANSPORT__")

    endpoint: str = ""
    payload_mode: str = "binary"  # binary | base64
    max_reconnect_attempts: int = 5
    backoff_seconds: float = 2.0
    max_backoff_seconds: float = 30.0
    heartbeat_seconds: float = 30.0
    queue_depth: int = 100
    open_timeout_seconds: float = 10.0
    source_name: str = "spacerelay"


class DiscoverySettings(BaseSettings):
    """Room listing surface configuration."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_DISCOVERY__")

    listing_url: str = "https://spacesdashboard.com/"
    mode: str = "top"
    language: str = "en"
    limit: int = 20
    container_timeout_ms: int = 15_000
    interval_seconds: float = 300.0
    container_selectors: list[str] = Field(
        default_factory=lambda: [
            ".space-card",
            ".spaces-list",
            ".space-item",
            'a[href*="/i/spaces/"]',
            'div[data-testid="spaces-card"]',
        ]
    )
    card_selectors: list[str] = Field(
        default_factory=lambda: [".space-card", ".space-item", 'div[data-testid="spaces-card"]', 'a[href*="/i/spaces/"]']
    )


class SessionSettings(BaseSettings):
    """Per-session timing and artifact configuration."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_SESSION__")

    output_dir: str = "data/sessions"
    selector_timeout_ms: int = 5_000
    settle_ms: int = 3_000
    post_login_wait_ms: int = 5_000
    post_click_wait_ms: int = 2_000
    rate_limit_wait_ms: int = 120_000
    type_delay_ms: int = 100
    snapshot_on_error: bool = True


class SinkSettings(BaseSettings):
    """Reference receiving sink (``spacerelay sink serve``)."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_SINK__")

    host: str = "0.0.0.0"
    port: int = 8080
    output_dir: str = "data/received"


class InfraSettings(BaseSettings):
    """Remote-machine provisioning."""

    model_config = SettingsConfigDict(env_prefix="SPACERELAY_INFRA__")

    provider: str = "local"
    keep_after_session: bool = False


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Root Space Relay settings with nested sections."""

    model_config = SettingsConfigDict(
        env_prefix="SPACERELAY_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    env: str = Field(default_factory=_resolve_env)
    project_root: Path = Field(default=PROJECT_ROOT)
    debug: bool = False

    browser: BrowserSettings = Field(default_factory=BrowserSettings)
    platform: PlatformSettings = Field(default_factory=PlatformSettings)
    credentials: CredentialSettings = Field(default_factory=CredentialSettings)
    selectors: SelectorSettings = Field(default_factory=SelectorSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    discovery: DiscoverySettings = Field(default_factory=DiscoverySettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    sink: SinkSettings = Field(default_factory=SinkSettings)
    infra: InfraSettings = Field(default_factory=InfraSettings)

    @model_validator(mode="before")
    @classmethod
    def _merge_toml_files(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Layer TOML config files before env var overrides."""
        defaults = _load_toml(CONFIG_DIR / "settings.default.toml")
        env_name = (values.get("env") or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV).strip()
        env_overrides = _load_toml(CONFIG_DIR / f"settings.{env_name}.toml")
        local_overrides = _load_toml(CONFIG_DIR / "settings.local.toml")

        # Merge: defaults < env-specific < local < explicit values
        merged: dict[str, Any] = {}
        for layer in (defaults, env_overrides, local_overrides, values):
            for key, val in layer.items():
                if isinstance(val, dict) and isinstance(merged.get(key), dict):
                    merged[key] = {**merged[key], **val}
                else:
                    merged[key] = val
        return merged

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths against project_root."""
        root = self.project_root
        if not Path(self.session.output_dir).is_absolute():
            self.session.output_dir = str(root / self.session.output_dir)
        if not Path(self.audio.recordings_dir).is_absolute():
            self.audio.recordings_dir = str(root / self.audio.recordings_dir)
        if not Path(self.sink.output_dir).is_absolute():
            self.sink.output_dir = str(root / self.sink.output_dir)
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the singleton settings instance (cached)."""
    return Settings()
