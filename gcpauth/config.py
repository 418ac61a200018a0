"""Configuration system for gcpauth using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.gcpauth] section (project-level)
3. ./gcpauth.toml (project-level, explicit)
4. ~/.config/gcpauth/config.toml (user-level, overrides project)
5. The file named by GCPAUTH_CONFIG_FILE
6. Environment variables (highest priority)

Each section reads its own environment prefix.
Example: GCPAUTH_OAUTH__CLIENT_ID, GCPAUTH_TIMEOUT__CODE_WAIT
"""

from __future__ import annotations

import logging
import os
import sys
import tomllib

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


logger = logging.getLogger("gcpauth.config")

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # noqa: S105
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
CLOUD_RESOURCE_MANAGER_URL = "https://cloudresourcemanager.googleapis.com/v1/projects"

GOOGLE_CLOUD_SCOPES: list[str] = [
    "https://www.googleapis.com/auth/cloud-platform",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/bigquery.readonly",
    "https://www.googleapis.com/auth/bigquery",
]


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    project_toml = Path("gcpauth.toml")
    if project_toml.exists():
        files.append(project_toml)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "gcpauth" / "config.toml"
    else:
        user_config = Path("~/.config/gcpauth/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("GCPAUTH_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("gcpauth", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _split_scopes(v: Any) -> list[str]:
    if isinstance(v, str):
        return [s for s in v.replace(",", " ").split() if s]
    return list(v or [])


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {"client_secret"}

_REDACTED = "********"


class OAuthSettings(BaseSettings):
    """OAuth client and endpoint configuration.

    Environment prefix: GCPAUTH_OAUTH__
    Example: GCPAUTH_OAUTH__CLIENT_ID=1234.apps.googleusercontent.com

    TOML section: [tool.gcpauth.oauth]
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH_OAUTH__",
        extra="ignore",
    )

    client_id: str = Field(default="", description="OAuth2 client ID from the Google Cloud console")
    client_secret: str = Field(
        default="",
        description="OAuth2 client secret (installed-app clients still send one)",
    )
    scopes: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(GOOGLE_CLOUD_SCOPES),
        description="Scopes requested by the session cache (space or comma separated)",
    )
    authorize_url: str = GOOGLE_AUTHORIZE_URL
    token_url: str = GOOGLE_TOKEN_URL
    userinfo_url: str = GOOGLE_USERINFO_URL
    cloud_probe_url: str = Field(
        default=CLOUD_RESOURCE_MANAGER_URL,
        description="Probed when the identity endpoint fails; empty disables the probe",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def parse_scopes(cls, v: Any) -> list[str]:
        """Parse space- or comma-separated strings from env vars."""
        scopes = _split_scopes(v)
        if not scopes:
            msg = "At least one OAuth scope is required"
            raise ValueError(msg)
        return scopes


class CallbackSettings(BaseSettings):
    """Local redirect listener settings.

    Environment prefix: GCPAUTH_CALLBACK__
    Example: GCPAUTH_CALLBACK__PORT=8085
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH_CALLBACK__",
        extra="ignore",
    )

    host: str = Field(default="127.0.0.1", description="Interface the listener binds to")
    redirect_host: str = Field(
        default="localhost", description="Host name used in the redirect URI"
    )
    port: int = Field(default=3000, ge=0, le=65535, description="Preferred listener port")
    port_retry_limit: int = Field(
        default=10, ge=1, description="Ports tried (incrementing) before giving up"
    )


class TimeoutSettings(BaseSettings):
    """Flow clocks and HTTP timeouts, in seconds.

    Environment prefix: GCPAUTH_TIMEOUT__
    Example: GCPAUTH_TIMEOUT__CODE_WAIT=60
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH_TIMEOUT__",
        extra="ignore",
    )

    flow: float = Field(default=180.0, gt=0, description="Ceiling for a whole sign-in run")
    code_wait: float = Field(default=120.0, gt=0, description="Ceiling for the browser redirect")
    poll_interval: float = Field(
        default=5.0, gt=0, description="Interval of the out-of-band session check"
    )
    shutdown_grace: float = Field(default=5.0, gt=0, description="Listener close grace period")
    http: float = Field(default=30.0, gt=0, description="Token endpoint request timeout")
    identity: float = Field(default=10.0, gt=0, description="Identity endpoint request timeout")


class StoreSettings(BaseSettings):
    """Session persistence settings.

    Environment prefix: GCPAUTH_STORE__
    Example: GCPAUTH_STORE__BACKEND=file
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH_STORE__",
        extra="ignore",
    )

    backend: Literal["keyring", "file", "memory"] = Field(
        default="keyring",
        description="Secret store backend: keyring, file (encrypted), or memory",
    )
    service_name: str = Field(default="gcpauth", description="Keyring service name")
    key: str = Field(default="google-cloud-auth", description="Entry holding the session list")
    path: str = Field(
        default="~/.config/gcpauth/sessions.enc",
        description="Encrypted session file (file backend only)",
    )
    watch: bool = Field(
        default=True, description="Watch the session file for changes made by other processes"
    )


class ProjectSettings(BaseSettings):
    """Active Google Cloud project.

    Environment prefix: GCPAUTH_PROJECT__
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH_PROJECT__",
        extra="ignore",
    )

    project_id: str = ""
    region: str = "us-central1"


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: GCPAUTH_LOG__
    Example: GCPAUTH_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


_SECTION_TYPES: dict[str, type[BaseSettings]] = {
    "oauth": OAuthSettings,
    "callback": CallbackSettings,
    "timeout": TimeoutSettings,
    "store": StoreSettings,
    "project": ProjectSettings,
    "log": LogSettings,
}


class GcpAuthSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: GCPAUTH__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.gcpauth] section
    3. ./gcpauth.toml (project-level)
    4. ~/.config/gcpauth/config.toml (user-level, overrides project)
    5. GCPAUTH_CONFIG_FILE
    6. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="GCPAUTH__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    callback: CallbackSettings = Field(default_factory=CallbackSettings)
    timeout: TimeoutSettings = Field(default_factory=TimeoutSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    project: ProjectSettings = Field(default_factory=ProjectSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()

        # Explicit keyword data takes precedence over TOML
        merged = _deep_merge(toml_config, data)

        # A section given as a dict skips its own env lookup, so layer
        # the section's env values between TOML and explicit data.
        for name, section_cls in _SECTION_TYPES.items():
            if not isinstance(merged.get(name), dict):
                continue
            toml_values = toml_config.get(name)
            explicit_values = data.get(name)
            env_values = section_cls().model_dump(exclude_unset=True)
            merged[name] = section_cls(
                **{
                    **(toml_values if isinstance(toml_values, dict) else {}),
                    **env_values,
                    **(explicit_values if isinstance(explicit_values, dict) else {}),
                }
            )

        super().__init__(**merged)

    def to_display(self) -> str:
        """Format settings as a readable table with secrets redacted."""
        lines = ["gcpauth Configuration", "=" * 60]

        sections = [
            ("OAuth", "oauth"),
            ("Callback Listener", "callback"),
            ("Timeouts", "timeout"),
            ("Session Store", "store"),
            ("Project", "project"),
            ("Logging", "log"),
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr in sections},
        )

        for display_name, attr_name in sections:
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in all_data.get(attr_name, {}).items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:20} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:20} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> GcpAuthSettings:
    """Get the settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return GcpAuthSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()
