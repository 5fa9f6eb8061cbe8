from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional
from urllib.parse import urlsplit

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from portalbridge.logging import get_logger

logger = get_logger(__name__)


class LoginStrategy(str, Enum):
    """How a fresh portal session is obtained.

    - FORM: the local login page proxies the portal's form and submits the
      username/password programmatically, keeping the password in memory only
      for the single POST.
    - REDIRECT: the browser is sent to the portal's own login page and the
      session is read from the cookies that arrive with the local callback.
    """

    FORM = "form"
    REDIRECT = "redirect"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: str | List[str] | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


class Settings(BaseModel):
    """Runtime settings for the portal bridge."""

    portal_base_url: str = env_field(
        "https://portals.veracross.com/csg",
        "PORTAL_BASE_URL",
        description="Primary portal location; authenticated requests are scoped to its host",
    )
    portal_auth_url: Optional[str] = env_field(
        None,
        "PORTAL_AUTH_URL",
        description="Where the login form lives when it is not on the portal host",
    )
    portal_login_path: str = env_field("/login", "PORTAL_LOGIN_PATH")
    portal_probe_path: str = env_field("/parent", "PORTAL_PROBE_PATH")
    directory_path: str = env_field("/parent/directory/1", "PORTAL_DIRECTORY_PATH")
    calendar_path: str = env_field(
        "/parent/calendar/household/events", "PORTAL_CALENDAR_PATH"
    )
    lunch_signup_url: str = env_field(
        "https://www.signupgenius.com/go/10C084BADAA2BA2FFC43-57722061-lslunch",
        "LUNCH_SIGNUP_URL",
    )
    lunch_api_url: str = env_field(
        "https://www.signupgenius.com/SUGboxAPI.cfm?go=s.getSignupInfo",
        "LUNCH_API_URL",
    )

    encryption_master_key: Optional[str] = env_field(None, "ENCRYPTION_MASTER_KEY")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    state_dir: str = env_field(
        str(Path.home() / ".portalbridge"),
        "STATE_DIR",
        description="Directory for generated secrets",
    )

    session_lifetime_hours: int = env_field(
        24,
        "SESSION_LIFETIME_HOURS",
        description="Fixed lifetime of a captured session regardless of cookie expiry",
    )
    cache_ttl_hours: int = env_field(24, "CACHE_TTL_HOURS")
    login_timeout_seconds: float = env_field(600.0, "LOGIN_TIMEOUT_SECONDS")
    request_timeout_seconds: float = env_field(10.0, "REQUEST_TIMEOUT_SECONDS")
    max_login_rejections: int = env_field(
        5,
        "MAX_LOGIN_REJECTIONS",
        description="Rejected callbacks tolerated before a login flow gives up",
    )
    login_strategy: LoginStrategy = env_field(LoginStrategy.FORM, "LOGIN_STRATEGY")
    session_cookie_markers: List[str] = env_field(
        ["session", "auth", "_veracross", "JSESSIONID"], "SESSION_COOKIE_MARKERS"
    )
    login_failure_markers: List[str] = env_field(
        ["Invalid", "incorrect", "error"], "LOGIN_FAILURE_MARKERS"
    )
    login_success_marker: str = env_field("parent", "LOGIN_SUCCESS_MARKER")
    user_agent: str = env_field(
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "PORTAL_USER_AGENT",
    )

    callback_host: str = env_field("127.0.0.1", "CALLBACK_HOST")
    callback_port: int = env_field(
        0, "CALLBACK_PORT", description="0 binds an ephemeral port per login flow"
    )
    open_browser: bool = env_field(True, "OPEN_BROWSER")

    http_host: str = env_field("127.0.0.1", "HTTP_HOST")
    http_port: int = env_field(8000, "HTTP_PORT")
    api_key: Optional[str] = env_field(None, "MCP_API_KEY")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_cookie_markers",
        "login_failure_markers",
        "cors_allow_origins",
        mode="before",
    )
    @classmethod
    def _parse_csv(cls, value):
        return _split_csv(value)

    @field_validator("login_strategy")
    @classmethod
    def _validate_strategy(cls, value: LoginStrategy) -> LoginStrategy:
        return LoginStrategy(value)

    @field_validator("portal_base_url", "portal_auth_url")
    @classmethod
    def _strip_trailing_slash(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        parts = urlsplit(value)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ValueError(f"portal URL must be absolute http(s): {value!r}")
        return value

    @model_validator(mode="after")
    def _ensure_master_key(self) -> "Settings":
        if not self.encryption_master_key:
            self.encryption_master_key = _load_or_create_master_key(Path(self.state_dir))
        return self

    @property
    def auth_base_url(self) -> str:
        return self.portal_auth_url or self.portal_base_url


def _load_or_create_master_key(state_dir: Path) -> str:
    """Persist a generated master key so stored sessions survive restarts."""

    key_path = state_dir / ".master_key"
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("master_key_dir_setup", error=str(exc), path=str(state_dir))

    if key_path.exists() and not key_path.is_symlink():
        try:
            persisted = key_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("master_key_read_failed", error=str(exc), path=str(key_path))

    generated = secrets.token_urlsafe(48)
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(state_dir), prefix=".master_key_", suffix=".tmp"
        )
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(key_path))
    except OSError as exc:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
        logger.error("master_key_persist_failed", error=str(exc), path=str(key_path))
        raise RuntimeError(
            "Unable to persist encryption master key; set ENCRYPTION_MASTER_KEY or make STATE_DIR writable"
        ) from exc
    logger.info("master_key_generated", path=str(key_path))
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
