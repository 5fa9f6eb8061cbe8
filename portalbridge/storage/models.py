from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Literal, Optional, Union

from portalbridge.storage.errors import CorruptRecordError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        ts = datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str):
        ts = datetime.fromisoformat(value)
    else:
        raise CorruptRecordError(f"unparseable timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class StoredSession:
    """Captured portal session.

    ``expires_at`` is fixed at capture time; the portal's own cookie expiry is
    never consulted because sessions are invalidated server-side without
    notice.
    """

    cookies: str
    user_agent: str
    created_at: datetime
    expires_at: datetime
    kind: Literal["session"] = "session"

    @classmethod
    def capture(
        cls,
        cookies: str,
        user_agent: str,
        *,
        lifetime_hours: int = 24,
        now: Optional[datetime] = None,
    ) -> "StoredSession":
        created = now or utcnow()
        return cls(
            cookies=cookies,
            user_agent=user_agent,
            created_at=created,
            expires_at=created + timedelta(hours=lifetime_hours),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "cookies": self.cookies,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class LegacyCredentials:
    """Raw username/password pair written by older deployments.

    Loaded so it can be recognised and reported, never used as a session.
    """

    username: str
    password: str
    kind: Literal["credentials"] = "credentials"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "username": self.username, "password": self.password}


Secret = Union[StoredSession, LegacyCredentials]


def secret_from_dict(payload: Dict[str, Any]) -> Secret:
    """Resolve the tagged union explicitly on ``kind``."""

    kind = payload.get("kind")
    try:
        if kind == "session":
            return StoredSession(
                cookies=str(payload["cookies"]),
                user_agent=str(payload.get("user_agent") or ""),
                created_at=_parse_ts(payload["created_at"]),
                expires_at=_parse_ts(payload["expires_at"]),
            )
        if kind == "credentials":
            return LegacyCredentials(
                username=str(payload["username"]), password=str(payload["password"])
            )
    except (KeyError, ValueError) as exc:
        raise CorruptRecordError(f"malformed {kind} record", {"error": str(exc)}) from exc
    raise CorruptRecordError(f"unknown secret kind: {kind!r}")


@dataclass
class UserRecord:
    handle: str
    email: str
    is_default: bool = False
    # None until the user is first resolved for a tool call
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "handle": self.handle,
            "email": self.email,
            "is_default": self.is_default,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else "",
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "UserRecord":
        try:
            is_default = payload.get("is_default", False)
            if isinstance(is_default, str):
                is_default = is_default.lower() in {"1", "true", "yes"}
            last_used = payload.get("last_used_at")
            return cls(
                handle=str(payload["handle"]),
                email=str(payload["email"]),
                is_default=bool(is_default),
                last_used_at=_parse_ts(last_used) if last_used else None,
                created_at=_parse_ts(payload["created_at"]),
            )
        except (KeyError, ValueError) as exc:
            raise CorruptRecordError("malformed user record", {"error": str(exc)}) from exc


@dataclass
class CachedResult:
    payload: Any
    captured_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload": self.payload,
            "captured_at": self.captured_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CachedResult":
        try:
            return cls(
                payload=payload.get("payload"),
                captured_at=_parse_ts(payload["captured_at"]),
                expires_at=_parse_ts(payload["expires_at"]),
            )
        except (KeyError, ValueError) as exc:
            raise CorruptRecordError("malformed cache entry", {"error": str(exc)}) from exc
