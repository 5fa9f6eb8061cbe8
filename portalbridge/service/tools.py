from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from portalbridge.logging import get_logger, sanitize_error_message
from portalbridge.service.cache import SessionCache
from portalbridge.service.calendar import CalendarSearch
from portalbridge.service.directory import DirectorySearch
from portalbridge.service.errors import (
    IdentityRequiredError,
    ServiceError,
    ToolNotFoundError,
    ValidationError,
)
from portalbridge.service.lunch import LunchVolunteerSearch
from portalbridge.service.session import SessionManager
from portalbridge.service.users import UserRegistry
from portalbridge.storage.common import normalize_identity, user_handle

logger = get_logger(__name__)

_USER_EMAIL_HELP = (
    "User email for authentication and data isolation "
    "(optional when a default user is set)"
)


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class IdentityArgs(ToolArgs):
    user_email: Optional[str] = Field(None, alias="userEmail", description=_USER_EMAIL_HELP)


class SetDefaultUserArgs(ToolArgs):
    user_email: str = Field(
        ..., alias="userEmail", min_length=3, description="Email to use when none is given"
    )


class NoArgs(ToolArgs):
    pass


class DirectorySearchArgs(IdentityArgs):
    first_name: Optional[str] = Field(None, alias="firstName", description="First name to search for")
    last_name: Optional[str] = Field(None, alias="lastName", description="Last name to search for")
    city: Optional[str] = Field(None, description="City to search for")
    postal_code: Optional[str] = Field(None, alias="postalCode", description="Postal code to search for")
    grade_level: Optional[str] = Field(
        None,
        alias="gradeLevel",
        description='Form level, e.g. "3/4 Yr Olds", "4/5 Yr Olds" or a Roman numeral "I" to "XII"',
    )
    refresh: bool = Field(False, description="Bypass the cache and fetch fresh results")


class SchoolEventsArgs(IdentityArgs):
    search_months: Optional[int] = Field(
        None,
        alias="searchMonths",
        ge=1,
        le=24,
        description="Months to search ahead (default 3, widened to 12 when empty)",
    )
    refresh: bool = Field(False, description="Bypass the cache and fetch fresh results")


class LunchVolunteerArgs(ToolArgs):
    date: Optional[str] = Field(None, description="A single date, YYYY-MM-DD")
    week: Optional[str] = Field(
        None,
        description='"this", "next", or a YYYY-MM-DD date to show its Sunday-Saturday week',
    )
    refresh: bool = Field(False, description="Accepted for compatibility; results are always live")


Handler = Callable[[Any], Awaitable[Dict[str, Any]]]


@dataclass
class ToolSpec:
    name: str
    description: str
    args_model: Type[ToolArgs]
    handler: Handler
    aliases: Tuple[str, ...] = field(default_factory=tuple)

    def describe(self) -> Dict[str, Any]:
        schema = self.args_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        schema.setdefault("required", [])
        return {"name": self.name, "description": self.description, "inputSchema": schema}


class ToolService:
    """Tool-call façade: argument validation, user resolution, result shaping.

    Every call returns a dict with ``success`` and ``message``. Service
    errors become ``success: false`` with their ``error_code``; anything
    unexpected is logged and reported generically.
    """

    def __init__(
        self,
        *,
        sessions: SessionManager,
        registry: UserRegistry,
        cache: SessionCache,
        directory: DirectorySearch,
        calendar: CalendarSearch,
        lunch: LunchVolunteerSearch,
    ) -> None:
        self.sessions = sessions
        self.registry = registry
        self.cache = cache
        self.directory = directory
        self.calendar = calendar
        self.lunch = lunch
        self._specs: List[ToolSpec] = [
            ToolSpec(
                "login",
                "Log in to the school portal. Opens a browser for authentication; "
                "credentials never pass through the assistant.",
                IdentityArgs,
                self._login,
                ("authenticate_browser",),
            ),
            ToolSpec(
                "set_default_user",
                "Set the email used when a tool call does not name one.",
                SetDefaultUserArgs,
                self._set_default_user,
            ),
            ToolSpec(
                "list_users",
                "List known users and show which one is the default.",
                NoArgs,
                self._list_users,
            ),
            ToolSpec(
                "check_authentication",
                "Check whether a usable stored session exists.",
                IdentityArgs,
                self._check_authentication,
            ),
            ToolSpec(
                "search_directory",
                "Search the school directory for students and parents. "
                "Results are cached for 24 hours.",
                DirectorySearchArgs,
                self._search_directory,
                ("directory_search",),
            ),
            ToolSpec(
                "school_events",
                "Upcoming school calendar events. Searches 3 months ahead and "
                "widens to 12 months when nothing is found.",
                SchoolEventsArgs,
                self._school_events,
                ("upcoming_events",),
            ),
            ToolSpec(
                "lunch_volunteers",
                "Lower School lunch volunteer openings. Only days with open slots are shown.",
                LunchVolunteerArgs,
                self._lunch_volunteers,
                ("ls_lunch_volunteer",),
            ),
            ToolSpec(
                "logout",
                "End the in-memory portal session; the stored session is kept.",
                IdentityArgs,
                self._logout,
            ),
            ToolSpec(
                "clear_credentials",
                "Delete the stored portal session and cached results.",
                IdentityArgs,
                self._clear_credentials,
            ),
        ]
        self._by_name: Dict[str, ToolSpec] = {}
        for spec in self._specs:
            self._by_name[spec.name] = spec
            for alias in spec.aliases:
                self._by_name[alias] = spec

    # -- registry -----------------------------------------------------------

    def list_tools(self) -> List[Dict[str, Any]]:
        return [spec.describe() for spec in self._specs]

    def get_spec(self, name: str) -> ToolSpec:
        spec = self._by_name.get(name)
        if spec is None:
            raise ToolNotFoundError(f"Unknown tool: {name}", detail={"tool": name})
        return spec

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run tool ``name``; raises only ToolNotFoundError."""

        spec = self.get_spec(name)
        try:
            args = spec.args_model.model_validate(arguments or {})
        except PydanticValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in exc.errors()})
            return self._failure(
                spec.name,
                ValidationError(
                    f"Invalid arguments for {spec.name}: {', '.join(fields)}",
                    detail={"fields": fields},
                ),
            )
        try:
            result = await spec.handler(args)
        except ServiceError as exc:
            return self._failure(spec.name, exc)
        except Exception as exc:
            logger.exception("tool_failed", tool=spec.name, error_type=type(exc).__name__)
            return {
                "success": False,
                "error_code": "server_error",
                "message": f"{spec.name} failed unexpectedly. Please try again.",
            }
        logger.info("tool_completed", tool=spec.name, success=result.get("success"))
        return result

    @staticmethod
    def _failure(tool: str, exc: ServiceError) -> Dict[str, Any]:
        logger.warning("tool_error", tool=tool, error_code=exc.error_code)
        return {
            "success": False,
            "error_code": exc.error_code,
            "message": sanitize_error_message(exc.message),
        }

    # -- identity -----------------------------------------------------------

    async def _resolve_user(self, provided: Optional[str]) -> Tuple[str, bool]:
        """Explicit identity wins; otherwise default, then most recent."""

        if provided and provided.strip():
            identity = normalize_identity(provided)
            await self.registry.touch(identity)
            return identity, False
        identity = await self.registry.resolve_implicit_user()
        if identity is None:
            raise IdentityRequiredError(
                "No userEmail provided and no default user is set. "
                "Use set_default_user first or pass userEmail."
            )
        await self.registry.touch(identity)
        return identity, True

    # -- handlers -----------------------------------------------------------

    async def _login(self, args: IdentityArgs) -> Dict[str, Any]:
        identity, auto = await self._resolve_user(args.user_email)
        first_user = not await self.registry.list_users()
        await self.registry.add_user(identity, make_default=first_user)
        result = await self.sessions.authenticate(identity)
        if not result.authenticated:
            return {
                "success": False,
                "error_code": "unauthorized",
                "user": identity,
                "message": f"Login failed: {result.message}",
            }
        return {
            "success": True,
            "user": identity,
            "autoDetected": auto,
            "message": f"Authenticated {identity}. {result.message}.",
        }

    async def _set_default_user(self, args: SetDefaultUserArgs) -> Dict[str, Any]:
        record = await self.registry.set_default_user(args.user_email)
        return {
            "success": True,
            "user": record.email,
            "message": f"{record.email} is now the default user.",
        }

    async def _list_users(self, args: NoArgs) -> Dict[str, Any]:
        records = await self.registry.list_users()
        users = [
            {
                "email": r.email,
                "isDefault": r.is_default,
                "lastUsedAt": r.last_used_at.isoformat() if r.last_used_at else None,
            }
            for r in records
        ]
        message = f"{len(users)} user(s) configured." if users else "No users configured yet."
        return {"success": True, "users": users, "message": message}

    async def _check_authentication(self, args: IdentityArgs) -> Dict[str, Any]:
        identity, auto = await self._resolve_user(args.user_email)
        authenticated = await self.sessions.is_authenticated(identity)
        message = (
            f"{identity} has a valid session."
            if authenticated
            else f"No valid session for {identity}. Use the login tool first."
        )
        return {
            "success": True,
            "authenticated": authenticated,
            "user": identity,
            "autoDetected": auto,
            "message": message,
        }

    async def _search_directory(self, args: DirectorySearchArgs) -> Dict[str, Any]:
        identity, _ = await self._resolve_user(args.user_email)
        entries = await self.directory.search(
            identity,
            first_name=args.first_name,
            last_name=args.last_name,
            city=args.city,
            postal_code=args.postal_code,
            grade_level=args.grade_level,
            refresh=args.refresh,
        )
        return {
            "success": True,
            "user": identity,
            "count": len(entries),
            "results": [entry.to_dict() for entry in entries],
            "message": f"Found {len(entries)} directory entries."
            if entries
            else "No directory entries matched.",
        }

    async def _school_events(self, args: SchoolEventsArgs) -> Dict[str, Any]:
        identity, _ = await self._resolve_user(args.user_email)
        events = await self.calendar.upcoming_events(
            identity, search_months=args.search_months, refresh=args.refresh
        )
        return {
            "success": True,
            "user": identity,
            "count": len(events),
            "events": [event.to_dict() for event in events],
            "message": f"Found {len(events)} upcoming events."
            if events
            else "No upcoming events found.",
        }

    async def _lunch_volunteers(self, args: LunchVolunteerArgs) -> Dict[str, Any]:
        days = await self.lunch.search(on_date=args.date, week=args.week)
        return {
            "success": True,
            "count": len(days),
            "days": [day.to_dict() for day in days],
            "message": f"{len(days)} day(s) need volunteers."
            if days
            else "No open lunch volunteer slots found.",
        }

    async def _logout(self, args: IdentityArgs) -> Dict[str, Any]:
        identity, _ = await self._resolve_user(args.user_email)
        await self.sessions.logout(identity)
        return {"success": True, "user": identity, "message": f"Logged out {identity}."}

    async def _clear_credentials(self, args: IdentityArgs) -> Dict[str, Any]:
        identity, _ = await self._resolve_user(args.user_email)
        removed = await self.sessions.clear_stored_credentials(identity)
        await self.cache.invalidate(user_handle(identity))
        message = (
            f"Stored session for {identity} cleared."
            if removed
            else f"No stored session for {identity}; nothing to clear."
        )
        return {"success": True, "user": identity, "message": message}
