from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from portalbridge.config import LoginStrategy, Settings, get_settings, reset_settings_cache
from portalbridge.logging import get_logger
from portalbridge.service.cache import SessionCache
from portalbridge.service.calendar import CalendarSearch
from portalbridge.service.credentials import EncryptedUserStore
from portalbridge.service.directory import DirectorySearch
from portalbridge.service.login_flow import (
    InteractiveLoginFlow,
    PortalFormLogin,
    classify_login_response,
    open_system_browser,
)
from portalbridge.service.lunch import LunchVolunteerSearch
from portalbridge.service.session import SessionManager
from portalbridge.service.tools import ToolService
from portalbridge.service.users import UserRegistry
from portalbridge.storage.memory import MemoryStore
from portalbridge.storage.redis_store import RedisStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton service graph shared by the HTTP and MCP surfaces."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        open_browser: Optional[Callable[[str], Awaitable[Any]]] = open_system_browser,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport
        self.open_browser = open_browser if self.settings.open_browser else None
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            portal=self.settings.portal_base_url,
        )
        self.store = self._build_store()

        self.credentials = EncryptedUserStore(self.store, self.settings.encryption_master_key)
        self.cache = SessionCache(self.store, default_ttl_hours=self.settings.cache_ttl_hours)
        self.users = UserRegistry(self.store)
        self.sessions = SessionManager(
            base_url=self.settings.portal_base_url,
            credential_store=self.credentials,
            login_flow_factory=self.build_login_flow,
            probe_path=self.settings.portal_probe_path,
            request_timeout=self.settings.request_timeout_seconds,
            user_agent=self.settings.user_agent,
            transport=transport,
        )
        self.directory = DirectorySearch(
            self.sessions,
            self.cache,
            directory_path=self.settings.directory_path,
            ttl_hours=self.settings.cache_ttl_hours,
        )
        self.calendar = CalendarSearch(
            self.sessions,
            self.cache,
            calendar_path=self.settings.calendar_path,
            ttl_hours=self.settings.cache_ttl_hours,
        )
        self.lunch = LunchVolunteerSearch(
            signup_url=self.settings.lunch_signup_url,
            api_url=self.settings.lunch_api_url,
            timeout=self.settings.request_timeout_seconds,
            transport=transport,
        )
        self.tools = ToolService(
            sessions=self.sessions,
            registry=self.users,
            cache=self.cache,
            directory=self.directory,
            calendar=self.calendar,
            lunch=self.lunch,
        )
        logger.info("runtime_init_completed")

    def _build_store(self):
        if self.settings.use_memory_store:
            # Test runs must not share state through the state directory
            state_dir = None if self.settings.test_mode else self.settings.state_dir
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryStore(state_dir=state_dir)

        store = RedisStore(self.settings.redis_url)
        try:
            store.verify_connection_sync()
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="redis",
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
            )
            raise RuntimeError(
                "Redis is required for stored sessions; start Redis or set USE_MEMORY_STORE=true"
            ) from exc
        logger.info(
            "runtime_store_initialized",
            store_type="redis",
            redis_url=_mask_url_password(self.settings.redis_url),
        )
        return store

    @property
    def portal_login_url(self) -> str:
        return f"{self.settings.auth_base_url}{self.settings.portal_login_path}"

    def build_login_flow(self, identity: str) -> InteractiveLoginFlow:
        settings = self.settings
        form_login = None
        if settings.login_strategy is LoginStrategy.FORM:

            def classifier(response: httpx.Response) -> bool:
                return classify_login_response(
                    response,
                    success_marker=settings.login_success_marker,
                    failure_markers=settings.login_failure_markers,
                )

            form_login = PortalFormLogin(
                self.portal_login_url,
                user_agent=settings.user_agent,
                session_markers=settings.session_cookie_markers,
                classifier=classifier,
                timeout=settings.request_timeout_seconds,
                transport=self.transport,
            )
        return InteractiveLoginFlow(
            identity,
            credential_store=self.credentials,
            strategy=settings.login_strategy,
            portal_login_url=self.portal_login_url,
            form_login=form_login,
            host=settings.callback_host,
            port=settings.callback_port,
            timeout_seconds=settings.login_timeout_seconds,
            session_lifetime_hours=settings.session_lifetime_hours,
            session_markers=settings.session_cookie_markers,
            max_rejections=settings.max_login_rejections,
            open_browser=self.open_browser,
            user_agent=settings.user_agent,
        )

    async def aclose(self) -> None:
        await self.sessions.close()
        await self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            previous = runtime
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None
            try:
                if loop is not None:
                    loop.create_task(previous.aclose())
                else:
                    asyncio.run(previous.aclose())
            except Exception as exc:
                # Clients may be bound to a loop that has already closed
                logger.debug("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
