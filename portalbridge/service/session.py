"""Per-user authenticated sessions against the portal.

``SessionManager`` keeps one ``AuthenticatedChannel`` per ``UserHandle``;
nothing here remembers an "active" user between calls, so every operation
takes the identity explicitly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
from urllib.parse import urljoin, urlsplit

import httpx

from portalbridge.logging import get_logger
from portalbridge.service.errors import (
    AuthenticationError,
    CrossDomainSessionError,
    IdentityRequiredError,
    PortalUnavailableError,
    SessionInvalidError,
)
from portalbridge.service.login_flow import LoginFlowState, LoginOutcome, cookie_header_from_jar
from portalbridge.storage.common import normalize_identity, user_handle
from portalbridge.storage.models import StoredSession

logger = get_logger(__name__)


class LoginFlow(Protocol):
    async def run(self) -> LoginOutcome: ...


LoginFlowFactory = Callable[[str], LoginFlow]


def parse_cookie_header(header: str) -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for chunk in (header or "").split(";"):
        name, sep, value = chunk.strip().partition("=")
        if sep and name:
            pairs.append((name.strip(), value.strip()))
    return pairs


def is_login_url(url: Any) -> bool:
    return "login" in str(url).lower()


@dataclass
class AuthResult:
    authenticated: bool
    message: str
    source: str = "none"


@dataclass
class AuthenticatedChannel:
    """Live cookie jar for one identity; never shared between identities."""

    identity: str
    handle: str
    client: httpx.AsyncClient
    raw_cookie_header: str
    user_agent: str
    trusted: bool = False

    def cookie_header(self) -> str:
        # Jar includes any Set-Cookie merged since hydration
        return cookie_header_from_jar(self.client.cookies) or self.raw_cookie_header

    async def aclose(self) -> None:
        self.trusted = False
        await self.client.aclose()


class SessionManager:
    """Owns the authenticated-session state machine for every user."""

    def __init__(
        self,
        *,
        base_url: str,
        credential_store,
        login_flow_factory: LoginFlowFactory,
        probe_path: str = "/parent",
        request_timeout: float = 10.0,
        user_agent: str = "Mozilla/5.0 (compatible; portalbridge)",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        parts = urlsplit(self.base_url)
        self._portal_netloc = parts.netloc.lower()
        self._portal_host = parts.hostname or ""
        self.probe_url = self.resolve_url(probe_path)
        self.credential_store = credential_store
        self.login_flow_factory = login_flow_factory
        self.request_timeout = request_timeout
        self.user_agent = user_agent
        self._transport = transport
        self._channels: Dict[str, AuthenticatedChannel] = {}
        # handle -> (shared attempt, whether that attempt may run the login flow)
        self._pending: Dict[str, Tuple[asyncio.Future[AuthResult], bool]] = {}

    # -- helpers ------------------------------------------------------------

    @staticmethod
    def _require_identity(identity: Optional[str]) -> str:
        if not identity or not identity.strip():
            raise IdentityRequiredError(
                "No user identity available. Provide userEmail or set a default user."
            )
        return normalize_identity(identity)

    def resolve_url(self, url_or_path: str) -> str:
        if urlsplit(url_or_path).scheme:
            return url_or_path
        return urljoin(self.base_url + "/", url_or_path.lstrip("/"))

    def is_cross_domain(self, url: str) -> bool:
        return urlsplit(url).netloc.lower() != self._portal_netloc

    def _open_channel(self, identity: str, session: StoredSession) -> AuthenticatedChannel:
        user_agent = session.user_agent or self.user_agent
        client = httpx.AsyncClient(
            transport=self._transport,
            timeout=self.request_timeout,
            headers={"User-Agent": user_agent},
        )
        for name, value in parse_cookie_header(session.cookies):
            client.cookies.set(name, value, domain=self._portal_host)
        return AuthenticatedChannel(
            identity=identity,
            handle=user_handle(identity),
            client=client,
            raw_cookie_header=session.cookies,
            user_agent=user_agent,
        )

    async def _install(self, channel: AuthenticatedChannel) -> None:
        previous = self._channels.get(channel.handle)
        channel.trusted = True
        self._channels[channel.handle] = channel
        if previous is not None and previous is not channel:
            await previous.aclose()

    def _trusted_channel(self, handle: str) -> Optional[AuthenticatedChannel]:
        channel = self._channels.get(handle)
        if channel is not None and channel.trusted:
            return channel
        return None

    # -- authentication -----------------------------------------------------

    async def ensure_authenticated(self, identity: Optional[str]) -> bool:
        result = await self.authenticate(identity)
        return result.authenticated

    async def authenticate(
        self, identity: Optional[str], *, interactive: bool = True
    ) -> AuthResult:
        """Guarantee a trusted channel for ``identity``.

        Reuses a trusted in-memory channel without touching the network;
        otherwise probes a stored session and, only if that fails, runs the
        interactive login flow. Concurrent callers for the same user share a
        single attempt. An interactive caller that joined a non-interactive
        attempt which failed starts the login flow itself.
        """

        identity = self._require_identity(identity)
        handle = user_handle(identity)
        while True:
            if self._trusted_channel(handle) is not None:
                return AuthResult(True, "Already authenticated", "memory")

            entry = self._pending.get(handle)
            if entry is None or entry[0].done():
                return await asyncio.shield(self._start_attempt(identity, handle, interactive))

            pending, pending_interactive = entry
            logger.info("auth_attempt_joined", user_handle=handle, interactive=pending_interactive)
            result = await asyncio.shield(pending)
            if result.authenticated or pending_interactive or not interactive:
                return result
            logger.info("auth_attempt_upgraded", user_handle=handle)

    def _start_attempt(
        self, identity: str, handle: str, interactive: bool
    ) -> asyncio.Future[AuthResult]:
        pending = asyncio.ensure_future(self._authenticate(identity, handle, interactive))
        self._pending[handle] = (pending, interactive)

        def _clear(done: asyncio.Future, handle: str = handle) -> None:
            entry = self._pending.get(handle)
            if entry is not None and entry[0] is done:
                del self._pending[handle]

        pending.add_done_callback(_clear)
        return pending

    async def _authenticate(self, identity: str, handle: str, interactive: bool) -> AuthResult:
        session = await self.credential_store.load_session(identity)
        if session is not None:
            channel = self._open_channel(identity, session)
            if await self._probe(channel):
                await self._install(channel)
                logger.info("stored_session_accepted", user_handle=handle)
                return AuthResult(True, "Using stored session", "stored")
            await channel.aclose()
            logger.info("stored_session_rejected", user_handle=handle)

        if not interactive:
            return AuthResult(False, "Stored session is missing or no longer accepted")

        outcome = await self._run_login_flow(identity, handle)
        if not outcome.success:
            return AuthResult(False, outcome.message, "login")
        await self._install(self._open_channel(identity, outcome.session))
        return AuthResult(True, outcome.message, "login")

    async def _probe(self, channel: AuthenticatedChannel) -> bool:
        """One cheap authenticated-only GET; a redirect to login means invalid."""

        try:
            response = await channel.client.get(self.probe_url, follow_redirects=True)
        except httpx.HTTPError as exc:
            logger.warning(
                "session_probe_failed",
                user_handle=channel.handle,
                error_type=type(exc).__name__,
            )
            return False
        valid = response.is_success and not is_login_url(response.url)
        logger.debug(
            "session_probe",
            user_handle=channel.handle,
            status=response.status_code,
            valid=valid,
        )
        return valid

    async def _run_login_flow(self, identity: str, handle: str) -> LoginOutcome:
        logger.info("login_flow_requested", user_handle=handle)
        try:
            flow = self.login_flow_factory(identity)
            return await flow.run()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("login_flow_crashed", user_handle=handle, error=str(exc))
            return LoginOutcome(LoginFlowState.FAILED, "Login failed unexpectedly")

    # -- requests -----------------------------------------------------------

    async def authenticated_request(
        self, identity: Optional[str], url: str, method: str = "GET", **kwargs: Any
    ) -> httpx.Response:
        """Send ``method url`` as ``identity``.

        A redirect to login re-authenticates once (which may run the
        interactive flow) and retries. A network timeout re-validates the
        stored session without prompting and retries once; a second failure
        is reported as the portal being unavailable.
        """

        identity = self._require_identity(identity)
        handle = user_handle(identity)
        target = self.resolve_url(url)
        interactive = True
        for attempt in (1, 2):
            result = await self.authenticate(identity, interactive=interactive)
            if not result.authenticated:
                if not interactive:
                    raise PortalUnavailableError("The portal is not responding; try again shortly")
                raise AuthenticationError(result.message or "Authentication required")
            channel = self._trusted_channel(handle)
            if channel is None:
                raise SessionInvalidError("Session was logged out during the request")
            try:
                response = await self._send(channel, method, target, **kwargs)
            except httpx.HTTPError as exc:
                logger.warning(
                    "portal_request_failed",
                    user_handle=handle,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                if attempt == 2:
                    raise PortalUnavailableError(
                        "The portal is not responding; try again shortly"
                    ) from exc
                self._distrust(handle)
                interactive = False
                continue
            if is_login_url(response.url):
                logger.info("session_redirected_to_login", user_handle=handle, attempt=attempt)
                self._distrust(handle)
                if attempt == 2:
                    raise SessionInvalidError("The portal rejected the session after re-login")
                interactive = True
                continue
            return response
        raise SessionInvalidError("The portal rejected the session")

    async def _send(
        self, channel: AuthenticatedChannel, method: str, url: str, **kwargs: Any
    ) -> httpx.Response:
        if not self.is_cross_domain(url):
            return await channel.client.request(method, url, follow_redirects=True, **kwargs)

        # Same-origin jars do not cross hosts; attach the session cookies directly
        cookie_header = channel.cookie_header()
        if not cookie_header:
            raise CrossDomainSessionError(
                "No stored session cookies to send to " + urlsplit(url).netloc
            )
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Cookie"] = cookie_header
        headers.setdefault("User-Agent", channel.user_agent)
        logger.debug("cross_domain_request", user_handle=channel.handle, host=urlsplit(url).netloc)
        async with httpx.AsyncClient(
            transport=self._transport, timeout=self.request_timeout
        ) as client:
            return await client.request(
                method, url, headers=headers, follow_redirects=True, **kwargs
            )

    def _distrust(self, handle: str) -> None:
        channel = self._channels.get(handle)
        if channel is not None:
            channel.trusted = False

    # -- status and teardown ------------------------------------------------

    async def is_authenticated(self, identity: Optional[str]) -> bool:
        """Trusted channel or an unexpired stored session; never hits the portal."""

        identity = self._require_identity(identity)
        if self._trusted_channel(user_handle(identity)) is not None:
            return True
        return await self.credential_store.load_session(identity) is not None

    async def has_stored_session(self, identity: Optional[str]) -> bool:
        identity = self._require_identity(identity)
        return await self.credential_store.load_session(identity) is not None

    async def logout(self, identity: Optional[str]) -> bool:
        """Drop the in-memory channel; persisted storage is untouched."""

        identity = self._require_identity(identity)
        handle = user_handle(identity)
        channel = self._channels.pop(handle, None)
        if channel is None:
            return False
        await channel.aclose()
        logger.info("channel_logged_out", user_handle=handle)
        return True

    async def clear_stored_credentials(self, identity: Optional[str]) -> bool:
        identity = self._require_identity(identity)
        removed = await self.credential_store.clear(identity)
        await self.logout(identity)
        return removed

    async def close(self) -> None:
        for pending, _ in list(self._pending.values()):
            pending.cancel()
        channels = list(self._channels.values())
        self._channels.clear()
        for channel in channels:
            await channel.aclose()


__all__ = [
    "AuthResult",
    "AuthenticatedChannel",
    "LoginFlow",
    "LoginFlowFactory",
    "SessionManager",
    "is_login_url",
    "parse_cookie_header",
]
