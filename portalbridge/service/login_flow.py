"""Interactive login: an ephemeral local listener that captures a fresh session.

One ``InteractiveLoginFlow`` serves one login attempt for one identity::

    IDLE -> SERVER_LISTENING -> AWAITING_CALLBACK -> SESSION_CAPTURED
                                                  -> TIMED_OUT
                                                  -> REJECTED
                                                  -> FAILED

The listener is torn down on every terminal transition, including
cancellation and unexpected errors.
"""

from __future__ import annotations

import asyncio
import contextlib
import html
import socket
import webbrowser
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, Optional
from urllib.parse import quote

import httpx
import uvicorn
from bs4 import BeautifulSoup
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse, RedirectResponse
from pydantic import BaseModel, Field

from portalbridge.config import LoginStrategy
from portalbridge.logging import get_logger
from portalbridge.service.errors import AuthenticationError, PortalUnavailableError
from portalbridge.storage.common import user_handle
from portalbridge.storage.models import StoredSession

logger = get_logger(__name__)

DEFAULT_SESSION_MARKERS = ("session", "auth", "_veracross", "JSESSIONID")
DEFAULT_FAILURE_MARKERS = ("Invalid", "incorrect", "error")


class LoginFlowState(str, Enum):
    IDLE = "idle"
    SERVER_LISTENING = "server_listening"
    AWAITING_CALLBACK = "awaiting_callback"
    SESSION_CAPTURED = "session_captured"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    FAILED = "failed"


class LoginCredentials(BaseModel):
    """Body posted by the local login page; held only for the single portal POST."""

    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


@dataclass
class LoginOutcome:
    state: LoginFlowState
    message: str
    session: Optional[StoredSession] = None

    @property
    def success(self) -> bool:
        return self.state is LoginFlowState.SESSION_CAPTURED and self.session is not None


class OneShotResult:
    """Single-slot result: the first resolution wins, later ones are refused."""

    def __init__(self) -> None:
        self._future: asyncio.Future[LoginOutcome] = asyncio.get_running_loop().create_future()

    def resolve(self, outcome: LoginOutcome) -> bool:
        if self._future.done():
            return False
        self._future.set_result(outcome)
        return True

    @property
    def resolved(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: float) -> LoginOutcome:
        # shield keeps a timeout from cancelling the slot itself
        return await asyncio.wait_for(asyncio.shield(self._future), timeout)

    def result(self) -> LoginOutcome:
        return self._future.result()


def has_session_marker(cookie_header: Optional[str], markers: Iterable[str]) -> bool:
    """True when ``cookie_header`` carries something that looks like a real session."""

    if not cookie_header:
        return False
    return any(marker in cookie_header for marker in markers)


def extract_hidden_fields(page: str) -> Dict[str, str]:
    """Every named ``<input type="hidden">`` on the login page (CSRF tokens etc.)."""

    soup = BeautifulSoup(page or "", "html.parser")
    fields: Dict[str, str] = {}
    for node in soup.find_all("input"):
        if str(node.get("type", "")).lower() != "hidden":
            continue
        name = node.get("name")
        if name:
            fields[name] = node.get("value", "")
    return fields


LoginClassifier = Callable[[httpx.Response], bool]


def classify_login_response(
    response: httpx.Response,
    *,
    success_marker: str = "parent",
    failure_markers: Iterable[str] = DEFAULT_FAILURE_MARKERS,
) -> bool:
    """Decide whether a login POST succeeded.

    A redirect succeeds only when its target is away from any login URL. A
    200 succeeds only with the positive marker present and every failure
    marker absent. Anything else, including an ambiguous page, is a failure.
    """

    if response.is_redirect:
        location = response.headers.get("location", "")
        return bool(location) and "login" not in location.lower()
    if response.status_code == 200:
        body = response.text
        if any(marker in body for marker in failure_markers):
            return False
        return bool(success_marker) and success_marker in body
    return False


def cookie_header_from_jar(cookies: httpx.Cookies) -> str:
    return "; ".join(f"{cookie.name}={cookie.value}" for cookie in cookies.jar)


class PortalFormLogin:
    """Programmatic submission against the portal's own login form.

    The password is used for the single POST and never stored.
    """

    def __init__(
        self,
        login_url: str,
        *,
        user_agent: str,
        session_markers: Iterable[str] = DEFAULT_SESSION_MARKERS,
        classifier: Optional[LoginClassifier] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.login_url = login_url
        self.user_agent = user_agent
        self.session_markers = tuple(session_markers)
        self.classifier = classifier or classify_login_response
        self.timeout = timeout
        self._transport = transport

    async def submit(self, username: str, password: str) -> str:
        """Log in and return the captured raw ``Cookie`` header."""

        # Throwaway jar: nothing from a failed attempt leaks into a session
        async with httpx.AsyncClient(
            transport=self._transport,
            timeout=self.timeout,
            headers={"User-Agent": self.user_agent},
        ) as client:
            try:
                page = await client.get(self.login_url, follow_redirects=True)
                form = extract_hidden_fields(page.text)
                form.update({"username": username, "password": password})
                response = await client.post(
                    self.login_url,
                    data=form,
                    headers={"Referer": self.login_url},
                    follow_redirects=False,
                )
            except httpx.TimeoutException as exc:
                raise PortalUnavailableError("Portal login timed out") from exc
            except httpx.HTTPError as exc:
                raise PortalUnavailableError("Could not reach the portal login page") from exc

            if not self.classifier(response):
                raise AuthenticationError("Invalid username or password")
            cookie_header = cookie_header_from_jar(client.cookies)

        if not has_session_marker(cookie_header, self.session_markers):
            raise AuthenticationError(
                "Login appeared to succeed but no session cookie was captured",
                detail={"reason": "missing_session_marker"},
            )
        return cookie_header


async def open_system_browser(url: str) -> bool:
    return await asyncio.to_thread(webbrowser.open, url)


class _ListenerServer(uvicorn.Server):
    """uvicorn server that leaves the host process's signal handlers alone."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        return None


class InteractiveLoginFlow:
    """Drive one browser-assisted login for one identity."""

    STARTUP_TIMEOUT = 5.0
    SHUTDOWN_TIMEOUT = 5.0

    def __init__(
        self,
        identity: str,
        *,
        credential_store,
        strategy: LoginStrategy = LoginStrategy.FORM,
        portal_login_url: str,
        form_login: Optional[PortalFormLogin] = None,
        host: str = "127.0.0.1",
        port: int = 0,
        timeout_seconds: float = 600.0,
        session_lifetime_hours: int = 24,
        session_markers: Iterable[str] = DEFAULT_SESSION_MARKERS,
        max_rejections: int = 5,
        open_browser: Optional[Callable[[str], Awaitable[Any]]] = open_system_browser,
        user_agent: str = "Mozilla/5.0 (compatible; portalbridge)",
    ) -> None:
        if strategy is LoginStrategy.FORM and form_login is None:
            raise ValueError("form strategy requires a PortalFormLogin")
        self.identity = identity
        self.handle = user_handle(identity)
        self.credential_store = credential_store
        self.strategy = strategy
        self.portal_login_url = portal_login_url
        self.form_login = form_login
        self.host = host
        self.port = port
        self.timeout_seconds = timeout_seconds
        self.session_lifetime_hours = session_lifetime_hours
        self.session_markers = tuple(session_markers)
        self.max_rejections = max_rejections
        self.open_browser = open_browser
        self.user_agent = user_agent
        self.state = LoginFlowState.IDLE
        self.rejections = 0
        self.last_rejection: Optional[str] = None
        self.bound_port: Optional[int] = None
        self._result: Optional[OneShotResult] = None

    @property
    def local_url(self) -> Optional[str]:
        if self.bound_port is None:
            return None
        return f"http://{self.host}:{self.bound_port}"

    def _transition(self, state: LoginFlowState) -> None:
        logger.info(
            "login_flow_state",
            user_handle=self.handle,
            previous=self.state.value,
            state=state.value,
        )
        self.state = state

    async def run(self) -> LoginOutcome:
        if self.state is not LoginFlowState.IDLE:
            raise RuntimeError("a login flow instance runs once")
        self._result = OneShotResult()
        try:
            async with self._listening() as base_url:
                self._transition(LoginFlowState.AWAITING_CALLBACK)
                await self._launch_browser(base_url)
                try:
                    outcome = await self._result.wait(self.timeout_seconds)
                except asyncio.TimeoutError:
                    message = "Login timed out waiting for the browser"
                    if self.last_rejection:
                        message = f"{message} (last attempt: {self.last_rejection})"
                    self._result.resolve(LoginOutcome(LoginFlowState.TIMED_OUT, message))
                    outcome = self._result.result()
        except (OSError, RuntimeError) as exc:
            logger.error("login_flow_failed", user_handle=self.handle, error=str(exc))
            self._result.resolve(
                LoginOutcome(LoginFlowState.FAILED, "Could not start the local login listener")
            )
            outcome = self._result.result()
        self._transition(outcome.state)
        return outcome

    async def _launch_browser(self, base_url: str) -> None:
        logger.info("login_flow_open_browser", user_handle=self.handle, url=base_url)
        if self.open_browser is None:
            return
        try:
            opened = await self.open_browser(base_url)
        except Exception as exc:
            # The URL is logged above; the user can still open it by hand
            logger.warning("browser_launch_failed", user_handle=self.handle, error=str(exc))
            return
        if opened is False:
            logger.warning("browser_launch_failed", user_handle=self.handle, url=base_url)

    @contextlib.asynccontextmanager
    async def _listening(self) -> AsyncIterator[str]:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(16)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        self.bound_port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.build_app(), log_level="warning", access_log=False, lifespan="off"
        )
        server = _ListenerServer(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))
        try:
            await self._wait_started(server, task)
            self._transition(LoginFlowState.SERVER_LISTENING)
            yield self.local_url
        finally:
            await self._shutdown(server, task)
            sock.close()
            logger.info("login_listener_closed", user_handle=self.handle, port=self.bound_port)

    async def _wait_started(self, server: uvicorn.Server, task: asyncio.Task) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.STARTUP_TIMEOUT
        while not server.started:
            if task.done():
                exc = task.exception()
                raise RuntimeError(f"login listener exited during startup: {exc!r}")
            if loop.time() > deadline:
                raise RuntimeError("login listener did not start in time")
            await asyncio.sleep(0.01)

    async def _shutdown(self, server: uvicorn.Server, task: asyncio.Task) -> None:
        server.should_exit = True
        try:
            await asyncio.wait_for(asyncio.shield(task), self.SHUTDOWN_TIMEOUT)
            return
        except asyncio.TimeoutError:
            server.force_exit = True
        except Exception as exc:
            logger.warning("login_listener_shutdown_error", user_handle=self.handle, error=str(exc))
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # -- request handling ---------------------------------------------------

    def _reject(self, reason: str) -> None:
        self.rejections += 1
        self.last_rejection = reason
        logger.warning(
            "login_attempt_rejected",
            user_handle=self.handle,
            reason=reason,
            rejections=self.rejections,
        )
        if self.rejections >= self.max_rejections and self._result is not None:
            self._result.resolve(
                LoginOutcome(
                    LoginFlowState.REJECTED,
                    f"Login rejected after {self.rejections} attempts: {reason}",
                )
            )

    async def _capture(self, cookie_header: str, user_agent: str) -> bool:
        if self._result is None or self._result.resolved:
            return False
        session = StoredSession.capture(
            cookie_header, user_agent, lifetime_hours=self.session_lifetime_hours
        )
        try:
            await self.credential_store.save(self.identity, session)
        except Exception as exc:
            logger.error("session_persist_failed", user_handle=self.handle, error=str(exc))
            self._result.resolve(
                LoginOutcome(LoginFlowState.FAILED, "Session captured but could not be stored")
            )
            return False
        logger.info("session_captured", user_handle=self.handle)
        return self._result.resolve(
            LoginOutcome(LoginFlowState.SESSION_CAPTURED, "Login successful", session)
        )

    def _portal_link(self, callback_url: str) -> str:
        return f"{self.portal_login_url}?return={quote(callback_url, safe='')}"

    def build_app(self) -> FastAPI:
        app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        flow = self

        @app.get("/", response_class=HTMLResponse)
        async def index(request: Request):
            callback_url = str(request.url_for("callback"))
            if flow.strategy is LoginStrategy.FORM:
                return HTMLResponse(_form_page())
            return HTMLResponse(_redirect_page(flow._portal_link(callback_url)))

        @app.exception_handler(RequestValidationError)
        async def invalid_credentials(request: Request, exc: RequestValidationError):
            return JSONResponse(
                {"success": False, "message": "Username and password are required"},
                status_code=400,
            )

        @app.post("/login")
        async def submit_login(body: LoginCredentials):
            if flow.form_login is None:
                return JSONResponse(
                    {"success": False, "message": "Form login is not enabled"}, status_code=404
                )
            try:
                cookie_header = await flow.form_login.submit(body.username, body.password)
            except AuthenticationError as exc:
                flow._reject(exc.message)
                return JSONResponse({"success": False, "message": exc.message}, status_code=401)
            except PortalUnavailableError as exc:
                return JSONResponse({"success": False, "message": exc.message}, status_code=502)
            if not await flow._capture(cookie_header, flow.form_login.user_agent):
                return JSONResponse(
                    {"success": False, "message": "Login flow already finished"}, status_code=409
                )
            return JSONResponse({"success": True, "message": "Login successful and session stored"})

        @app.get("/callback", name="callback", response_class=HTMLResponse)
        async def callback(request: Request):
            cookie_header = request.headers.get("cookie")
            retry_link = flow._portal_link(str(request.url))
            if not cookie_header:
                flow._reject("callback arrived without cookies")
                return HTMLResponse(_retry_page("Login required", retry_link), status_code=401)
            if not has_session_marker(cookie_header, flow.session_markers):
                flow._reject("callback cookies carry no session marker")
                return HTMLResponse(
                    _retry_page("That does not look like a portal session", retry_link),
                    status_code=401,
                )
            user_agent = request.headers.get("user-agent") or flow.user_agent
            if not await flow._capture(cookie_header, user_agent):
                return HTMLResponse(_message_page("This login has already finished."), status_code=409)
            return HTMLResponse(_message_page("Login successful. You can close this tab."))

        @app.get("/redirect-check")
        async def redirect_check(request: Request):
            if has_session_marker(request.headers.get("cookie"), flow.session_markers):
                return RedirectResponse(str(request.url_for("callback")))
            return JSONResponse(
                {
                    "status": "waiting",
                    "message": "Still waiting for portal login",
                    "callbackUrl": str(request.url_for("callback")),
                }
            )

        @app.get("/health", response_class=PlainTextResponse)
        async def health():
            return PlainTextResponse(f"login listener {flow.state.value}")

        return app


_PAGE = """<!DOCTYPE html>
<html><head><meta charset="utf-8"><title>{title}</title>
<style>body{{font-family:sans-serif;max-width:28rem;margin:4rem auto;text-align:center}}</style>
</head><body>{body}</body></html>"""


def _message_page(message: str) -> str:
    return _PAGE.format(title="Portal login", body=f"<h2>{html.escape(message)}</h2>")


def _retry_page(message: str, link: str) -> str:
    body = (
        f"<h2>{html.escape(message)}</h2>"
        f'<p><a href="{html.escape(link)}">Log in to the portal</a></p>'
    )
    return _PAGE.format(title="Portal login", body=body)


def _redirect_page(link: str) -> str:
    body = (
        "<h2>Portal login</h2>"
        "<p>Log in with your portal account. You will be sent back here afterwards.</p>"
        f'<p><a href="{html.escape(link)}">Continue to the portal</a></p>'
    )
    return _PAGE.format(title="Portal login", body=body)


def _form_page() -> str:
    body = """<h2>Portal login</h2>
<form id="f">
<p><input name="username" type="email" placeholder="Email" autocomplete="username" required></p>
<p><input name="password" type="password" placeholder="Password" autocomplete="current-password" required></p>
<p><button type="submit">Log in</button></p>
</form><p id="msg"></p>
<script>
document.getElementById("f").addEventListener("submit", async (e) => {
  e.preventDefault();
  const data = Object.fromEntries(new FormData(e.target));
  const r = await fetch("/login", {method: "POST", headers: {"Content-Type": "application/json"}, body: JSON.stringify(data)});
  const j = await r.json();
  document.getElementById("msg").textContent = j.message;
  e.target.password.value = "";
  if (j.success) { e.target.style.display = "none"; }
});
</script>"""
    return _PAGE.format(title="Portal login", body=body)


__all__ = [
    "InteractiveLoginFlow",
    "LoginCredentials",
    "LoginClassifier",
    "LoginFlowState",
    "LoginOutcome",
    "OneShotResult",
    "PortalFormLogin",
    "classify_login_response",
    "extract_hidden_fields",
    "has_session_marker",
    "open_system_browser",
]
