import asyncio
import socket

import httpx
import pytest

from portalbridge.config import LoginStrategy
from portalbridge.service.errors import AuthenticationError
from portalbridge.service.login_flow import (
    InteractiveLoginFlow,
    LoginFlowState,
    LoginOutcome,
    OneShotResult,
    PortalFormLogin,
    classify_login_response,
    extract_hidden_fields,
    has_session_marker,
)

LOGIN_URL = "https://portal.example.com/school/login"

LOGIN_PAGE = """
<html><body><form method="post" action="/school/login">
<input type="hidden" name="authenticity_token" value="csrf-123">
<input type="hidden" name="return_to" value="/parent">
<input type="text" name="username"><input type="password" name="password">
</form></body></html>
"""


def _assert_port_free(port):
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind(("127.0.0.1", port))
        sock.listen(1)
    finally:
        sock.close()


async def _wait_for_state(flow, state, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while flow.state is not state:
        if loop.time() > deadline:
            raise AssertionError(f"flow stuck in {flow.state}, expected {state}")
        await asyncio.sleep(0.01)


def _portal_transport(seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, text=LOGIN_PAGE)
        form = dict(httpx.QueryParams(request.content.decode()))
        if seen is not None:
            seen.append(form)
        if form.get("password") == "correct-horse":
            return httpx.Response(
                302,
                headers={
                    "Location": "/school/parent",
                    "Set-Cookie": "_veracross_session=xyz789; Path=/",
                },
            )
        return httpx.Response(200, text="<p>Invalid username or password</p>")

    return httpx.MockTransport(handler)


def _flow(credential_store, **overrides):
    params = dict(
        credential_store=credential_store,
        strategy=LoginStrategy.REDIRECT,
        portal_login_url=LOGIN_URL,
        timeout_seconds=5.0,
        open_browser=None,
    )
    params.update(overrides)
    return InteractiveLoginFlow("parent@example.com", **params)


class TestClassifyLoginResponse:
    def test_redirect_away_from_login_is_success(self):
        response = httpx.Response(302, headers={"Location": "/parent"})
        assert classify_login_response(response) is True

    def test_redirect_back_to_login_is_failure(self):
        response = httpx.Response(302, headers={"Location": "/login?error=1"})
        assert classify_login_response(response) is False

    def test_page_with_failure_marker_is_failure(self):
        response = httpx.Response(200, text="<a href='/parent'>x</a> Invalid password")
        assert classify_login_response(response) is False

    def test_ambiguous_page_is_failure(self):
        response = httpx.Response(200, text="<html>Welcome</html>")
        assert classify_login_response(response) is False

    def test_page_with_success_marker_is_success(self):
        response = httpx.Response(200, text="<a href='/parent/home'>Home</a>")
        assert classify_login_response(response) is True

    def test_server_error_is_failure(self):
        assert classify_login_response(httpx.Response(500, text="parent")) is False


class TestHelpers:
    def test_hidden_fields_are_collected(self):
        assert extract_hidden_fields(LOGIN_PAGE) == {
            "authenticity_token": "csrf-123",
            "return_to": "/parent",
        }

    def test_session_marker_detection(self):
        markers = ("session", "_veracross")
        assert has_session_marker("_veracross_session=1", markers)
        assert not has_session_marker("tracking=1", markers)
        assert not has_session_marker(None, markers)

    async def test_one_shot_accepts_only_first_result(self):
        slot = OneShotResult()
        assert slot.resolve(LoginOutcome(LoginFlowState.TIMED_OUT, "first")) is True
        assert slot.resolve(LoginOutcome(LoginFlowState.SESSION_CAPTURED, "second")) is False
        assert (await slot.wait(1)).message == "first"


class TestPortalFormLogin:
    async def test_submits_hidden_fields_and_returns_cookies(self):
        seen = []
        form_login = PortalFormLogin(
            LOGIN_URL, user_agent="TestAgent/1.0", transport=_portal_transport(seen)
        )
        cookies = await form_login.submit("parent@example.com", "correct-horse")
        assert "_veracross_session=xyz789" in cookies
        assert seen[0]["authenticity_token"] == "csrf-123"
        assert seen[0]["username"] == "parent@example.com"

    async def test_bad_password_raises_authentication_error(self):
        form_login = PortalFormLogin(
            LOGIN_URL, user_agent="TestAgent/1.0", transport=_portal_transport()
        )
        with pytest.raises(AuthenticationError):
            await form_login.submit("parent@example.com", "wrong")

    async def test_success_without_session_cookie_is_rejected(self):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, text=LOGIN_PAGE)
            return httpx.Response(302, headers={"Location": "/parent"})

        form_login = PortalFormLogin(
            LOGIN_URL, user_agent="TestAgent/1.0", transport=httpx.MockTransport(handler)
        )
        with pytest.raises(AuthenticationError) as excinfo:
            await form_login.submit("parent@example.com", "correct-horse")
        assert excinfo.value.detail["reason"] == "missing_session_marker"


class TestInteractiveLoginFlow:
    async def test_callback_with_session_cookie_captures_and_releases_port(self, credential_store):
        opened = []

        async def fake_browser(url):
            opened.append(url)
            return True

        flow = _flow(credential_store, open_browser=fake_browser)
        task = asyncio.create_task(flow.run())
        await _wait_for_state(flow, LoginFlowState.AWAITING_CALLBACK)
        port = flow.bound_port
        assert opened == [flow.local_url]

        async with httpx.AsyncClient() as client:
            health = await client.get(f"{flow.local_url}/health")
            assert "awaiting_callback" in health.text
            page = await client.get(f"{flow.local_url}/callback",
                                    headers={"Cookie": "_veracross_session=abc; other=1"})
            assert page.status_code == 200

        outcome = await asyncio.wait_for(task, 5)
        assert outcome.success
        assert outcome.state is LoginFlowState.SESSION_CAPTURED
        assert flow.state is LoginFlowState.SESSION_CAPTURED

        stored = await credential_store.load_session("parent@example.com")
        assert stored.cookies == "_veracross_session=abc; other=1"
        _assert_port_free(port)

    async def test_redirect_check_waits_without_session(self, credential_store):
        flow = _flow(credential_store)
        task = asyncio.create_task(flow.run())
        await _wait_for_state(flow, LoginFlowState.AWAITING_CALLBACK)
        async with httpx.AsyncClient() as client:
            waiting = await client.get(f"{flow.local_url}/redirect-check")
            assert waiting.json()["status"] == "waiting"
            index = await client.get(f"{flow.local_url}/")
            assert LOGIN_URL in index.text
            await client.get(f"{flow.local_url}/callback",
                             headers={"Cookie": "JSESSIONID=1"})
        assert (await asyncio.wait_for(task, 5)).success

    async def test_repeated_rejections_end_the_flow(self, credential_store):
        flow = _flow(credential_store, max_rejections=2)
        task = asyncio.create_task(flow.run())
        await _wait_for_state(flow, LoginFlowState.AWAITING_CALLBACK)
        port = flow.bound_port

        async with httpx.AsyncClient() as client:
            first = await client.get(f"{flow.local_url}/callback")
            assert first.status_code == 401
            assert not task.done()
            await client.get(f"{flow.local_url}/callback", headers={"Cookie": "tracking=1"})

        outcome = await asyncio.wait_for(task, 5)
        assert outcome.state is LoginFlowState.REJECTED
        assert not outcome.success
        assert flow.rejections == 2
        assert await credential_store.load_session("parent@example.com") is None
        _assert_port_free(port)

    async def test_timeout_releases_port(self, credential_store):
        flow = _flow(credential_store, timeout_seconds=0.3)
        outcome = await asyncio.wait_for(flow.run(), 10)
        assert outcome.state is LoginFlowState.TIMED_OUT
        assert "timed out" in outcome.message
        _assert_port_free(flow.bound_port)

    async def test_cancellation_releases_port(self, credential_store):
        flow = _flow(credential_store)
        task = asyncio.create_task(flow.run())
        await _wait_for_state(flow, LoginFlowState.AWAITING_CALLBACK)
        port = flow.bound_port
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        _assert_port_free(port)

    async def test_form_login_rejects_then_captures(self, credential_store):
        form_login = PortalFormLogin(
            LOGIN_URL, user_agent="TestAgent/1.0", transport=_portal_transport()
        )
        flow = _flow(credential_store, strategy=LoginStrategy.FORM, form_login=form_login)
        task = asyncio.create_task(flow.run())
        await _wait_for_state(flow, LoginFlowState.AWAITING_CALLBACK)

        async with httpx.AsyncClient() as client:
            bad = await client.post(
                f"{flow.local_url}/login",
                json={"username": "parent@example.com", "password": "wrong"},
            )
            assert bad.status_code == 401
            assert bad.json()["success"] is False
            assert not task.done()

            missing = await client.post(
                f"{flow.local_url}/login", json={"username": "parent@example.com"}
            )
            assert missing.status_code == 400
            assert missing.json() == {
                "success": False,
                "message": "Username and password are required",
            }
            assert flow.rejections == 1

            good = await client.post(
                f"{flow.local_url}/login",
                json={"username": "parent@example.com", "password": "correct-horse"},
            )
            assert good.status_code == 200
            assert good.json()["success"] is True

        outcome = await asyncio.wait_for(task, 5)
        assert outcome.success
        assert outcome.session.user_agent == "TestAgent/1.0"
        stored = await credential_store.load_session("parent@example.com")
        assert "_veracross_session=xyz789" in stored.cookies

    async def test_flow_runs_once(self, credential_store):
        flow = _flow(credential_store, timeout_seconds=0.1)
        await flow.run()
        with pytest.raises(RuntimeError):
            await flow.run()

    def test_form_strategy_requires_form_login(self, credential_store):
        with pytest.raises(ValueError):
            _flow(credential_store, strategy=LoginStrategy.FORM)
