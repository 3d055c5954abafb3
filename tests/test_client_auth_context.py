"""End-to-end tests for the client auth context against the real app.

Requests go through ``httpx.ASGITransport`` into the FastAPI app, so cookies,
envelopes and error codes are the ones the server actually produces.
"""

import time

import httpx
import pytest

from portalauth import app as app_module
from portalauth.client.auth_context import AuthContext
from portalauth.client.errors import ApiError, ClientError
from portalauth.client.session_guard import IDLE_TIMEOUT_SECONDS
from portalauth.client.storage import ACCESS_TOKEN_KEY, LAST_ACTIVITY_KEY, MemoryStorage
from portalauth.service.errors import AuthenticationError
from portalauth.service.runtime import get_runtime
from portalauth.service.two_factor import generate_totp

BASE_URL = "http://testserver"
PASSWORD = "Secret123!"


class FakeClock:
    def __init__(self, now=None):
        self.now = now if now is not None else time.time()

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def _context(storage=None, **kwargs):
    return AuthContext(
        BASE_URL,
        storage if storage is not None else MemoryStorage(),
        transport=httpx.ASGITransport(app=app_module.app),
        **kwargs,
    )


async def _create_alice():
    await get_runtime().auth.register("alice", "alice@x.com", PASSWORD)


async def _enable_two_factor(ctx):
    setup = await ctx.tokens.request_json("POST", "/2fa/setup")
    await ctx.tokens.request_json(
        "POST", "/2fa/verify", json={"token": generate_totp(setup["secret"], time.time())}
    )
    return setup


async def test_init_without_token_is_quiet():
    ctx = _context()
    await ctx.init()
    try:
        assert ctx.user is None
        assert ctx.is_authenticated is False
        assert ctx.is_loading is False
        assert ctx.guard.is_running is False
    finally:
        await ctx.dispose()


async def test_register_establishes_session():
    storage = MemoryStorage()
    async with _context(storage) as ctx:
        result = await ctx.register("alice", "alice@x.com", PASSWORD, PASSWORD, name="Alice")

        assert result.user.username == "alice"
        assert result.email_verification_required is False
        assert ctx.is_authenticated
        assert storage.get(ACCESS_TOKEN_KEY)
        ctx.guard.stop()


async def test_register_validation_error_is_readable():
    async with _context() as ctx:
        with pytest.raises(ApiError) as exc_info:
            await ctx.register("alice", "alice@x.com", PASSWORD, "Mismatch123!")

    assert exc_info.value.status == 400
    assert exc_info.value.code == "validation_error"
    assert exc_info.value.message


async def test_login_and_restore_from_storage():
    await _create_alice()
    storage = MemoryStorage()

    async with _context(storage) as first:
        result = await first.login("alice", PASSWORD)
        assert result.requires_two_factor is False
        assert result.user.email == "alice@x.com"
        assert first.is_authenticated
        assert first.guard.is_running
        assert storage.get(LAST_ACTIVITY_KEY)
        first.guard.stop()

    # a restarted client hydrates from the same storage
    async with _context(storage) as second:
        assert second.is_authenticated
        assert second.user.username == "alice"
        assert second.guard.is_running
        second.guard.stop()


async def test_bad_credentials_raise_without_refresh_attempt():
    await _create_alice()
    async with _context() as ctx:
        with pytest.raises(ApiError) as exc_info:
            await ctx.login("alice", "Wrong123!")

        assert exc_info.value.code == "invalid_credentials"
        assert ctx.is_authenticated is False


async def test_init_with_dead_token_clears_it():
    storage = MemoryStorage({ACCESS_TOKEN_KEY: "not-a-real-token"})
    ctx = _context(storage)

    await ctx.init()
    try:
        assert ctx.is_authenticated is False
        assert storage.get(ACCESS_TOKEN_KEY) is None
    finally:
        await ctx.dispose()


async def test_init_with_stale_activity_logs_out():
    await _create_alice()
    storage = MemoryStorage()
    clock = FakeClock()
    async with _context(storage, clock=clock) as first:
        await first.login("alice", PASSWORD)
        token = first.tokens.get()
        first.guard.stop()

    clock.advance(IDLE_TIMEOUT_SECONDS + 60)
    async with _context(storage, clock=clock) as second:
        assert second.is_authenticated is False
        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert storage.get(LAST_ACTIVITY_KEY) is None

    # the server-side session was ended too
    with pytest.raises(AuthenticationError):
        await get_runtime().auth.authenticate(f"Bearer {token}")


async def test_restore_within_idle_window_starts_fresh_window():
    await _create_alice()
    storage = MemoryStorage()
    clock = FakeClock()
    async with _context(storage, clock=clock) as first:
        await first.login("alice", PASSWORD)
        first.guard.stop()

    clock.advance(IDLE_TIMEOUT_SECONDS - 60)
    async with _context(storage, clock=clock) as second:
        assert second.is_authenticated
        assert second.guard.idle_seconds() == 0.0
        assert float(storage.get(LAST_ACTIVITY_KEY)) == clock.now

        # two minutes later the restored session is still alive
        clock.advance(120)
        assert await second.guard.check() is False
        assert second.is_authenticated
        second.guard.stop()


async def test_expired_access_token_heals_through_refresh():
    await _create_alice()
    async with _context() as ctx:
        await ctx.login("alice", PASSWORD)
        ctx.tokens.set("expired-or-garbage")

        user = await ctx.refresh_user()

        assert user.username == "alice"
        assert ctx.tokens.get() not in (None, "expired-or-garbage")
        ctx.guard.stop()


class RecordingTransport(httpx.ASGITransport):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.paths = []

    async def handle_async_request(self, request):
        self.paths.append(request.url.path)
        return await super().handle_async_request(request)


async def test_wrong_password_on_disable_is_sent_once():
    await _create_alice()
    transport = RecordingTransport(app=app_module.app)
    async with AuthContext(BASE_URL, MemoryStorage(), transport=transport) as ctx:
        await ctx.login("alice", PASSWORD)
        setup = await _enable_two_factor(ctx)
        alice_id = ctx.user.id
        token = ctx.tokens.get()
        transport.paths.clear()

        with pytest.raises(ApiError) as exc_info:
            await ctx.tokens.request_json(
                "POST",
                "/2fa/disable",
                json={"password": "Wrong123!", "token": generate_totp(setup["secret"], time.time())},
            )

        assert exc_info.value.code == "password_mismatch"
        assert transport.paths == ["/v1/2fa/disable"]
        assert ctx.tokens.get() == token
        assert get_runtime().two_factor._attempts[alice_id][0] == 1
        ctx.guard.stop()


async def test_refresh_user_after_server_logout_clears_state():
    await _create_alice()
    storage = MemoryStorage()
    async with _context(storage) as ctx:
        await ctx.login("alice", PASSWORD)
        await get_runtime().auth.revoke_all_user_sessions(ctx.user.id)

        assert await ctx.refresh_user() is None
        assert ctx.is_authenticated is False
        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert ctx.guard.is_running is False


async def test_logout_is_idempotent_and_revokes_server_session():
    await _create_alice()
    storage = MemoryStorage()
    async with _context(storage) as ctx:
        await ctx.login("alice", PASSWORD)
        token = ctx.tokens.get()

        await ctx.logout()
        await ctx.logout()

        assert ctx.is_authenticated is False
        assert ctx.guard.is_running is False
        assert storage.get(ACCESS_TOKEN_KEY) is None
        assert storage.get(LAST_ACTIVITY_KEY) is None
        assert ctx.tokens.http.cookies.get("refresh_token") is None

        response = await ctx.tokens.http.get(
            "/v1/auth/me", headers={"Authorization": f"Bearer {token}"}
        )
        assert response.status_code == 401


async def test_logout_swallows_server_failures():
    def handler(request):
        return httpx.Response(500, json={"status": "error"})

    storage = MemoryStorage({ACCESS_TOKEN_KEY: "tok"})
    ctx = AuthContext(BASE_URL, storage, transport=httpx.MockTransport(handler))
    ctx.tokens.hydrate()

    await ctx.logout()

    assert storage.get(ACCESS_TOKEN_KEY) is None
    assert ctx.tokens.get() is None
    await ctx.dispose()


async def test_logout_swallows_network_errors():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    storage = MemoryStorage({ACCESS_TOKEN_KEY: "tok"})
    ctx = AuthContext(BASE_URL, storage, transport=httpx.MockTransport(handler))
    ctx.tokens.hydrate()

    await ctx.logout()

    assert storage.get(ACCESS_TOKEN_KEY) is None
    await ctx.dispose()


async def test_two_factor_login_flow():
    await _create_alice()
    async with _context() as ctx:
        await ctx.login("alice", PASSWORD)
        alice_id = ctx.user.id
        setup = await _enable_two_factor(ctx)
        await ctx.logout()

        challenge = await ctx.login("alice", PASSWORD)
        assert challenge.requires_two_factor is True
        assert challenge.user is None
        assert challenge.user_id == alice_id
        assert ctx.is_authenticated is False
        assert ctx.awaiting_two_factor

        good = generate_totp(setup["secret"], time.time())
        wrong = "000000" if good != "000000" else "111111"
        with pytest.raises(ApiError) as exc_info:
            await ctx.verify_two_factor(wrong)
        assert exc_info.value.code == "invalid_two_factor_code"
        assert ctx.awaiting_two_factor

        result = await ctx.verify_two_factor(good)

        assert result.user.two_factor_enabled is True
        assert ctx.is_authenticated
        assert not ctx.awaiting_two_factor
        ctx.guard.stop()


async def test_backup_code_login_and_reuse():
    await _create_alice()
    async with _context() as ctx:
        await ctx.login("alice", PASSWORD)
        setup = await _enable_two_factor(ctx)
        code = setup["backupCodes"][0]
        await ctx.logout()

        await ctx.login("alice", PASSWORD)
        await ctx.verify_two_factor(code, is_backup_code=True)
        assert ctx.is_authenticated
        await ctx.logout()

        await ctx.login("alice", PASSWORD)
        with pytest.raises(ApiError) as exc_info:
            await ctx.verify_two_factor(code, is_backup_code=True)
        assert exc_info.value.code == "invalid_two_factor_code"
        assert ctx.is_authenticated is False


async def test_verify_two_factor_without_challenge():
    async with _context() as ctx:
        with pytest.raises(ClientError):
            await ctx.verify_two_factor("123456")


async def test_idle_guard_logs_out():
    await _create_alice()
    clock = FakeClock()
    storage = MemoryStorage()
    async with _context(storage, clock=clock) as ctx:
        await ctx.login("alice", PASSWORD)
        ctx.guard.record_activity("click")

        clock.advance(IDLE_TIMEOUT_SECONDS - 1)
        assert await ctx.guard.check() is False
        assert ctx.is_authenticated

        clock.advance(2)
        assert await ctx.guard.check() is True

        assert ctx.is_authenticated is False
        assert ctx.guard.is_running is False
        assert storage.get(ACCESS_TOKEN_KEY) is None
