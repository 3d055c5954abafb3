"""Unit tests for the auth service.

Tests for:
- Password hashing and verification
- Login, including the inactive and unknown-identifier paths
- Access/refresh token issuance, rotation and reuse detection
- Logout and session revocation
- Password reset and email verification tokens
"""

import asyncio
import time

import pytest

from portalauth.config import Settings
from portalauth.service.auth import AuthService
from portalauth.service.errors import (
    AccountInactiveError,
    AuthenticationError,
    EmailNotVerifiedError,
    ForbiddenError,
    InvalidCredentialsError,
    PasswordMismatchError,
    RefreshInvalidError,
    TokenExpiredError,
    ValidationError,
)
from portalauth.storage.errors import ConstraintViolation
from portalauth.storage.memory import MemoryStore

PASSWORD = "Secret123!"


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        require_email_verification=False,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path), mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def auth_service(memory_store, settings):
    """Create auth service for testing."""
    return AuthService(store=memory_store, cache=None, settings=settings)


@pytest.fixture
def test_user(auth_service):
    """Register a verified client account."""
    outcome = asyncio.run(auth_service.register("alice", "alice@x.com", PASSWORD))
    return outcome.user


class TestPasswordHashing:
    def test_password_hashing_produces_argon2id_hash(self, auth_service):
        pwd_hash, algo = auth_service._hash_password(PASSWORD)

        assert algo == "argon2id"
        assert pwd_hash != PASSWORD
        assert pwd_hash.startswith("$argon2id$")

    def test_same_password_produces_different_hashes(self, auth_service):
        hash1, _ = auth_service._hash_password(PASSWORD)
        hash2, _ = auth_service._hash_password(PASSWORD)

        assert hash1 != hash2

    def test_verify_password(self, auth_service, test_user):
        assert auth_service.verify_password(test_user.id, PASSWORD) is True
        assert auth_service.verify_password(test_user.id, "Wrong123!") is False
        assert auth_service.verify_password(9999, PASSWORD) is False


class TestRegistration:
    def test_register_issues_tokens_when_verification_disabled(self, auth_service):
        outcome = asyncio.run(auth_service.register("bob", "Bob@X.com", PASSWORD))

        assert outcome.tokens is not None
        assert outcome.verification_required is False
        assert outcome.user.email == "bob@x.com"
        assert outcome.user.role == "client"

    def test_register_requires_verification(self, memory_store, settings):
        settings = settings.model_copy(update={"require_email_verification": True})
        service = AuthService(store=memory_store, cache=None, settings=settings)

        outcome = asyncio.run(service.register("carol", "carol@x.com", PASSWORD))

        assert outcome.tokens is None
        assert outcome.verification_required is True
        assert outcome.user.email_verified is False

    def test_duplicate_email_rejected(self, auth_service, test_user):
        with pytest.raises(ConstraintViolation):
            asyncio.run(auth_service.register("alice2", "alice@x.com", PASSWORD))

    def test_duplicate_username_rejected_case_insensitively(self, auth_service, test_user):
        with pytest.raises(ConstraintViolation):
            asyncio.run(auth_service.register("ALICE", "other@x.com", PASSWORD))

    def test_signup_can_be_disabled(self, memory_store, settings):
        settings = settings.model_copy(update={"allow_signup": False})
        service = AuthService(store=memory_store, cache=None, settings=settings)

        with pytest.raises(ForbiddenError):
            asyncio.run(service.register("dave", "dave@x.com", PASSWORD))


class TestLogin:
    def test_login_by_username_and_email(self, auth_service, test_user):
        by_name = asyncio.run(auth_service.login("alice", PASSWORD))
        by_email = asyncio.run(auth_service.login("ALICE@x.com", PASSWORD))

        assert by_name.tokens is not None
        assert by_email.tokens is not None
        assert by_name.requires_two_factor is False
        assert by_name.tokens.session_id != by_email.tokens.session_id

    def test_wrong_password_and_unknown_user_look_the_same(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError) as wrong:
            asyncio.run(auth_service.login("alice", "Nope1234!"))
        with pytest.raises(InvalidCredentialsError) as unknown:
            asyncio.run(auth_service.login("nobody", PASSWORD))

        assert wrong.value.message == unknown.value.message
        assert wrong.value.status_code == unknown.value.status_code == 401

    def test_inactive_account_rejected_after_password_check(
        self, auth_service, memory_store, test_user
    ):
        memory_store.update_user(test_user.id, is_active=False)

        with pytest.raises(InvalidCredentialsError):
            asyncio.run(auth_service.login("alice", "Wrong123!"))
        with pytest.raises(AccountInactiveError):
            asyncio.run(auth_service.login("alice", PASSWORD))

    def test_unverified_email_blocks_login(self, memory_store, settings):
        settings = settings.model_copy(update={"require_email_verification": True})
        service = AuthService(store=memory_store, cache=None, settings=settings)
        asyncio.run(service.register("erin", "erin@x.com", PASSWORD))

        with pytest.raises(EmailNotVerifiedError):
            asyncio.run(service.login("erin", PASSWORD))

    def test_login_records_last_login(self, auth_service, test_user):
        outcome = asyncio.run(auth_service.login("alice", PASSWORD))

        assert outcome.user.last_login_at is not None


class TestAccessTokens:
    def test_authenticate_round_trip(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        principal = asyncio.run(auth_service.authenticate(f"Bearer {tokens.access_token}"))

        assert principal.user_id == test_user.id
        assert principal.role == "client"
        assert principal.session_id == tokens.session_id
        assert auth_service.me(principal).username == "alice"

    def test_missing_and_malformed_headers_rejected(self, auth_service):
        for header in (None, "", "Basic abc", "Bearer", "Bearer not-a-jwt"):
            with pytest.raises(AuthenticationError):
                asyncio.run(auth_service.authenticate(header))

    def test_extract_bearer(self, auth_service):
        assert auth_service.extract_bearer("Bearer abc.def") == "abc.def"
        assert auth_service.extract_bearer("bearer  abc ") == "abc"
        for header in (None, "", "Basic abc", "Bearer ", "Bearer"):
            assert auth_service.extract_bearer(header) is None

    def test_refresh_token_is_not_an_access_token(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        with pytest.raises(AuthenticationError):
            asyncio.run(auth_service.authenticate(f"Bearer {tokens.refresh_token}"))

    def test_tampered_token_rejected(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        header, payload, signature = tokens.access_token.split(".")
        forged = "A" * len(signature) if set(signature) != {"A"} else "B" * len(signature)
        tampered = ".".join([header, payload, forged])

        with pytest.raises(AuthenticationError):
            asyncio.run(auth_service.authenticate(f"Bearer {tampered}"))

    def test_expired_access_token_reports_token_expired(self, memory_store, settings):
        settings = settings.model_copy(update={"access_token_ttl_minutes": -5})
        service = AuthService(store=memory_store, cache=None, settings=settings)
        tokens = asyncio.run(service.register("frank", "frank@x.com", PASSWORD)).tokens

        with pytest.raises(TokenExpiredError) as exc_info:
            asyncio.run(service.authenticate(f"Bearer {tokens.access_token}"))
        assert exc_info.value.error_code == "token_expired"

    def test_admin_role_required(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        with pytest.raises(ForbiddenError):
            asyncio.run(
                auth_service.authenticate(
                    f"Bearer {tokens.access_token}", required_role="admin"
                )
            )


class TestRefresh:
    def test_refresh_rotates_tokens(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        user, rotated = asyncio.run(auth_service.refresh(tokens.refresh_token))

        assert user.id == test_user.id
        assert rotated.refresh_token != tokens.refresh_token
        assert rotated.session_id == tokens.session_id
        principal = asyncio.run(auth_service.authenticate(f"Bearer {rotated.access_token}"))
        assert principal.user_id == test_user.id

    def test_refresh_token_cannot_be_reused(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        asyncio.run(auth_service.refresh(tokens.refresh_token))

        with pytest.raises(RefreshInvalidError):
            asyncio.run(auth_service.refresh(tokens.refresh_token))

    def test_concurrent_refresh_has_one_winner(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        async def race():
            return await asyncio.gather(
                *(auth_service.refresh(tokens.refresh_token) for _ in range(5)),
                return_exceptions=True,
            )

        results = asyncio.run(race())
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, RefreshInvalidError)]
        assert len(winners) == 1
        assert len(losers) == 4

    def test_access_token_rejected_as_refresh(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        for candidate in (None, "", "garbage", tokens.access_token):
            with pytest.raises(RefreshInvalidError):
                asyncio.run(auth_service.refresh(candidate))

    def test_refresh_rejected_for_deactivated_user(
        self, auth_service, memory_store, test_user
    ):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        memory_store.update_user(test_user.id, is_active=False)

        with pytest.raises(RefreshInvalidError):
            asyncio.run(auth_service.refresh(tokens.refresh_token))


class TestLogout:
    def test_logout_revokes_access_and_refresh(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        asyncio.run(
            auth_service.logout(
                access_token=tokens.access_token, refresh_token=tokens.refresh_token
            )
        )

        with pytest.raises(AuthenticationError):
            asyncio.run(auth_service.authenticate(f"Bearer {tokens.access_token}"))
        with pytest.raises(RefreshInvalidError):
            asyncio.run(auth_service.refresh(tokens.refresh_token))

    def test_logout_is_idempotent_and_tolerates_garbage(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        asyncio.run(auth_service.logout(access_token=tokens.access_token))
        asyncio.run(auth_service.logout(access_token=tokens.access_token))
        asyncio.run(auth_service.logout(access_token="garbage", refresh_token="junk"))
        asyncio.run(auth_service.logout())

    def test_logout_leaves_other_sessions_alone(self, auth_service, test_user):
        first = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        second = asyncio.run(auth_service.login("alice", PASSWORD)).tokens

        asyncio.run(auth_service.logout(access_token=first.access_token))

        principal = asyncio.run(auth_service.authenticate(f"Bearer {second.access_token}"))
        assert principal.session_id == second.session_id


class TestPasswordManagement:
    def test_password_reset_is_single_use(self, auth_service, test_user):
        _user, token = asyncio.run(auth_service.request_password_reset("alice@x.com"))

        asyncio.run(auth_service.complete_password_reset(token, "NewSecret456!"))

        with pytest.raises(ValidationError):
            asyncio.run(auth_service.complete_password_reset(token, "Another789!"))
        assert asyncio.run(auth_service.login("alice", "NewSecret456!")).tokens is not None

    def test_password_reset_revokes_sessions(self, auth_service, test_user):
        tokens = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        _user, token = asyncio.run(auth_service.request_password_reset("alice@x.com"))

        asyncio.run(auth_service.complete_password_reset(token, "NewSecret456!"))

        with pytest.raises(RefreshInvalidError):
            asyncio.run(auth_service.refresh(tokens.refresh_token))

    def test_password_reset_for_unknown_email_is_silent(self, auth_service):
        assert asyncio.run(auth_service.request_password_reset("ghost@x.com")) is None

    def test_change_password_keeps_current_session(self, auth_service, test_user):
        current = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        other = asyncio.run(auth_service.login("alice", PASSWORD)).tokens
        principal = asyncio.run(auth_service.authenticate(f"Bearer {current.access_token}"))

        with pytest.raises(PasswordMismatchError):
            asyncio.run(auth_service.change_password(principal, "Wrong123!", "NewSecret456!"))
        asyncio.run(auth_service.change_password(principal, PASSWORD, "NewSecret456!"))

        assert asyncio.run(auth_service.authenticate(f"Bearer {current.access_token}"))
        with pytest.raises(AuthenticationError):
            asyncio.run(auth_service.authenticate(f"Bearer {other.access_token}"))


class TestEmailVerification:
    def test_verification_token_is_single_use(self, memory_store, settings):
        settings = settings.model_copy(update={"require_email_verification": True})
        service = AuthService(store=memory_store, cache=None, settings=settings)
        outcome = asyncio.run(service.register("gina", "gina@x.com", PASSWORD))

        login = asyncio.run(service.verify_email(outcome.verification_token))

        assert login.tokens is not None
        assert memory_store.get_user(outcome.user.id).email_verified is True
        with pytest.raises(ValidationError):
            asyncio.run(service.verify_email(outcome.verification_token))

    def test_resend_only_for_unverified_accounts(self, memory_store, settings):
        settings = settings.model_copy(update={"require_email_verification": True})
        service = AuthService(store=memory_store, cache=None, settings=settings)
        asyncio.run(service.register("hank", "hank@x.com", PASSWORD))

        resent = asyncio.run(service.resend_verification("hank@x.com"))

        assert resent is not None
        assert asyncio.run(service.resend_verification("ghost@x.com")) is None


class TestLoginChallenges:
    def test_challenge_is_single_use(self, auth_service, test_user):
        temp_token = asyncio.run(auth_service._create_login_challenge(test_user.id))

        first = asyncio.run(auth_service.take_login_challenge(temp_token))
        second = asyncio.run(auth_service.take_login_challenge(temp_token))

        assert first is not None and first.user_id == test_user.id
        assert second is None

    def test_expired_challenge_is_not_returned(self, auth_service, test_user):
        temp_token = asyncio.run(auth_service._create_login_challenge(test_user.id))
        with auth_service._state_lock:
            for challenge in auth_service._login_challenges.values():
                challenge.expires_at = time.time() - 1

        assert asyncio.run(auth_service.take_login_challenge(temp_token)) is None
