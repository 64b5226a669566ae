"""Unit tests for AuthService against in-memory collaborators and a fake clock.

Covers:
- sign-in and sign-up token issuance
- sign-out and its idempotence boundary
- access/refresh pair revocation
- password change invalidating earlier tokens only
- forgot-password reset mail
- account creation rollback when the cart cannot be created
"""

import asyncio
from types import SimpleNamespace

import pytest
from argon2 import PasswordHasher, Type

from storefront.config import Settings
from storefront.service.auth import AuthService
from storefront.service.carts import CartService
from storefront.service.denylist import DenylistReason, TokenDenylist
from storefront.service.email import EmailService, MailDispatcher
from storefront.service.errors import (
    DenylistWriteError,
    DuplicateRegistrationError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
)
from storefront.service.token_manager import TokenManager
from storefront.service.tokens import ACCESS_TOKEN, REFRESH_TOKEN, TokenCodec, TokenPair
from storefront.service.users import UserService
from storefront.storage.errors import ConstraintViolation
from storefront.storage.memory import MemoryStore
from storefront.storage.models import Registration, Role
from storefront.storage.redis_cache import MemoryCache

PASSWORD = "CorrectHorse42"


class RecordingEmailService(EmailService):
    def __init__(self):
        super().__init__()
        self.sent = []

    def send(self, to_email, subject, html_body, text_body=None):
        self.sent.append(SimpleNamespace(to=to_email, subject=subject, html=html_body, text=text_body))
        return True


def _build(clock, store=None, cache=None, **overrides):
    settings = Settings(jwt_secret="auth-service-test-secret-0123456789abcdef", **overrides)
    cache = cache or MemoryCache(clock=clock)
    store = store or MemoryStore()
    codec = TokenCodec(settings, clock=clock)
    denylist = TokenDenylist(cache, settings, clock=clock)
    tokens = TokenManager(settings, codec, denylist, clock=clock)
    # Cheapest argon2id parameters keep the suite fast
    hasher = PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    users = UserService(store, CartService(store), hasher=hasher)
    email = RecordingEmailService()
    mail = MailDispatcher(email, inline=True)
    auth = AuthService(settings, users, tokens, mail)
    return SimpleNamespace(
        settings=settings,
        cache=cache,
        store=store,
        tokens=tokens,
        users=users,
        email=email,
        auth=auth,
    )


def _registration(email="shopper@example.com", phone="+15551234567"):
    return Registration(
        email=email,
        password=PASSWORD,
        first_name="Sam",
        last_name="Shopper",
        phone_number=phone,
    )


@pytest.fixture
def env(clock):
    return _build(clock)


class TestSignUp:
    async def test_sign_up_creates_customer_with_cart_and_tokens(self, env):
        result = await env.auth.sign_up(_registration())

        assert result.user.role is Role.CUSTOMER
        assert env.users.carts.get_cart(result.user.id).user_id == result.user.id
        assert result.tokens.access_claims.subject_id == result.user.id
        assert env.email.sent[0].to == "shopper@example.com"
        assert "Welcome" in env.email.sent[0].subject

    async def test_duplicate_email_is_a_conflict(self, env):
        await env.auth.sign_up(_registration())
        with pytest.raises(DuplicateRegistrationError) as exc_info:
            await env.auth.sign_up(_registration(phone="+15550000000"))
        assert exc_info.value.field == "email"
        assert exc_info.value.status_code == 409

    async def test_duplicate_phone_is_a_conflict(self, env):
        await env.auth.sign_up(_registration())
        with pytest.raises(DuplicateRegistrationError) as exc_info:
            await env.auth.sign_up(_registration(email="other@example.com"))
        assert exc_info.value.field == "phone_number"

    async def test_cart_failure_rolls_back_user(self, clock):
        class FlakyCartStore(MemoryStore):
            carts_broken = True

            def create_cart(self, user_id):
                if self.carts_broken:
                    raise ConstraintViolation("cart table unavailable", {"user_id": user_id})
                return super().create_cart(user_id)

        env = _build(clock, store=FlakyCartStore())
        with pytest.raises(ServerError, match="cart creation"):
            await env.auth.sign_up(_registration())

        assert env.store.get_user_by_email("shopper@example.com") is None
        assert env.store.credentials == {}
        # The address is free again once the partial account is gone
        env.store.carts_broken = False
        await env.auth.sign_up(_registration())

    async def test_sign_up_disabled(self, clock):
        env = _build(clock, allow_signup=False)
        with pytest.raises(ForbiddenError):
            await env.auth.sign_up(_registration())

    async def test_welcome_mail_failure_does_not_fail_sign_up(self, env):
        def _broken_render(template, context=None):
            raise RuntimeError("template engine down")

        env.email.render = _broken_render
        result = await env.auth.sign_up(_registration())
        assert result.user.email == "shopper@example.com"


class TestSignIn:
    async def test_sign_in_issues_distinct_ordered_tokens(self, env, clock):
        await env.auth.sign_up(_registration())
        clock.set(1000)

        result = await env.auth.sign_in("shopper@example.com", PASSWORD)

        access, refresh = result.tokens.access_claims, result.tokens.refresh_claims
        assert access.token_id != refresh.token_id
        assert access.expires_at == 4600
        assert access.expires_at < refresh.expires_at

    async def test_wrong_password(self, env):
        await env.auth.sign_up(_registration())
        with pytest.raises(InvalidCredentialsError):
            await env.auth.sign_in("shopper@example.com", "WrongPassword1")

    async def test_unknown_email(self, env):
        with pytest.raises(InvalidCredentialsError):
            await env.auth.sign_in("nobody@example.com", PASSWORD)

    async def test_inactive_account(self, env):
        user = (await env.auth.sign_up(_registration())).user
        env.store.users[user.id].is_active = False
        with pytest.raises(InvalidCredentialsError, match="disabled"):
            await env.auth.sign_in("shopper@example.com", PASSWORD)


class TestAuthenticate:
    async def test_bearer_header_is_parsed(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        claims = await env.auth.authenticate(f"Bearer {pair.access_token}")
        assert claims.token_id == pair.access_claims.token_id

    @pytest.mark.parametrize("header", [None, "", "Bearer", "Basic abc", "Bearer   "])
    async def test_missing_or_malformed_header(self, env, header):
        with pytest.raises(InvalidTokenError):
            await env.auth.authenticate(header)

    async def test_refresh_token_is_not_a_bearer_credential(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        with pytest.raises(InvalidTokenError):
            await env.auth.authenticate(f"Bearer {pair.refresh_token}")


class TestSignOut:
    async def test_signed_out_token_no_longer_validates(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        await env.auth.sign_out(pair.access_token)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.access_token)

    async def test_second_sign_out_fails(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        await env.auth.sign_out(pair.access_token)
        with pytest.raises(InvalidTokenError, match="already signed out"):
            await env.auth.sign_out(pair.access_token)

    async def test_concurrent_sign_outs_have_one_winner(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        results = await asyncio.gather(
            env.auth.sign_out(pair.access_token),
            env.auth.sign_out(pair.access_token),
            return_exceptions=True,
        )
        assert results.count(None) == 1
        assert sum(isinstance(r, InvalidTokenError) for r in results) == 1

    async def test_refresh_token_cannot_sign_out(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        with pytest.raises(InvalidTokenError, match="expected access token"):
            await env.auth.sign_out(pair.refresh_token)
        await env.tokens.validate(pair.refresh_token, token_type=REFRESH_TOKEN)

    async def test_expired_token_cannot_sign_out(self, env, clock):
        pair = (await env.auth.sign_up(_registration())).tokens
        clock.advance(env.tokens.access_ttl_seconds + 1)
        with pytest.raises(InvalidTokenError):
            await env.auth.sign_out(pair.access_token)

    async def test_unacknowledged_write_is_reported(self, clock):
        class RefusingCache(MemoryCache):
            async def set_with_ttl(self, key, value, ttl_seconds, *, nx=False):
                return False

        env = _build(clock, cache=RefusingCache(clock=clock))
        pair = (await env.auth.sign_up(_registration())).tokens
        with pytest.raises(DenylistWriteError) as exc_info:
            await env.auth.sign_out(pair.access_token)
        assert exc_info.value.message == "cannot denylist token"
        assert exc_info.value.status_code == 400


class TestRevokeTokens:
    async def test_revoke_pair_returns_working_replacement(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        claims = await env.tokens.validate(pair.access_token, token_type=ACCESS_TOKEN)

        new_pair = await env.auth.revoke_tokens(claims, pair.access_token, pair.refresh_token)

        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.access_token)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token)
        await env.tokens.validate(new_pair.access_token, token_type=ACCESS_TOKEN)
        await env.tokens.validate(new_pair.refresh_token, token_type=REFRESH_TOKEN)

    async def test_revoked_pair_cannot_be_revoked_again(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        claims = pair.access_claims
        await env.auth.revoke_tokens(claims, pair.access_token, pair.refresh_token)
        with pytest.raises(InvalidTokenError):
            await env.auth.revoke_tokens(claims, pair.access_token, pair.refresh_token)

    async def test_concurrent_revokes_of_one_pair_have_one_winner(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        claims = pair.access_claims

        results = await asyncio.gather(
            env.auth.revoke_tokens(claims, pair.access_token, pair.refresh_token),
            env.auth.revoke_tokens(claims, pair.access_token, pair.refresh_token),
            return_exceptions=True,
        )

        winners = [r for r in results if isinstance(r, TokenPair)]
        losers = [r for r in results if isinstance(r, InvalidTokenError)]
        assert len(winners) == 1
        assert len(losers) == 1
        await env.tokens.validate(winners[0].access_token, token_type=ACCESS_TOKEN)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.refresh_token, token_type=REFRESH_TOKEN)

    async def test_swapped_tokens_rejected(self, env):
        pair = (await env.auth.sign_up(_registration())).tokens
        with pytest.raises(InvalidTokenError):
            await env.auth.revoke_tokens(pair.access_claims, pair.refresh_token, pair.access_token)

    async def test_foreign_refresh_token_rejected(self, env):
        mine = (await env.auth.sign_up(_registration())).tokens
        theirs = (
            await env.auth.sign_up(_registration(email="other@example.com", phone="+15559876543"))
        ).tokens
        with pytest.raises(InvalidTokenError, match="different subjects"):
            await env.auth.revoke_tokens(mine.access_claims, mine.access_token, theirs.refresh_token)
        # Nothing was written for either caller
        await env.tokens.validate(mine.access_token)
        await env.tokens.validate(theirs.refresh_token, token_type=REFRESH_TOKEN)

    async def test_partial_write_is_reported(self, clock):
        class FlakyCache(MemoryCache):
            calls = 0

            async def set_with_ttl(self, key, value, ttl_seconds, *, nx=False):
                FlakyCache.calls += 1
                if FlakyCache.calls == 2:
                    return False
                return await super().set_with_ttl(key, value, ttl_seconds, nx=nx)

        env = _build(clock, cache=FlakyCache(clock=clock))
        pair = (await env.auth.sign_up(_registration())).tokens
        with pytest.raises(DenylistWriteError):
            await env.auth.revoke_tokens(pair.access_claims, pair.access_token, pair.refresh_token)


class TestChangePassword:
    async def test_password_change_scenario(self, env, clock):
        user = (await env.auth.sign_up(_registration())).user

        clock.set(1000)
        token_a = (await env.auth.sign_in("shopper@example.com", PASSWORD)).tokens
        assert token_a.access_claims.expires_at == 4600

        clock.set(2000)
        await env.auth.change_password(user.id, "shopper@example.com", PASSWORD, "NewPassword99")

        clock.set(2100)
        with pytest.raises(InvalidTokenError, match="password change"):
            await env.tokens.validate(token_a.access_token)
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(token_a.refresh_token)

        clock.set(2200)
        token_b = (await env.auth.sign_in("shopper@example.com", "NewPassword99")).tokens

        clock.set(2300)
        claims = await env.tokens.validate(token_b.access_token)
        assert claims.issued_at == 2200

    async def test_old_password_stops_working(self, env):
        user = (await env.auth.sign_up(_registration())).user
        await env.auth.change_password(user.id, "shopper@example.com", PASSWORD, "NewPassword99")
        with pytest.raises(InvalidCredentialsError):
            await env.auth.sign_in("shopper@example.com", PASSWORD)

    async def test_wrong_current_password(self, env):
        user = (await env.auth.sign_up(_registration())).user
        with pytest.raises(InvalidCredentialsError):
            await env.auth.change_password(user.id, "shopper@example.com", "nope-nope", "NewPassword99")

    async def test_cannot_change_another_accounts_password(self, env):
        me = (await env.auth.sign_up(_registration())).user
        await env.auth.sign_up(_registration(email="other@example.com", phone="+15559876543"))
        with pytest.raises(InvalidCredentialsError):
            await env.auth.change_password(me.id, "other@example.com", PASSWORD, "NewPassword99")

    async def test_marker_outlives_refresh_tokens(self, env, clock):
        user = (await env.auth.sign_up(_registration())).user
        clock.set(1000)
        old = (await env.auth.sign_in("shopper@example.com", PASSWORD)).tokens
        clock.set(2000)
        await env.auth.change_password(user.id, "shopper@example.com", PASSWORD, "NewPassword99")

        clock.set(old.refresh_claims.expires_at - 1)
        with pytest.raises(InvalidTokenError, match="password change"):
            await env.tokens.validate(old.refresh_token, token_type=REFRESH_TOKEN)

    async def test_marker_is_recorded_with_reason(self, env, clock):
        user = (await env.auth.sign_up(_registration())).user
        clock.set(2000)
        await env.auth.change_password(user.id, "shopper@example.com", PASSWORD, "NewPassword99")
        keys = (await env.cache.scan(0, match=TokenDenylist.key_for(user.id), count=100))[1]
        values = await env.cache.mget(keys)
        assert values == [DenylistReason.CHANGED_PASSWORD.value]


class TestForgotPassword:
    async def test_reset_mails_a_working_password(self, env):
        await env.auth.sign_up(_registration())
        env.email.sent.clear()

        job = await env.auth.forgot_password("shopper@example.com")

        assert job.state == "completed"
        mail = env.email.sent[0]
        temporary = next(
            line.strip() for line in mail.text.splitlines() if line.startswith("    ")
        )
        await env.auth.sign_in("shopper@example.com", temporary)
        with pytest.raises(InvalidCredentialsError):
            await env.auth.sign_in("shopper@example.com", PASSWORD)

    async def test_unknown_email(self, env):
        with pytest.raises(NotFoundError):
            await env.auth.forgot_password("nobody@example.com")

    async def test_existing_tokens_survive_by_default(self, env, clock):
        pair = (await env.auth.sign_up(_registration())).tokens
        clock.advance(5)
        await env.auth.forgot_password("shopper@example.com")
        await env.tokens.validate(pair.access_token)

    async def test_optional_token_invalidation(self, clock):
        env = _build(clock, forgot_password_revokes_tokens=True)
        pair = (await env.auth.sign_up(_registration())).tokens
        clock.advance(5)
        await env.auth.forgot_password("shopper@example.com")
        with pytest.raises(InvalidTokenError):
            await env.tokens.validate(pair.access_token)
