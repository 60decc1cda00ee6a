"""Unit tests for access/refresh token issuing and verification."""

import base64
import json

import pytest

from binpickup.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    WrongTokenTypeError,
)
from binpickup.service.tokens import TokenService
from binpickup.storage.redis_cache import NullCache, denylist_key


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _payload(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssuePair:
    def test_pair_carries_typed_claims(self, token_service, clock):
        pair = token_service.issue_pair("acct-1")

        access = _payload(pair.access_token)
        refresh = _payload(pair.refresh_token)
        assert access["sub"] == refresh["sub"] == "acct-1"
        assert access["type"] == "access"
        assert refresh["type"] == "refresh"
        assert access["iat"] == clock().timestamp()
        assert access["jti"] != refresh["jti"]

    async def test_issued_at_keeps_milliseconds(self, token_service, clock):
        clock.advance(milliseconds=250)
        pair = token_service.issue_pair("acct-1")

        claims = await token_service.verify_access(pair.access_token)

        assert claims.iat == clock().timestamp()
        assert claims.issued_at == clock()
        assert claims.exp == int(clock().timestamp()) + 15 * 60

    def test_default_lifetimes(self, token_service, settings, clock):
        pair = token_service.issue_pair("acct-1")

        assert pair.access_expires_at - clock() == settings.access_token_ttl
        assert pair.refresh_expires_at - clock() == settings.refresh_token_ttl
        assert pair.token_type == "bearer"

    def test_custom_refresh_lifetime(self, token_service, settings, clock):
        pair = token_service.issue_pair("acct-1", refresh_ttl=settings.remember_me_refresh_ttl)

        assert pair.refresh_expires_at - clock() == settings.remember_me_refresh_ttl

    def test_tokens_issued_in_same_second_differ(self, token_service):
        first = token_service.issue_pair("acct-1")
        second = token_service.issue_pair("acct-1")

        assert first.access_token != second.access_token
        assert first.refresh_token != second.refresh_token


class TestVerify:
    async def test_access_token_round_trip(self, token_service):
        pair = token_service.issue_pair("acct-1")

        claims = await token_service.verify_access(pair.access_token)

        assert claims.sub == "acct-1"
        assert claims.type == "access"

    def test_refresh_token_round_trip(self, token_service):
        pair = token_service.issue_pair("acct-1")

        claims = token_service.verify_refresh(pair.refresh_token)

        assert claims.sub == "acct-1"
        assert claims.type == "refresh"

    async def test_refresh_token_rejected_as_access(self, token_service):
        pair = token_service.issue_pair("acct-1")

        # signed with the other secret, so the signature check fails first
        with pytest.raises(TokenInvalidError):
            await token_service.verify_access(pair.refresh_token)

    def test_access_token_rejected_as_refresh(self, token_service):
        pair = token_service.issue_pair("acct-1")

        with pytest.raises(TokenInvalidError):
            token_service.verify_refresh(pair.access_token)

    async def test_type_claim_is_enforced(self, token_service, clock):
        # correctly signed with the access secret but typed as refresh
        now = int(clock().timestamp())
        forged = token_service._encode(
            {"sub": "acct-1", "type": "refresh", "iat": now, "exp": now + 60, "jti": "x"},
            "access",
        )

        with pytest.raises(WrongTokenTypeError):
            await token_service.verify_access(forged)

    async def test_expired_access_token(self, token_service, settings, clock):
        pair = token_service.issue_pair("acct-1")
        clock.advance(minutes=settings.access_token_ttl_minutes, seconds=1)

        with pytest.raises(TokenExpiredError):
            await token_service.verify_access(pair.access_token)

    async def test_access_token_valid_until_expiry(self, token_service, settings, clock):
        pair = token_service.issue_pair("acct-1")
        clock.advance(minutes=settings.access_token_ttl_minutes, seconds=-1)

        claims = await token_service.verify_access(pair.access_token)
        assert claims.sub == "acct-1"

    async def test_tampered_payload_rejected(self, token_service):
        pair = token_service.issue_pair("acct-1")
        header, payload, signature = pair.access_token.split(".")
        claims = _payload(pair.access_token)
        claims["sub"] = "acct-2"

        with pytest.raises(TokenInvalidError):
            await token_service.verify_access(f"{header}.{_b64(claims)}.{signature}")

    async def test_none_algorithm_rejected(self, token_service):
        pair = token_service.issue_pair("acct-1")
        _, payload, _ = pair.access_token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        with pytest.raises(TokenInvalidError):
            await token_service.verify_access(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.@@.##"])
    async def test_malformed_tokens(self, token_service, token):
        with pytest.raises(TokenInvalidError):
            await token_service.verify_access(token)


class TestRevocation:
    async def test_revoked_access_token_rejected(self, token_service, revocation_cache):
        pair = token_service.issue_pair("acct-1")

        assert await token_service.revoke_access(pair.access_token) is True
        assert await revocation_cache.exists(denylist_key(pair.access_token))
        with pytest.raises(TokenRevokedError):
            await token_service.verify_access(pair.access_token)

    async def test_revocation_ttl_matches_remaining_lifetime(
        self, token_service, revocation_cache, settings, clock
    ):
        pair = token_service.issue_pair("acct-1")
        clock.advance(minutes=5)
        written = {}

        async def capture(key, value, ttl_seconds=None):
            written[key] = ttl_seconds
            return True

        revocation_cache.set = capture
        await token_service.revoke_access(pair.access_token)

        expected = settings.access_token_ttl_minutes * 60 - 5 * 60
        assert written == {denylist_key(pair.access_token): expected}

    async def test_expired_token_not_written(self, token_service, revocation_cache, settings, clock):
        pair = token_service.issue_pair("acct-1")
        clock.advance(minutes=settings.access_token_ttl_minutes + 1)

        assert await token_service.revoke_access(pair.access_token) is False
        assert revocation_cache.entries == {}

    async def test_denylist_key_never_holds_raw_token(self, token_service, revocation_cache):
        pair = token_service.issue_pair("acct-1")
        await token_service.revoke_access(pair.access_token)

        (key,) = revocation_cache.entries.keys()
        assert pair.access_token not in key
        assert key.startswith("auth:access:denylist:")

    async def test_without_cache_revocation_is_a_no_op(self, settings, clock):
        tokens = TokenService(settings, NullCache(), clock=clock)
        pair = tokens.issue_pair("acct-1")

        assert await tokens.revoke_access(pair.access_token) is False
        claims = await tokens.verify_access(pair.access_token)
        assert claims.sub == "acct-1"

    async def test_cache_outage_fails_open(self, token_service, revocation_cache):
        pair = token_service.issue_pair("acct-1")
        await token_service.revoke_access(pair.access_token)
        revocation_cache.is_up = False

        assert await token_service.is_revoked(pair.access_token) is False
