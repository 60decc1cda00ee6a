from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from binpickup.config import Settings
from binpickup.logging import get_logger
from binpickup.service.errors import (
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    WrongTokenTypeError,
)
from binpickup.storage.models import utcnow
from binpickup.storage.redis_cache import RevocationCache, denylist_key

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    sub: str
    type: str
    iat: float
    exp: int
    jti: str

    @property
    def issued_at(self) -> datetime:
        return datetime.fromtimestamp(self.iat, tz=timezone.utc)

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.exp, tz=timezone.utc)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    refresh_issued_at: datetime
    token_type: str = "bearer"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Issues and verifies HS256 access/refresh tokens.

    Access and refresh tokens are signed with separate secrets and carry a
    ``type`` claim, so neither can stand in for the other. Access tokens can
    be revoked early through the revocation cache; refresh tokens are revoked
    by removing them from the owning account.
    """

    def __init__(
        self,
        settings: Settings,
        cache: RevocationCache,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self._clock = clock
        self._secrets = {
            ACCESS: settings.access_token_secret.encode(),
            REFRESH: settings.refresh_token_secret.encode(),
        }

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type], signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, token_type)}"

    def _decode(self, token: str, token_type: str) -> TokenClaims:
        """Check format, algorithm and signature; expiry is left to the caller."""
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidError("malformed token")

        # Pin the algorithm so a forged header cannot downgrade verification
        try:
            header = json.loads(_decode_segment(header_b64))
        except Exception:
            raise TokenInvalidError("undecodable token header")
        if not isinstance(header, dict):
            raise TokenInvalidError("undecodable token header")
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenInvalidError("unsupported token algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError("bad token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
            return TokenClaims(
                sub=str(payload["sub"]),
                type=str(payload["type"]),
                iat=float(payload["iat"]),
                exp=int(payload["exp"]),
                jti=str(payload["jti"]),
            )
        except Exception as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidError("malformed token claims")

    def _mint(self, account_id: str, token_type: str, ttl: timedelta, now: datetime) -> tuple[str, datetime]:
        # iat keeps sub-second precision; exp is whole seconds
        iat = now.timestamp()
        exp = int(iat) + int(ttl.total_seconds())
        payload = {
            "sub": account_id,
            "type": token_type,
            "iat": iat,
            "exp": exp,
            "jti": secrets.token_hex(16),
        }
        return self._encode(payload, token_type), datetime.fromtimestamp(exp, tz=timezone.utc)

    def issue_pair(self, account_id: str, *, refresh_ttl: Optional[timedelta] = None) -> TokenPair:
        now = self._clock()
        access_token, access_exp = self._mint(
            account_id, ACCESS, self.settings.access_token_ttl, now
        )
        refresh_token, refresh_exp = self._mint(
            account_id, REFRESH, refresh_ttl or self.settings.refresh_token_ttl, now
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
            refresh_issued_at=datetime.fromtimestamp(int(now.timestamp()), tz=timezone.utc),
        )

    def _verify(self, token: str, token_type: str) -> TokenClaims:
        claims = self._decode(token, token_type)
        if claims.exp <= self._clock().timestamp():
            raise TokenExpiredError("token expired")
        if claims.type != token_type:
            raise WrongTokenTypeError(f"expected {token_type} token")
        return claims

    async def verify_access(self, token: str) -> TokenClaims:
        claims = self._verify(token, ACCESS)
        if await self.is_revoked(token):
            raise TokenRevokedError("token revoked")
        return claims

    def verify_refresh(self, token: str) -> TokenClaims:
        return self._verify(token, REFRESH)

    async def revoke_access(self, token: str, ttl: Optional[int] = None) -> bool:
        """Denylist an access token for the rest of its lifetime.

        Returns ``False`` when nothing was written: the token is unreadable or
        already expired, or the cache is unavailable.
        """
        if ttl is None:
            try:
                claims = self._decode(token, ACCESS)
            except TokenInvalidError:
                logger.info("token_revoke_skipped", reason="undecodable")
                return False
            ttl = int(claims.exp - self._clock().timestamp())
        if ttl <= 0:
            return False
        # every call goes to the cache; a backend outage only fails this write
        written = await self.cache.set(denylist_key(token), "1", ttl_seconds=ttl)
        if not written:
            logger.warning("token_revoke_not_written", ttl_seconds=ttl)
        return written

    async def is_revoked(self, token: str) -> bool:
        """Denylist lookup; an unreachable cache reads as not revoked."""
        return await self.cache.exists(denylist_key(token))
