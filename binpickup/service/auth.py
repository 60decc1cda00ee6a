from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from binpickup.config import Settings
from binpickup.logging import get_logger, log_auth_failure
from binpickup.service.errors import (
    AccountLockedError,
    AccountNotFoundError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    NotFoundError,
    TokenInvalidError,
    TokenStaleError,
    UpstreamUnavailableError,
    ValidationError,
)
from binpickup.service.login_guard import LoginGuard
from binpickup.service.tokens import TokenClaims, TokenPair, TokenService
from binpickup.storage.errors import ConstraintViolation, StoreUnavailable
from binpickup.storage.models import ROLES, Account, RefreshTokenRecord, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class AuthStore(Protocol):
    async def create_account(self, account: Account) -> Account: ...

    async def get_account(self, account_id: str) -> Optional[Account]: ...

    async def get_account_by_email(self, email: str) -> Optional[Account]: ...

    async def save_account(self, account: Account) -> Account: ...

    async def list_accounts(self, limit: Optional[int] = 100) -> List[Account]: ...


@dataclass
class AuthContext:
    account_id: str
    role: str
    email: str
    token: str
    claims: TokenClaims


class AuthService:
    """Account sessions: registration, login, token rotation and the auth gate.

    Every flow is a short sequence of awaited store/cache calls with no
    in-process locking; concurrent writes to one account are last-write-wins.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenService,
        guard: LoginGuard,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self.guard = guard
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _verify_password(self, account: Account, password: str) -> bool:
        if account.password_algo != PASSWORD_ALGO:
            self.logger.warning(
                "password_algo_mismatch", account_id=account.id, algo=account.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # refresh-token set
    def _store_refresh_token(
        self,
        account: Account,
        pair: TokenPair,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        account.refresh_tokens.append(
            RefreshTokenRecord(
                token=pair.refresh_token,
                issued_at=pair.refresh_issued_at,
                expires_at=pair.refresh_expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        )
        overflow = len(account.refresh_tokens) - self.settings.max_refresh_tokens
        if overflow > 0:
            del account.refresh_tokens[:overflow]

    async def _create_account(
        self,
        *,
        name: str,
        email: str,
        password: str,
        role: str,
        phone: Optional[str],
        address: Optional[str],
    ) -> Account:
        if role not in ROLES:
            raise ValidationError("invalid role", detail={"field": "role", "allowed": list(ROLES)})
        if await self.store.get_account_by_email(email):
            raise ConflictError("User with this email already exists")
        password_hash, algo = self._hash_password(password)
        account = Account.new(
            email=email,
            name=name,
            password_hash=password_hash,
            password_algo=algo,
            role=role,
            phone=phone,
            address=address,
        )
        try:
            return await self.store.create_account(account)
        except ConstraintViolation:
            raise ConflictError("User with this email already exists")

    async def register(
        self,
        *,
        name: str,
        email: str,
        password: str,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Account, TokenPair]:
        account = await self._create_account(
            name=name,
            email=email,
            password=password,
            role="customer",
            phone=phone,
            address=address,
        )
        pair = self.tokens.issue_pair(account.id)
        self._store_refresh_token(account, pair, ip_address=ip_address, user_agent=user_agent)
        account = await self.store.save_account(account)
        self.logger.info("account_registered", account_id=account.id, role=account.role)
        return account, pair

    async def admin_create_user(
        self,
        *,
        name: str,
        email: str,
        password: str,
        role: str = "customer",
        phone: Optional[str] = None,
        address: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Account:
        account = await self._create_account(
            name=name,
            email=email,
            password=password,
            role=role,
            phone=phone,
            address=address,
        )
        self.logger.info(
            "account_created_by_admin",
            account_id=account.id,
            role=account.role,
            created_by=created_by,
        )
        return account

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Account, TokenPair]:
        account = await self.store.get_account_by_email(email)
        if account is None or not account.is_active:
            log_auth_failure(
                "unknown_or_inactive_account",
                ip_address=ip_address,
                user_agent=user_agent,
                logger=self.logger,
            )
            raise InvalidCredentialsError("Invalid email or password")

        # A locked account never reaches the password comparison
        if self.guard.is_locked(account):
            log_auth_failure(
                "account_locked",
                ip_address=ip_address,
                user_agent=user_agent,
                logger=self.logger,
                account_id=account.id,
            )
            raise AccountLockedError(account.lock_until)

        if not self._verify_password(account, password):
            await self.guard.record_failure(
                account, ip_address=ip_address, user_agent=user_agent
            )
            log_auth_failure(
                "wrong_password",
                ip_address=ip_address,
                user_agent=user_agent,
                logger=self.logger,
                account_id=account.id,
                failed_attempts=account.failed_attempts,
            )
            raise InvalidCredentialsError("Invalid email or password")

        await self.guard.record_success(
            account, ip_address=ip_address, user_agent=user_agent, persist=False
        )
        refresh_ttl = self.settings.remember_me_refresh_ttl if remember_me else None
        pair = self.tokens.issue_pair(account.id, refresh_ttl=refresh_ttl)
        self._store_refresh_token(account, pair, ip_address=ip_address, user_agent=user_agent)
        account = await self.store.save_account(account)
        self.logger.info(
            "login_succeeded",
            account_id=account.id,
            remember_me=remember_me,
            sessions=len(account.refresh_tokens),
        )
        return account, pair

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Account, TokenPair]:
        """Exchange a refresh token for a new pair, replacing it in place."""
        if not refresh_token:
            raise ValidationError("Refresh token is required", detail={"field": "refreshToken"})
        try:
            claims = self.tokens.verify_refresh(refresh_token)
            account = await self.store.get_account(claims.sub)
            if account is None or not account.is_active:
                raise AccountNotFoundError("account not found")
            now = self._clock()
            index = next(
                (i for i, r in enumerate(account.refresh_tokens) if r.token == refresh_token),
                None,
            )
            if index is None:
                raise TokenInvalidError("refresh token not recognised")
            record = account.refresh_tokens[index]
            if record.is_expired(now):
                raise TokenInvalidError("stored refresh token expired")
        except AuthenticationError as exc:
            log_auth_failure(
                exc.error_code,
                ip_address=ip_address,
                user_agent=user_agent,
                path="refresh",
                logger=self.logger,
            )
            raise

        # keep the original session length, e.g. remember-me
        pair = self.tokens.issue_pair(
            account.id, refresh_ttl=record.expires_at - record.issued_at
        )
        account.refresh_tokens[index] = RefreshTokenRecord(
            token=pair.refresh_token,
            issued_at=pair.refresh_issued_at,
            expires_at=pair.refresh_expires_at,
            user_agent=user_agent or record.user_agent,
            ip_address=ip_address or record.ip_address,
        )
        account = await self.store.save_account(account)
        self.logger.info("refresh_token_rotated", account_id=account.id)
        return account, pair

    async def logout(
        self,
        token: str,
        account_id: str,
        *,
        refresh_token: Optional[str] = None,
        logout_all: bool = False,
    ) -> None:
        await self.tokens.revoke_access(token)
        account = await self.store.get_account(account_id)
        if account is None:
            return
        if logout_all:
            account.refresh_tokens = []
        elif refresh_token:
            account.refresh_tokens = [
                r for r in account.refresh_tokens if r.token != refresh_token
            ]
        else:
            return
        await self.store.save_account(account)
        self.logger.info("logout", account_id=account_id, logout_all=logout_all)

    async def change_password(
        self,
        account_id: str,
        token: str,
        current_password: str,
        new_password: str,
    ) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError("account not found")
        if not self._verify_password(account, current_password):
            self.logger.warning("password_change_rejected", account_id=account_id)
            raise InvalidCredentialsError("Current password is incorrect", status_code=400)
        account.password_hash, account.password_algo = self._hash_password(new_password)
        account.password_changed_at = self._clock()
        account.refresh_tokens = []
        account = await self.store.save_account(account)
        await self.tokens.revoke_access(token)
        self.logger.info("password_changed", account_id=account_id)
        return account

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        lower = header.lower()
        if not lower.startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    async def _resolve_context(self, token: str) -> AuthContext:
        claims = await self.tokens.verify_access(token)
        account = await self.store.get_account(claims.sub)
        if account is None or not account.is_active:
            raise AccountNotFoundError("account not found")
        if self.guard.is_locked(account):
            raise AccountLockedError(account.lock_until)
        changed_at = account.password_changed_at
        if changed_at is not None and claims.iat < changed_at.timestamp():
            raise TokenStaleError("token predates password change")
        return AuthContext(
            account_id=account.id,
            role=account.role,
            email=account.email,
            token=token,
            claims=claims,
        )

    async def _run_gate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("missing bearer token", error_code="missing_token")
        try:
            return await asyncio.wait_for(
                self._resolve_context(token), timeout=self.settings.auth_timeout_seconds
            )
        except asyncio.TimeoutError:
            raise AuthenticationError("authentication timed out", error_code="auth_timeout")
        except StoreUnavailable as exc:
            # an outage is not a credential failure and is never downgraded
            self.logger.error("auth_store_unavailable", error=exc.message)
            raise UpstreamUnavailableError("Service temporarily unavailable") from exc

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        path: Optional[str] = None,
    ) -> AuthContext:
        """Resolve a bearer header into an ``AuthContext`` or raise.

        Checks, in order: signature and expiry, denylist, account exists and
        is active, lockout, and that the token is newer than the last
        password change. Store outages propagate; they are not auth failures.
        """
        try:
            return await self._run_gate(authorization)
        except (AuthenticationError, AccountLockedError) as exc:
            log_auth_failure(
                exc.error_code,
                ip_address=ip_address,
                user_agent=user_agent,
                path=path,
                logger=self.logger,
            )
            raise

    async def optional_authenticate(
        self,
        authorization: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        path: Optional[str] = None,
    ) -> Optional[AuthContext]:
        if not authorization:
            return None
        try:
            return await self._run_gate(authorization)
        except (AuthenticationError, AccountLockedError) as exc:
            # Falls back to anonymous, including stale tokens; never authenticated
            self.logger.info(
                "optional_auth_downgraded",
                reason=exc.error_code,
                ip_address=ip_address,
                user_agent=user_agent,
                path=path,
            )
            return None

    def require_role(self, ctx: AuthContext, *roles: str) -> AuthContext:
        if roles and ctx.role not in roles:
            self.logger.warning(
                "role_forbidden", account_id=ctx.account_id, role=ctx.role, required=list(roles)
            )
            raise ForbiddenError("Insufficient permissions")
        return ctx

    async def get_profile(self, account_id: str) -> Account:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    async def purge_expired_refresh_tokens(self) -> int:
        """Drop expired refresh-token records from every account."""
        now = self._clock()
        removed = 0
        for account in await self.store.list_accounts(limit=None):
            live = [r for r in account.refresh_tokens if not r.is_expired(now)]
            if len(live) == len(account.refresh_tokens):
                continue
            removed += len(account.refresh_tokens) - len(live)
            account.refresh_tokens = live
            await self.store.save_account(account)
        if removed:
            self.logger.info("expired_refresh_tokens_purged", removed=removed)
        return removed
