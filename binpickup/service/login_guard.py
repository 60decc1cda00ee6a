from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional, Protocol

from binpickup.config import Settings
from binpickup.logging import get_logger
from binpickup.storage.models import Account, LoginHistoryEntry, utcnow

logger = get_logger(__name__)


class AccountWriter(Protocol):
    async def save_account(self, account: Account) -> Account: ...


class LoginGuard:
    """Failed-login counter with a timed lockout.

    An account locks once ``max_login_attempts`` consecutive failures are
    recorded and stays locked until ``lock_until`` passes. Expired locks are
    ignored on read even if the flag is still persisted.
    """

    def __init__(
        self,
        store: AccountWriter,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock

    def is_locked(self, account: Account, now: Optional[datetime] = None) -> bool:
        if not account.locked or account.lock_until is None:
            return False
        return account.lock_until > (now or self._clock())

    def _append_history(
        self,
        account: Account,
        *,
        success: bool,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> None:
        entry = LoginHistoryEntry(
            timestamp=now, ip_address=ip_address, user_agent=user_agent, success=success
        )
        account.login_history = [entry, *account.login_history][
            : self.settings.login_history_limit
        ]

    async def record_failure(
        self,
        account: Account,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        now = self._clock()
        if account.locked and not self.is_locked(account, now):
            # lapsed lock: start counting afresh
            account.failed_attempts = 0
            account.locked = False
            account.lock_until = None
        account.failed_attempts += 1
        if account.failed_attempts >= self.settings.max_login_attempts:
            account.locked = True
            account.lock_until = now + self.settings.lockout_duration
            logger.warning(
                "account_locked",
                account_id=account.id,
                failed_attempts=account.failed_attempts,
                lock_until=account.lock_until.isoformat(),
                ip_address=ip_address,
            )
        self._append_history(
            account, success=False, ip_address=ip_address, user_agent=user_agent, now=now
        )
        return await self.store.save_account(account)

    async def record_success(
        self,
        account: Account,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        persist: bool = True,
    ) -> Account:
        now = self._clock()
        account.failed_attempts = 0
        account.locked = False
        account.lock_until = None
        account.last_login = now
        account.last_login_ip = ip_address
        self._append_history(
            account, success=True, ip_address=ip_address, user_agent=user_agent, now=now
        )
        if not persist:
            return account
        return await self.store.save_account(account)
