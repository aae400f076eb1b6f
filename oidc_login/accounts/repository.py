"""
Account repository interface and implementations.

Defines the port (interface) for account persistence and for the
authmap that binds (provider, sub) pairs to local accounts.
Includes an in-memory implementation for testing and development.
"""

import copy
import logging
from contextlib import asynccontextmanager
from datetime import datetime, UTC
from typing import AsyncIterator, Protocol

from oidc_login.accounts.models import Account
from oidc_login.core.exceptions import AccountError, SubjectAlreadyBoundError


logger = logging.getLogger(__name__)


class AccountRepository(Protocol):
    """
    Protocol defining the account repository interface.

    This is the "port" in hexagonal architecture - it defines what
    operations the domain needs, without specifying how they're implemented.
    """

    async def get_by_uid(self, uid: str) -> Account | None:
        """
        Get an account by local id.

        Args:
            uid: Local account id

        Returns:
            Account if found, None otherwise
        """
        ...

    async def find_by_mail(self, mail: str) -> Account | None:
        """Get an account by e-mail address (case-insensitive)."""
        ...

    async def name_exists(self, name: str) -> bool:
        """Check whether a login name is taken."""
        ...

    async def find_by_subject(self, provider: str, sub: str) -> Account | None:
        """
        Get the account bound to a provider subject.

        Args:
            provider: Provider id
            sub: Remote subject identifier

        Returns:
            Bound account if any, None otherwise
        """
        ...

    async def create(self, account: Account) -> Account:
        """
        Create a new account.

        Raises:
            AccountError: If the account or its name already exists
        """
        ...

    async def save(self, account: Account) -> Account:
        """
        Persist changes to an existing account.

        Raises:
            AccountError: If the account does not exist
        """
        ...

    async def bind_subject(self, uid: str, provider: str, sub: str) -> None:
        """
        Bind a provider subject to an account.

        Binding a subject to the account it is already bound to is a no-op.

        Raises:
            SubjectAlreadyBoundError: If the subject is bound to another account
            AccountError: If the account does not exist
        """
        ...

    async def unbind_subject(self, uid: str, provider: str) -> bool:
        """
        Remove the binding of an account for a provider.

        Returns:
            True if removed, False if there was none
        """
        ...

    async def list_connections(self, uid: str) -> dict[str, str]:
        """
        List provider bindings for an account.

        Returns:
            Mapping of provider id to subject
        """
        ...

    def transaction(self):
        """
        Async context manager grouping writes.

        Writes made inside the block are discarded if it raises.
        """
        ...


class InMemoryAccountRepository(AccountRepository):
    """
    In-memory implementation of AccountRepository.

    Useful for testing and local development. Data is lost when the
    application restarts.
    """

    def __init__(self):
        self._accounts: dict[str, Account] = {}
        self._authmap: dict[tuple[str, str], str] = {}

    async def get_by_uid(self, uid: str) -> Account | None:
        return self._accounts.get(uid)

    async def find_by_mail(self, mail: str) -> Account | None:
        wanted = mail.lower()
        for account in self._accounts.values():
            if account.mail and account.mail.lower() == wanted:
                return account
        return None

    async def name_exists(self, name: str) -> bool:
        return any(account.name == name for account in self._accounts.values())

    async def find_by_subject(self, provider: str, sub: str) -> Account | None:
        uid = self._authmap.get((provider, sub))
        if uid is None:
            return None
        return self._accounts.get(uid)

    async def create(self, account: Account) -> Account:
        if account.uid in self._accounts:
            raise AccountError(f"Account {account.uid} already exists")
        if await self.name_exists(account.name):
            raise AccountError(f"Account name {account.name} already exists")
        self._accounts[account.uid] = account
        logger.info(f"Created account: {account.uid}")
        return account

    async def save(self, account: Account) -> Account:
        if account.uid not in self._accounts:
            raise AccountError(f"Account {account.uid} not found - cannot save")
        account.updated_at = datetime.now(UTC)
        self._accounts[account.uid] = account
        logger.debug(f"Saved account: {account.uid}")
        return account

    async def bind_subject(self, uid: str, provider: str, sub: str) -> None:
        if uid not in self._accounts:
            raise AccountError(f"Account {uid} not found - cannot bind subject")

        bound_uid = self._authmap.get((provider, sub))
        if bound_uid == uid:
            return
        if bound_uid is not None:
            raise SubjectAlreadyBoundError(
                f"{provider} subject is already bound to another account"
            )

        # One binding per provider and account
        for key, value in list(self._authmap.items()):
            if key[0] == provider and value == uid:
                del self._authmap[key]

        self._authmap[(provider, sub)] = uid
        logger.info(f"Bound {provider} subject to account {uid}")

    async def unbind_subject(self, uid: str, provider: str) -> bool:
        for key, value in list(self._authmap.items()):
            if key[0] == provider and value == uid:
                del self._authmap[key]
                logger.info(f"Removed {provider} binding for account {uid}")
                return True
        return False

    async def list_connections(self, uid: str) -> dict[str, str]:
        return {
            provider: sub
            for (provider, sub), bound_uid in self._authmap.items()
            if bound_uid == uid
        }

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        accounts = copy.deepcopy(self._accounts)
        authmap = dict(self._authmap)
        try:
            yield
        except BaseException:
            self._accounts = accounts
            self._authmap = authmap
            logger.warning("Account transaction rolled back")
            raise


# Singleton instance for dependency injection
_repository: AccountRepository | None = None


def get_account_repository() -> AccountRepository:
    """
    Get the account repository singleton.

    Can be overridden via set_account_repository for testing.
    """
    global _repository
    if _repository is None:
        logger.info("Using in-memory account repository")
        _repository = InMemoryAccountRepository()
    return _repository


def set_account_repository(repository: AccountRepository) -> None:
    """
    Set the account repository implementation.

    Use this to inject a persistent or mock repository.
    """
    global _repository
    _repository = repository


def reset_account_repository() -> None:
    """
    Reset the account repository singleton.

    Useful for testing to ensure clean state between tests.
    """
    global _repository
    _repository = None
