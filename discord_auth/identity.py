"""
Identity binding for the Discord Auth Proxy.

This module defines the boundary between the OAuth flow and the host
application's accounts: an abstract IdentityBinder, plus an in-memory
account registry and binder used by the bundled Flask application.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, Optional
import logging
import threading
import time
import uuid


class IdentityBindingError(Exception):
    """Raised when an external identity cannot be bound to a local account."""
    pass


class IdentityBinder(ABC):
    """
    Account lookup and provisioning service.

    Implementations must tolerate duplicate ``authenticate_or_create`` calls
    for the same external ID (e.g. a double-submitted callback); the second
    call logs the same account in again instead of failing.
    """

    @abstractmethod
    def account_exists(self, external_id: str) -> bool:
        pass

    @abstractmethod
    def authenticate_or_create(self, display_name: str, email: Optional[str], external_id: str,
                               access_token: str, avatar_ref: Optional[str],
                               extra_data_blob: str) -> Any:
        """
        Log in the account bound to ``external_id``, provisioning it if needed.

        Returns:
            Terminal response of the login flow

        Raises:
            IdentityBindingError: If the account cannot be logged in or created
        """
        pass


@dataclass
class LocalAccount:
    """A local account bound to a Discord identity."""
    user_id: str
    external_id: str
    display_name: str
    email: Optional[str]
    avatar_ref: Optional[str]
    extra_data: str
    created_at: float = field(default_factory=time.time)
    last_login_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BindingResult:
    """Outcome of a successful identity binding."""
    account: LocalAccount
    created: bool


class AccountRegistry:
    """Thread-safe in-memory store of local accounts keyed by external ID."""

    def __init__(self):
        self._accounts: Dict[str, LocalAccount] = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def get(self, external_id: str) -> Optional[LocalAccount]:
        with self._lock:
            return self._accounts.get(external_id)

    def upsert(self, external_id: str, display_name: str, email: Optional[str],
               avatar_ref: Optional[str], extra_data: str) -> BindingResult:
        """
        Create the account for ``external_id`` or refresh its profile fields.

        Extra data is only recorded when the account is created.

        Returns:
            BindingResult with the stored account and whether it was created
        """
        with self._lock:
            account = self._accounts.get(external_id)
            if account is not None:
                account.display_name = display_name
                account.email = email
                account.avatar_ref = avatar_ref
                account.last_login_at = time.time()
                return BindingResult(account=account, created=False)

            account = LocalAccount(
                user_id=str(uuid.uuid4()),
                external_id=external_id,
                display_name=display_name,
                email=email,
                avatar_ref=avatar_ref,
                extra_data=extra_data
            )
            self._accounts[external_id] = account

        self.logger.info(f"Created local account {account.user_id} for external ID {external_id}")
        return BindingResult(account=account, created=True)

    def clear(self) -> None:
        with self._lock:
            self._accounts.clear()


class LocalIdentityBinder(IdentityBinder):
    """IdentityBinder backed by an AccountRegistry."""

    def __init__(self, registry: Optional[AccountRegistry] = None):
        self.registry = registry or AccountRegistry()
        self.logger = logging.getLogger(__name__)

    def account_exists(self, external_id: str) -> bool:
        return self.registry.get(external_id) is not None

    def authenticate_or_create(self, display_name: str, email: Optional[str], external_id: str,
                               access_token: str, avatar_ref: Optional[str],
                               extra_data_blob: str) -> BindingResult:
        if not external_id:
            raise IdentityBindingError('External ID is required')

        # The access token is only needed by binders that call the provider.
        result = self.registry.upsert(
            external_id=external_id,
            display_name=display_name or external_id,
            email=email,
            avatar_ref=avatar_ref,
            extra_data=extra_data_blob
        )

        self.logger.info(
            f"Authenticated local account {result.account.user_id} "
            f"({'new' if result.created else 'existing'})"
        )
        return result
