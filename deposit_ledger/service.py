"""
Ledger Service Module

Authenticated gateway over the ledger core, plus LedgerSystem, which
composes every component from a LedgerConfig.

Every gateway call verifies the caller's credential before reading or
writing any account state, then translates the external owner identity
into the internal owner id the account store keys on.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union

from .accounts import Account, AccountStatus, AccountStore, AmountLike, to_positive_amount
from .audit import AuditTrail
from .cards import Card, CardLinkSynchronizer, StorageCardStore
from .config import LedgerConfig, get_config
from .exceptions import InvalidTransitionError, UnauthorizedError
from .identity import Authenticator, CustomerDirectory, IdentityResolver
from .ledger import (
    LedgerEntry, LedgerEntryKind, ReconciliationResult, TransactionLedger, TransactionSummary
)
from .locking import AccountLockRegistry
from .logging_config import get_logger, log_action, setup_logging_from_config
from .retry import StorageRetryPolicy
from .storage import StorageInterface, create_storage
from .transfers import MovementReceipt, TransferCoordinator, TransferReceipt


class StatusAction(Enum):
    """Status actions accepted from callers"""
    FREEZE = "FREEZE"
    UNFREEZE = "UNFREEZE"

    @classmethod
    def parse(cls, value: Union['StatusAction', str]) -> 'StatusAction':
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                pass
        raise InvalidTransitionError(None, None, f"Unknown status action: {value!r}")

    @property
    def target(self) -> AccountStatus:
        return AccountStatus.FROZEN if self == StatusAction.FREEZE else AccountStatus.ACTIVE


class LedgerService:
    """
    Authenticated entry point for ledger operations
    """

    def __init__(
        self,
        authenticator: Authenticator,
        identity_resolver: IdentityResolver,
        account_store: AccountStore,
        ledger: TransactionLedger,
        coordinator: TransferCoordinator,
        card_sync: CardLinkSynchronizer
    ):
        self.authenticator = authenticator
        self.identity = identity_resolver
        self.accounts = account_store
        self.ledger = ledger
        self.coordinator = coordinator
        self.card_sync = card_sync
        self.logger = get_logger("deposit_ledger.service")

    def _authenticate(self, owner_id: str, credential: str) -> str:
        """Verify the credential and return the internal owner id"""
        if not owner_id or not str(owner_id).strip() or not credential:
            log_action(
                self.logger, "warning", "Rejected call with missing credentials",
                action="authenticate", extra={"code": UnauthorizedError.code}
            )
            raise UnauthorizedError(owner_id or None, "Owner id and credential are required")

        if not self.authenticator.verify(owner_id, credential):
            log_action(
                self.logger, "warning", "Rejected call with invalid credentials",
                user_id=owner_id, action="authenticate", extra={"code": UnauthorizedError.code}
            )
            raise UnauthorizedError(owner_id)

        return self.identity.resolve_account_owner(owner_id).owner_id

    def _account_id(self, owner_id: str, credential: str) -> str:
        return self.accounts.get(self._authenticate(owner_id, credential)).id

    def create_account(self, owner_id: str, credential: str,
                       initial_balance: Optional[AmountLike] = None) -> Account:
        return self.accounts.create(self._authenticate(owner_id, credential), initial_balance)

    def get_account(self, owner_id: str, credential: str) -> Account:
        return self.accounts.get(self._authenticate(owner_id, credential))

    def close_account(self, owner_id: str, credential: str, reason: Optional[str] = None) -> Account:
        return self.accounts.close(self._account_id(owner_id, credential), reason)

    def update_status(self, owner_id: str, credential: str,
                      action: Union[StatusAction, str], reason: Optional[str] = None) -> Account:
        """
        Apply FREEZE or UNFREEZE (case-insensitive)

        Raises:
            InvalidTransitionError: unknown action, or not allowed from the
                account's current status
        """
        account_id = self._account_id(owner_id, credential)
        status_action = StatusAction.parse(action)
        return self.accounts.set_status(account_id, status_action.target, reason)

    def deposit(self, owner_id: str, credential: str, amount: AmountLike,
                note: Optional[str] = None) -> MovementReceipt:
        return self.coordinator.deposit(self._account_id(owner_id, credential), amount, note)

    def withdraw(self, owner_id: str, credential: str, amount: AmountLike,
                 note: Optional[str] = None) -> MovementReceipt:
        return self.coordinator.withdraw(self._account_id(owner_id, credential), amount, note)

    def history(self, owner_id: str, credential: str) -> List[LedgerEntry]:
        return self.ledger.history(self._account_id(owner_id, credential))

    def filter_transactions(
        self,
        owner_id: str,
        credential: str,
        kind: Optional[Union[LedgerEntryKind, str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[LedgerEntry]:
        return self.ledger.filter(self._account_id(owner_id, credential), kind, start, end)

    def summarize(self, owner_id: str, credential: str, start: Optional[datetime] = None,
                  end: Optional[datetime] = None) -> TransactionSummary:
        return self.ledger.summarize(self._account_id(owner_id, credential), start, end)

    def reconcile(self, owner_id: str, credential: str) -> ReconciliationResult:
        return self.ledger.reconcile(self._account_id(owner_id, credential))

    def transfer(self, from_owner_id: str, credential: str, to_owner_id: str,
                 amount: AmountLike, note: Optional[str] = None) -> TransferReceipt:
        """
        Transfer from the authenticated owner's account to another owner's.
        Only the source owner authenticates.
        """
        source_owner = self._authenticate(from_owner_id, credential)
        value: Decimal = to_positive_amount(amount, self.accounts.precision)
        destination_owner = self.identity.resolve_account_owner(to_owner_id).owner_id
        return self.coordinator.transfer(source_owner, destination_owner, value, note)

    def get_card(self, owner_id: str, credential: str) -> Optional[Card]:
        """The owner's card with its status synchronized to the account"""
        return self.card_sync.read_card(self._account_id(owner_id, credential))


class LedgerSystem:
    """Deposit ledger with all components initialized"""

    def __init__(self, config: Optional[LedgerConfig] = None,
                 storage: Optional[StorageInterface] = None):
        self.config = config or get_config()
        self.logger = setup_logging_from_config(self.config)

        self.storage = storage or create_storage(self.config.database_url)
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.locks = AccountLockRegistry(self.config.lock_timeout_seconds)
        self.retry = StorageRetryPolicy(
            self.config.storage_retry_attempts, self.config.storage_retry_backoff_seconds
        )

        self.account_store = AccountStore(
            self.storage, self.audit_trail, self.locks, self.retry,
            amount_precision=self.config.amount_precision,
            negative_initial_balance=self.config.negative_initial_balance
        )
        self.ledger = TransactionLedger(
            self.storage, self.account_store, self.audit_trail,
            amount_precision=self.config.amount_precision
        )
        self.coordinator = TransferCoordinator(self.account_store, self.ledger, self.audit_trail)
        self.card_store = StorageCardStore(self.storage)
        self.card_sync = CardLinkSynchronizer(self.account_store, self.card_store, self.audit_trail)
        self.customers = CustomerDirectory(self.storage)

        self.service = LedgerService(
            self.customers, self.customers, self.account_store,
            self.ledger, self.coordinator, self.card_sync
        )

    def close(self) -> None:
        self.storage.close()
