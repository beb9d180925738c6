"""
Account Management Module

Owns the deposit-account record: identity, balance and lifecycle status.
Balances are mutated only through credit/debit, each a single atomic
read-modify-write unit under the account's lock.

Lifecycle:
    Active <-> Frozen
    Active | Frozen -> Closed (terminal)
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, Rounded, localcontext
from datetime import datetime, timezone
from dataclasses import dataclass
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar, Union
from enum import Enum
import uuid

from .config import get_config
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .locking import AccountLockRegistry
from .retry import StorageRetryPolicy
from .logging_config import get_logger, log_action
from .exceptions import (
    AccountNotActiveError,
    AccountNotFoundError,
    DuplicateAccountError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerValidationError,
)

T = TypeVar("T")
AmountLike = Union[Decimal, int, str, float]


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "Active"   # Normal operation
    FROZEN = "Frozen"   # Temporarily suspended, no balance mutation
    CLOSED = "Closed"   # Terminal

    @classmethod
    def parse(cls, value: Union['AccountStatus', str]) -> 'AccountStatus':
        """Accept an AccountStatus or its name/value, case-insensitive"""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for status in cls:
                if value.strip().lower() in (status.value.lower(), status.name.lower()):
                    return status
        raise InvalidTransitionError(None, str(value), f"Unknown account status: {value!r}")

    def can_transition_to(self, target: 'AccountStatus') -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS = {
    AccountStatus.ACTIVE: frozenset({AccountStatus.FROZEN, AccountStatus.CLOSED}),
    AccountStatus.FROZEN: frozenset({AccountStatus.ACTIVE, AccountStatus.CLOSED}),
    AccountStatus.CLOSED: frozenset(),
}

STATUS_AUDIT_EVENTS = {
    AccountStatus.FROZEN: AuditEventType.ACCOUNT_FROZEN,
    AccountStatus.ACTIVE: AuditEventType.ACCOUNT_UNFROZEN,
    AccountStatus.CLOSED: AuditEventType.ACCOUNT_CLOSED,
}


def to_amount(value: Optional[AmountLike], precision: int = 2) -> Decimal:
    """
    Convert a money value to a Decimal quantized to precision places.

    Raises:
        InvalidAmountError: value is missing, not a finite number or too
            large to represent at precision places
    """
    if value is None or isinstance(value, bool):
        raise InvalidAmountError(None, "Amount is required")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(None, f"Amount is not a number: {value!r}")
    if not amount.is_finite():
        raise InvalidAmountError(None, f"Amount is not a finite number: {value!r}")
    try:
        return amount.quantize(Decimal(1).scaleb(-precision), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmountError(None, f"Amount is out of range: {value!r}")


def to_positive_amount(value: Optional[AmountLike], precision: int = 2) -> Decimal:
    """Like to_amount, but the quantized result must be greater than zero"""
    amount = to_amount(value, precision)
    if amount <= 0:
        raise InvalidAmountError(amount)
    return amount


@dataclass
class Account(StorageRecord):
    """
    Deposit account. At most one per owner.
    """
    owner_id: str
    balance: Decimal
    opening_balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def account_id(self) -> str:
        return self.id

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def is_frozen(self) -> bool:
        return self.status == AccountStatus.FROZEN

    @property
    def is_closed(self) -> bool:
        return self.status == AccountStatus.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            owner_id=data['owner_id'],
            balance=Decimal(data['balance']),
            opening_balance=Decimal(data['opening_balance']),
            status=AccountStatus(data['status'])
        )


class AccountStore:
    """
    Manages account lifecycle and balance mutation.

    Public mutators (create, credit, debit, set_status, close) each run as
    their own locked, retried, atomic unit. The apply_* primitives perform
    the same checks without opening a unit of their own; callers composing
    several mutations (see TransferCoordinator) hold the locks through
    unit() and call them inside it.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        locks: Optional[AccountLockRegistry] = None,
        retry: Optional[StorageRetryPolicy] = None,
        amount_precision: Optional[int] = None,
        negative_initial_balance: Optional[str] = None
    ):
        config = get_config()
        self.storage = storage
        self.audit_trail = audit_trail
        self.locks = locks or AccountLockRegistry()
        self.retry = retry or StorageRetryPolicy()
        self.precision = amount_precision if amount_precision is not None else config.amount_precision
        self.negative_initial_balance = negative_initial_balance or config.negative_initial_balance
        self.table_name = "accounts"
        self.logger = get_logger("deposit_ledger.accounts")

    @contextmanager
    def unit(self, *keys: str):
        """Hold the locks for keys and run the block as one storage transaction"""
        with self.locks.hold(*keys):
            with self.storage.atomic():
                yield

    def run_unit(self, action: str, keys: Iterable[str], body: Callable[[], T]) -> T:
        """Run body inside unit(*keys), retrying transient storage failures"""
        keys = tuple(keys)

        def attempt() -> T:
            with self.unit(*keys):
                return body()

        try:
            return self.retry.run(attempt, action=action)
        except LedgerValidationError as e:
            log_action(
                self.logger, "warning", f"{action} rejected: {e}",
                action=action, resource=f"account:{','.join(keys)}",
                extra={"code": e.code}
            )
            raise

    # ------------------------------------------------------------------
    # Creation and lookup
    # ------------------------------------------------------------------

    def create(self, owner_id: str, initial_balance: Optional[AmountLike] = None) -> Account:
        """
        Create the owner's deposit account

        Args:
            owner_id: Internal owner id from the identity resolver
            initial_balance: Opening balance. Missing becomes zero; a negative
                value becomes zero under the "coerce" policy and fails under
                the "reject" policy.

        Returns:
            Created Account in Active status

        Raises:
            DuplicateAccountError: the owner already has an account
            InvalidAmountError: negative opening balance under "reject"
        """
        opening = self._opening_balance(owner_id, initial_balance)

        def body() -> Account:
            existing = self.find_by_owner(owner_id)
            if existing:
                raise DuplicateAccountError(owner_id, existing.id)

            now = datetime.now(timezone.utc)
            account = Account(
                id=self._unused_account_id(),
                created_at=now,
                updated_at=now,
                owner_id=owner_id,
                balance=opening,
                opening_balance=opening
            )
            self._save(account)
            self._audit(AuditEventType.ACCOUNT_CREATED, account, {
                "owner_id": owner_id,
                "opening_balance": opening
            })
            return account

        account = self.run_unit("create_account", [self.locks.owner_key(owner_id)], body)
        log_action(
            self.logger, "info", f"Deposit account created: {account.id}",
            user_id=owner_id, action="create_account", resource=f"account:{account.id}",
            extra={"opening_balance": str(opening)}
        )
        return account

    def get(self, owner_id: str) -> Account:
        """Get the owner's account, raising AccountNotFoundError if none"""
        account = self.find_by_owner(owner_id)
        if not account:
            raise AccountNotFoundError(owner_id)
        return account

    def find_by_owner(self, owner_id: str) -> Optional[Account]:
        records = self.storage.find(self.table_name, {"owner_id": owner_id})
        if records:
            return Account.from_dict(records[0])
        return None

    def get_by_id(self, account_id: str) -> Account:
        """Get account by ID, raising AccountNotFoundError if none"""
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise AccountNotFoundError(account_id)
        return Account.from_dict(data)

    # ------------------------------------------------------------------
    # Balance mutation
    # ------------------------------------------------------------------

    def credit(self, account_id: str, amount: AmountLike) -> Account:
        """Add amount to an Active account's balance"""
        value = to_positive_amount(amount, self.precision)
        account = self.run_unit("credit", [account_id], lambda: self.apply_credit(account_id, value))
        self._log_balance_change("credit", account, value)
        return account

    def debit(self, account_id: str, amount: AmountLike) -> Account:
        """Subtract amount from an Active account's balance"""
        value = to_positive_amount(amount, self.precision)
        account = self.run_unit("debit", [account_id], lambda: self.apply_debit(account_id, value))
        self._log_balance_change("debit", account, value)
        return account

    def apply_credit(self, account_id: str, amount: AmountLike) -> Account:
        """Credit primitive; caller holds the account lock inside storage.atomic()"""
        value = to_positive_amount(amount, self.precision)
        account = self.get_by_id(account_id)
        self._require_active(account)

        account.balance = self._add_exact(account, value)
        self._save(account)
        self._audit(AuditEventType.ACCOUNT_CREDITED, account, {
            "amount": value,
            "balance": account.balance
        })
        return account

    def apply_debit(self, account_id: str, amount: AmountLike) -> Account:
        """Debit primitive; caller holds the account lock inside storage.atomic()"""
        value = to_positive_amount(amount, self.precision)
        account = self.get_by_id(account_id)
        self._require_active(account)
        if value > account.balance:
            raise InsufficientFundsError(account.id, account.balance, value)

        account.balance = account.balance - value
        self._save(account)
        self._audit(AuditEventType.ACCOUNT_DEBITED, account, {
            "amount": value,
            "balance": account.balance
        })
        return account

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def set_status(self, account_id: str, target: Union[AccountStatus, str],
                   reason: Optional[str] = None) -> Account:
        """
        Move the account to target status

        Raises:
            InvalidTransitionError: target is unknown or not reachable
                from the current status; state is left unchanged
        """
        target_status = AccountStatus.parse(target)

        def body():
            account = self.get_by_id(account_id)
            old_status = account.status
            if not old_status.can_transition_to(target_status):
                if old_status == target_status:
                    message = f"Account {account_id} is already {old_status.value}"
                else:
                    message = (f"Cannot change account {account_id} from "
                               f"{old_status.value} to {target_status.value}")
                raise InvalidTransitionError(old_status.value, target_status.value, message)

            account.status = target_status
            self._save(account)
            self._audit(STATUS_AUDIT_EVENTS[target_status], account, {
                "old_status": old_status,
                "new_status": target_status,
                "reason": reason
            })
            return account, old_status

        account, old_status = self.run_unit("set_status", [account_id], body)
        log_action(
            self.logger, "info",
            f"Account {account.id} status {old_status.value} -> {account.status.value}",
            user_id=account.owner_id, action="set_status", resource=f"account:{account.id}",
            extra={"old_status": old_status.value, "new_status": account.status.value}
        )
        return account

    def freeze(self, account_id: str, reason: Optional[str] = None) -> Account:
        return self.set_status(account_id, AccountStatus.FROZEN, reason)

    def unfreeze(self, account_id: str, reason: Optional[str] = None) -> Account:
        return self.set_status(account_id, AccountStatus.ACTIVE, reason)

    def close(self, account_id: str, reason: Optional[str] = None) -> Account:
        """Close the account; permitted from Active and Frozen"""
        return self.set_status(account_id, AccountStatus.CLOSED, reason)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _opening_balance(self, owner_id: str, initial_balance: Optional[AmountLike]) -> Decimal:
        if initial_balance is None:
            return to_amount(0, self.precision)
        opening = to_amount(initial_balance, self.precision)
        if opening < 0:
            if self.negative_initial_balance == "reject":
                raise InvalidAmountError(opening, f"Initial balance cannot be negative, got {opening}")
            log_action(
                self.logger, "warning",
                f"Negative initial balance {opening} coerced to zero",
                user_id=owner_id, action="create_account"
            )
            return to_amount(0, self.precision)
        return opening

    def _require_active(self, account: Account) -> None:
        if not account.is_active:
            raise AccountNotActiveError(account.id, account.status.value)

    def _add_exact(self, account: Account, value: Decimal) -> Decimal:
        with localcontext() as ctx:
            ctx.traps[Rounded] = True
            try:
                return account.balance + value
            except Rounded:
                raise InvalidAmountError(
                    value, f"Credit of {value} would overflow the balance of account {account.id}"
                )

    def _generate_account_id(self) -> str:
        return "DA" + uuid.uuid4().hex[:8].upper()

    def _unused_account_id(self) -> str:
        while True:
            candidate = self._generate_account_id()
            if not self.storage.exists(self.table_name, candidate):
                return candidate

    def _save(self, account: Account) -> None:
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account.id, account.to_dict())

    def _audit(self, event_type: AuditEventType, account: Account, metadata: Dict[str, Any]) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account.id,
                metadata=metadata,
                user_id=account.owner_id
            )

    def _log_balance_change(self, action: str, account: Account, amount: Decimal) -> None:
        log_action(
            self.logger, "info", f"{action.capitalize()} {amount} on account {account.id}",
            user_id=account.owner_id, action=action, resource=f"account:{account.id}",
            extra={"amount": str(amount), "balance": str(account.balance)}
        )
