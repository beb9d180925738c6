"""
Ledger Error Taxonomy

Every failed precondition raises a distinct exception class so callers can
react precisely. Validation errors also derive from ValueError; only
StorageFailureError is eligible for retry.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all deposit ledger errors"""

    code: str = "LEDGER_ERROR"
    retryable: bool = False


class LedgerValidationError(LedgerError, ValueError):
    """A logical precondition failed; retrying will not help"""


class InvalidAmountError(LedgerValidationError):
    """Amount is missing, zero or negative"""

    code = "INVALID_AMOUNT"

    def __init__(self, amount: Optional[Decimal], message: Optional[str] = None):
        self.amount = amount
        super().__init__(message or f"Amount must be greater than zero, got {amount}")


class AccountNotFoundError(LedgerValidationError):
    """No account exists for the given owner or account id"""

    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, key: str, message: Optional[str] = None):
        self.key = key
        super().__init__(message or f"No deposit account found for {key}")


class OwnerNotFoundError(AccountNotFoundError):
    """The identity resolver does not know the owner"""

    def __init__(self, owner_id: str):
        super().__init__(owner_id, f"Owner {owner_id} not found")


class DuplicateAccountError(LedgerValidationError):
    """The owner already holds a deposit account"""

    code = "DUPLICATE_ACCOUNT"

    def __init__(self, owner_id: str, account_id: str):
        self.owner_id = owner_id
        self.account_id = account_id
        super().__init__(f"Owner {owner_id} already has deposit account {account_id}")


class AccountNotActiveError(LedgerValidationError):
    """Balance mutation attempted on a Frozen or Closed account"""

    code = "ACCOUNT_NOT_ACTIVE"

    def __init__(self, account_id: str, status: str):
        self.account_id = account_id
        self.status = status
        super().__init__(f"Account {account_id} status is {status} (must be Active)")


class InsufficientFundsError(LedgerValidationError):
    """Debit would take the balance below zero"""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, account_id: str, balance: Decimal, amount: Decimal):
        self.account_id = account_id
        self.balance = balance
        self.amount = amount
        super().__init__(
            f"Insufficient funds in account {account_id}: balance {balance}, requested {amount}"
        )


class InvalidTransitionError(LedgerValidationError):
    """Status change not allowed by the account state machine"""

    code = "INVALID_TRANSITION"

    def __init__(self, current: Optional[str], target: Optional[str], message: Optional[str] = None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot change account status from {current} to {target}")


class InvalidTransferError(LedgerValidationError):
    """Source and destination resolve to the same account"""

    code = "INVALID_TRANSFER"


class UnauthorizedError(LedgerValidationError):
    """Credential verification failed or credentials were missing"""

    code = "UNAUTHORIZED"

    def __init__(self, owner_id: Optional[str], message: Optional[str] = None):
        self.owner_id = owner_id
        super().__init__(message or f"Authentication failed for {owner_id}")


class StorageFailureError(LedgerError):
    """Transient storage problem: I/O error, commit conflict or lock timeout"""

    code = "STORAGE_FAILURE"
    retryable = True


class WeakPasswordError(LedgerValidationError):
    """Password does not meet the password policy"""

    code = "WEAK_PASSWORD"
