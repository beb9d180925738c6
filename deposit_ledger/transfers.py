"""
Money Movement Module

Deposits, withdrawals and transfers expressed as compositions of the
primitive credit/debit and ledger append operations. Each runs as one
all-or-nothing unit; a transfer holds both account locks, taken in
sorted order, for the whole unit.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Optional
import uuid

from .accounts import Account, AccountStore, AmountLike, to_positive_amount
from .audit import AuditTrail, AuditEventType
from .exceptions import InsufficientFundsError, InvalidTransferError, LedgerValidationError
from .ledger import LedgerEntry, LedgerEntryKind, TransactionLedger
from .logging_config import get_logger, log_action


@dataclass(frozen=True)
class MovementReceipt:
    """Result of a single-account deposit or withdrawal"""
    account: Account
    entry: LedgerEntry


@dataclass(frozen=True)
class TransferReceipt:
    """Result of a completed transfer"""
    transfer_id: str
    source: Account
    destination: Account
    amount: Decimal
    debit_entry: LedgerEntry
    credit_entry: LedgerEntry


class TransferCoordinator:
    """
    Coordinates balance mutations with their ledger entries
    """

    def __init__(
        self,
        account_store: AccountStore,
        ledger: TransactionLedger,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.accounts = account_store
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.logger = get_logger("deposit_ledger.transfers")

    def deposit(self, account_id: str, amount: AmountLike, note: Optional[str] = None) -> MovementReceipt:
        """Credit the account and record a Deposit entry"""
        value = to_positive_amount(amount, self.accounts.precision)

        def body() -> MovementReceipt:
            account = self.accounts.apply_credit(account_id, value)
            entry = self.ledger.append(account_id, LedgerEntryKind.DEPOSIT, value, note)
            return MovementReceipt(account=account, entry=entry)

        receipt = self.accounts.run_unit("deposit", [account_id], body)
        self._log_movement("deposit", receipt)
        return receipt

    def withdraw(self, account_id: str, amount: AmountLike, note: Optional[str] = None) -> MovementReceipt:
        """Debit the account and record a Withdrawal entry"""
        value = to_positive_amount(amount, self.accounts.precision)

        def body() -> MovementReceipt:
            account = self.accounts.apply_debit(account_id, value)
            entry = self.ledger.append(account_id, LedgerEntryKind.WITHDRAWAL, value, note)
            return MovementReceipt(account=account, entry=entry)

        receipt = self.accounts.run_unit("withdraw", [account_id], body)
        self._log_movement("withdraw", receipt)
        return receipt

    def transfer(
        self,
        from_owner_id: str,
        to_owner_id: str,
        amount: AmountLike,
        note: Optional[str] = None
    ) -> TransferReceipt:
        """
        Move amount from one owner's account to another's

        Validation order: amount, both accounts exist, distinct accounts,
        sufficient funds; status checks happen in the debit/credit primitives.

        Raises:
            InvalidAmountError: amount is not greater than zero
            AccountNotFoundError: either owner has no account
            InvalidTransferError: both owners resolve to the same account
            InsufficientFundsError: source balance is below amount
            AccountNotActiveError: either account is not Active
            StorageFailureError: storage kept failing; nothing was applied
        """
        try:
            value = to_positive_amount(amount, self.accounts.precision)
            source = self.accounts.get(from_owner_id)
            destination = self.accounts.get(to_owner_id)
            if source.id == destination.id:
                raise InvalidTransferError(f"Cannot transfer from account {source.id} to itself")
        except LedgerValidationError as e:
            log_action(
                self.logger, "warning", f"transfer rejected: {e}",
                user_id=from_owner_id, action="transfer", extra={"code": e.code}
            )
            raise

        transfer_id = str(uuid.uuid4())

        def body() -> TransferReceipt:
            current = self.accounts.get_by_id(source.id)
            if current.balance < value:
                raise InsufficientFundsError(current.id, current.balance, value)

            debited = self.accounts.apply_debit(source.id, value)
            credited = self.accounts.apply_credit(destination.id, value)
            debit_entry = self.ledger.append(
                source.id, LedgerEntryKind.TRANSFER_OUT, value,
                note or f"Transfer to {destination.id}"
            )
            credit_entry = self.ledger.append(
                destination.id, LedgerEntryKind.TRANSFER_IN, value,
                note or f"Transfer from {source.id}"
            )

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSFER_COMPLETED,
                    entity_type="transfer",
                    entity_id=transfer_id,
                    metadata={
                        "from_account": source.id,
                        "to_account": destination.id,
                        "amount": value,
                        "debit_entry": debit_entry.entry_id,
                        "credit_entry": credit_entry.entry_id
                    },
                    user_id=from_owner_id
                )

            return TransferReceipt(
                transfer_id=transfer_id,
                source=debited,
                destination=credited,
                amount=value,
                debit_entry=debit_entry,
                credit_entry=credit_entry
            )

        receipt = self.accounts.run_unit("transfer", [source.id, destination.id], body)
        log_action(
            self.logger, "info",
            f"Transfer of {value} from {source.id} to {destination.id} completed",
            user_id=from_owner_id, action="transfer", resource=f"transfer:{transfer_id}",
            extra={
                "from_account": source.id,
                "to_account": destination.id,
                "amount": str(value)
            }
        )
        return receipt

    def _log_movement(self, action: str, receipt: MovementReceipt) -> None:
        log_action(
            self.logger, "info",
            f"{receipt.entry.kind.value} of {receipt.entry.amount} on {receipt.account.id}",
            user_id=receipt.account.owner_id, action=action,
            resource=f"account:{receipt.account.id}",
            extra={"amount": str(receipt.entry.amount), "balance": str(receipt.account.balance)}
        )
