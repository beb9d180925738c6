"""
Transaction Ledger Module

Append-only record of balance-affecting events, keyed by account. Entries
are never updated or deleted. Each account's entries carry a gapless
sequence number, which is the ordering key for history and filters.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .config import get_config
from .storage import StorageInterface
from .audit import AuditTrail, AuditEventType
from .accounts import AccountStore, AmountLike, to_amount, to_positive_amount
from .logging_config import get_logger, log_action


class LedgerEntryKind(Enum):
    """Kinds of ledger entries"""
    DEPOSIT = "Deposit"
    WITHDRAWAL = "Withdrawal"
    TRANSFER_OUT = "TransferOut"
    TRANSFER_IN = "TransferIn"

    @property
    def is_credit(self) -> bool:
        return self in (LedgerEntryKind.DEPOSIT, LedgerEntryKind.TRANSFER_IN)

    @property
    def is_debit(self) -> bool:
        return not self.is_credit


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of a single balance-affecting event"""
    entry_id: str
    account_id: str
    kind: LedgerEntryKind
    amount: Decimal
    note: Optional[str]
    created_at: datetime
    sequence: int

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.kind.is_credit else -self.amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.entry_id,
            'account_id': self.account_id,
            'kind': self.kind.value,
            'amount': str(self.amount),
            'note': self.note,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.created_at.isoformat(),
            'sequence': self.sequence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        return cls(
            entry_id=data['id'],
            account_id=data['account_id'],
            kind=LedgerEntryKind(data['kind']),
            amount=Decimal(data['amount']),
            note=data.get('note'),
            created_at=datetime.fromisoformat(data['created_at']),
            sequence=data['sequence']
        )


@dataclass(frozen=True)
class TransactionSummary:
    """Credit/debit totals over a set of ledger entries"""
    total_credits: Decimal
    total_debits: Decimal
    net: Decimal
    entry_count: int = 0


@dataclass(frozen=True)
class ReconciliationResult:
    """Comparison of an account's balance with its ledger history"""
    account_id: str
    opening_balance: Decimal
    total_credits: Decimal
    total_debits: Decimal
    expected_balance: Decimal
    actual_balance: Decimal

    @property
    def balanced(self) -> bool:
        return self.expected_balance == self.actual_balance


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC"""
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class TransactionLedger:
    """
    Append-only transaction ledger
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        audit_trail: Optional[AuditTrail] = None,
        amount_precision: Optional[int] = None
    ):
        self.storage = storage
        self.account_store = account_store
        self.audit_trail = audit_trail
        self.precision = (
            amount_precision if amount_precision is not None else get_config().amount_precision
        )
        self.table_name = "ledger_entries"
        self.logger = get_logger("deposit_ledger.ledger")

    def append(
        self,
        account_id: str,
        kind: LedgerEntryKind,
        amount: AmountLike,
        note: Optional[str] = None
    ) -> LedgerEntry:
        """
        Append an entry for an existing account

        Account status is not checked: recording follows an operation that
        already validated status. When called inside a caller's atomic unit
        the entry commits or rolls back with it.

        Raises:
            InvalidAmountError: amount is not greater than zero
            AccountNotFoundError: no such account
        """
        value = to_positive_amount(amount, self.precision)
        kind = LedgerEntryKind(kind)

        with self.storage.atomic():
            account = self.account_store.get_by_id(account_id)
            existing = self.storage.find(self.table_name, {"account_id": account_id})

            entry = LedgerEntry(
                entry_id=str(uuid.uuid4()),
                account_id=account.id,
                kind=kind,
                amount=value,
                note=note,
                created_at=datetime.now(timezone.utc),
                sequence=len(existing) + 1
            )
            self.storage.save(self.table_name, entry.entry_id, entry.to_dict())

            if self.audit_trail:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LEDGER_ENTRY_RECORDED,
                    entity_type="ledger_entry",
                    entity_id=entry.entry_id,
                    metadata={
                        "account_id": account.id,
                        "kind": kind,
                        "amount": value,
                        "sequence": entry.sequence
                    },
                    user_id=account.owner_id
                )

        log_action(
            self.logger, "info", f"Ledger entry {kind.value} {value} on {account_id}",
            action="append_entry", resource=f"ledger_entry:{entry.entry_id}",
            extra={"account_id": account_id, "sequence": entry.sequence}
        )
        return entry

    def history(self, account_id: str) -> List[LedgerEntry]:
        """All entries for the account, newest first"""
        entries = [LedgerEntry.from_dict(data)
                   for data in self.storage.find(self.table_name, {"account_id": account_id})]
        entries.sort(key=lambda e: e.sequence, reverse=True)
        return entries

    def filter(
        self,
        account_id: str,
        kind: Optional[LedgerEntryKind] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[LedgerEntry]:
        """
        Entries matching every supplied predicate, newest first

        Args:
            account_id: Account to query
            kind: Only entries of this kind
            start: Only entries created at or after this moment
            end: Only entries created at or before this moment
        """
        start = _as_utc(start)
        end = _as_utc(end)
        if kind is not None:
            kind = LedgerEntryKind(kind)

        result = []
        for entry in self.history(account_id):
            if kind is not None and entry.kind != kind:
                continue
            if start is not None and entry.created_at < start:
                continue
            if end is not None and entry.created_at > end:
                continue
            result.append(entry)
        return result

    def summarize(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> TransactionSummary:
        """
        Totals over the account's entries in the optional time window.
        Deposit and TransferIn are credits; Withdrawal and TransferOut are debits.
        """
        entries = self.filter(account_id, start=start, end=end)
        credits = to_amount(0, self.precision)
        debits = to_amount(0, self.precision)
        for entry in entries:
            if entry.kind.is_credit:
                credits += entry.amount
            else:
                debits += entry.amount

        return TransactionSummary(
            total_credits=credits,
            total_debits=debits,
            net=credits - debits,
            entry_count=len(entries)
        )

    def reconcile(self, account_id: str) -> ReconciliationResult:
        """Check balance == opening balance + credits - debits"""
        with self.storage.atomic():
            account = self.account_store.get_by_id(account_id)
            summary = self.summarize(account_id)

        result = ReconciliationResult(
            account_id=account.id,
            opening_balance=account.opening_balance,
            total_credits=summary.total_credits,
            total_debits=summary.total_debits,
            expected_balance=account.opening_balance + summary.net,
            actual_balance=account.balance
        )
        if not result.balanced:
            log_action(
                self.logger, "error", f"Account {account_id} does not reconcile with its ledger",
                action="reconcile", resource=f"account:{account_id}",
                extra={"expected": str(result.expected_balance), "actual": str(result.actual_balance)}
            )
        return result
