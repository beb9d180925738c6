"""
Test suite for money movement

Tests deposits, withdrawals and transfers, including all-or-nothing
behaviour when storage fails part way through a transfer.
"""

import pytest
from decimal import Decimal

from deposit_ledger.storage import InMemoryStorage
from deposit_ledger.audit import AuditTrail, AuditEventType
from deposit_ledger.accounts import AccountStore
from deposit_ledger.ledger import LedgerEntryKind, TransactionLedger
from deposit_ledger.retry import StorageRetryPolicy
from deposit_ledger.transfers import TransferCoordinator
from deposit_ledger.exceptions import (
    AccountNotActiveError,
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransferError,
    LedgerError,
    StorageFailureError,
)


class FlakyStorage(InMemoryStorage):
    """InMemoryStorage that fails saves matching a predicate a set number of times"""

    def __init__(self):
        super().__init__()
        self.fail_table = None
        self.fail_when = None
        self.failures_left = 0
        self.failed_saves = 0

    def fail_saves(self, table, failures, when=None):
        self.fail_table = table
        self.failures_left = failures
        self.fail_when = when

    def save(self, table, record_id, data):
        if (
            self.failures_left > 0
            and table == self.fail_table
            and (self.fail_when is None or self.fail_when(data))
        ):
            self.failures_left -= 1
            self.failed_saves += 1
            raise StorageFailureError(f"Injected failure saving {table}/{record_id}")
        super().save(table, record_id, data)


class TestTransferCoordinator:
    """Test TransferCoordinator functionality"""

    def setup_method(self):
        """Set up test environment"""
        self.storage = FlakyStorage()
        self.sleeps = []
        self.audit_trail = AuditTrail(self.storage)
        self.accounts = AccountStore(
            self.storage, self.audit_trail,
            retry=StorageRetryPolicy(attempts=3, backoff_seconds=0.01, sleep=self.sleeps.append)
        )
        self.ledger = TransactionLedger(self.storage, self.accounts, self.audit_trail)
        self.coordinator = TransferCoordinator(self.accounts, self.ledger, self.audit_trail)

        self.a = self.accounts.create("owner-a", "1000.00")
        self.b = self.accounts.create("owner-b", "500.00")

    def balance(self, account_id):
        return self.accounts.get_by_id(account_id).balance

    def test_deposit_and_withdraw_record_entries(self):
        """Credit 100.00 then debit 30.00 records Deposit and Withdrawal entries"""
        account = self.accounts.create("owner-c")

        deposit = self.coordinator.deposit(account.id, "100.00", "salary")
        withdrawal = self.coordinator.withdraw(account.id, "30.00")

        assert deposit.account.balance == Decimal("100.00")
        assert deposit.entry.note == "salary"
        assert withdrawal.account.balance == Decimal("70.00")
        assert [(e.kind, e.amount) for e in self.ledger.history(account.id)] == [
            (LedgerEntryKind.WITHDRAWAL, Decimal("30.00")),
            (LedgerEntryKind.DEPOSIT, Decimal("100.00")),
        ]

    def test_withdraw_insufficient_records_nothing(self):
        with pytest.raises(InsufficientFundsError):
            self.coordinator.withdraw(self.a.id, "1000.01")

        assert self.balance(self.a.id) == Decimal("1000.00")
        assert self.ledger.history(self.a.id) == []

    def test_deposit_on_frozen_account_records_nothing(self):
        self.accounts.freeze(self.a.id)

        with pytest.raises(AccountNotActiveError):
            self.coordinator.deposit(self.a.id, "1")
        assert self.ledger.history(self.a.id) == []

    def test_transfer(self):
        """Transfer 300.00 from 1000.00 to 500.00 gives 700.00 and 800.00"""
        receipt = self.coordinator.transfer("owner-a", "owner-b", "300.00")

        assert receipt.source.balance == Decimal("700.00")
        assert receipt.destination.balance == Decimal("800.00")
        assert receipt.amount == Decimal("300.00")
        assert self.balance(self.a.id) == Decimal("700.00")
        assert self.balance(self.b.id) == Decimal("800.00")

        a_history = self.ledger.history(self.a.id)
        b_history = self.ledger.history(self.b.id)
        assert len(a_history) == 1 and len(b_history) == 1
        assert a_history[0].kind == LedgerEntryKind.TRANSFER_OUT
        assert a_history[0].amount == Decimal("300.00")
        assert a_history[0].note == f"Transfer to {self.b.id}"
        assert b_history[0].kind == LedgerEntryKind.TRANSFER_IN
        assert b_history[0].amount == Decimal("300.00")
        assert b_history[0].note == f"Transfer from {self.a.id}"

    def test_transfer_note(self):
        receipt = self.coordinator.transfer("owner-a", "owner-b", "1", "rent")

        assert receipt.debit_entry.note == "rent"
        assert receipt.credit_entry.note == "rent"

    def test_transfer_audited(self):
        receipt = self.coordinator.transfer("owner-a", "owner-b", "10")

        events = self.audit_trail.get_events_for_entity("transfer", receipt.transfer_id)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.TRANSFER_COMPLETED
        assert events[0].metadata["amount"] == "10.00"
        assert self.audit_trail.verify_integrity()["valid"]

    def test_transfer_insufficient_funds(self):
        """Transfer above the source balance changes nothing"""
        self.coordinator.transfer("owner-a", "owner-b", "300.00")

        with pytest.raises(InsufficientFundsError):
            self.coordinator.transfer("owner-a", "owner-b", "10000.00")

        assert self.balance(self.a.id) == Decimal("700.00")
        assert self.balance(self.b.id) == Decimal("800.00")
        assert len(self.ledger.history(self.a.id)) == 1

    def test_transfer_invalid_amount(self):
        for amount in (0, "-5", None):
            with pytest.raises(InvalidAmountError):
                self.coordinator.transfer("owner-a", "owner-b", amount)

    def test_out_of_range_amount_is_typed(self):
        before = self.storage.get_all_data()

        with pytest.raises(LedgerError) as exc_info:
            self.coordinator.deposit(self.a.id, "1" + "0" * 27)

        assert exc_info.value.code == "INVALID_AMOUNT"
        assert self.storage.get_all_data() == before

    def test_transfer_overflowing_destination_rolls_back(self):
        """The source debit is undone when the destination credit cannot be held"""
        self.accounts.create("owner-c", "9" * 26 + ".99")
        before = self.storage.get_all_data()

        with pytest.raises(InvalidAmountError):
            self.coordinator.transfer("owner-a", "owner-c", "1.00")

        assert self.storage.get_all_data() == before

    def test_transfer_unknown_owner(self):
        with pytest.raises(AccountNotFoundError):
            self.coordinator.transfer("owner-a", "nobody", "1")
        with pytest.raises(AccountNotFoundError):
            self.coordinator.transfer("nobody", "owner-b", "1")

    def test_transfer_to_same_account(self):
        with pytest.raises(InvalidTransferError):
            self.coordinator.transfer("owner-a", "owner-a", "1")
        assert self.balance(self.a.id) == Decimal("1000.00")

    def test_validation_order(self):
        """Amount is checked before accounts, accounts before funds"""
        with pytest.raises(InvalidAmountError):
            self.coordinator.transfer("nobody", "nobody-else", "-1")
        with pytest.raises(AccountNotFoundError):
            self.coordinator.transfer("nobody", "owner-b", "99999")

        self.accounts.freeze(self.a.id)
        with pytest.raises(InsufficientFundsError):
            self.coordinator.transfer("owner-a", "owner-b", "99999")
        with pytest.raises(AccountNotActiveError):
            self.coordinator.transfer("owner-a", "owner-b", "1")

    def test_transfer_to_frozen_destination_rolls_back(self):
        """Debit already applied to the source is undone when the credit fails"""
        self.accounts.freeze(self.b.id)
        before = self.storage.get_all_data()

        with pytest.raises(AccountNotActiveError):
            self.coordinator.transfer("owner-a", "owner-b", "100")

        assert self.storage.get_all_data() == before

    def test_transfer_to_closed_destination(self):
        self.accounts.close(self.b.id)

        with pytest.raises(AccountNotActiveError):
            self.coordinator.transfer("owner-a", "owner-b", "100")
        assert self.balance(self.a.id) == Decimal("1000.00")

    def test_storage_failure_rolls_back_everything(self):
        """A persistent failure on the last ledger write leaves no trace"""
        self.coordinator.deposit(self.a.id, "1")
        before = self.storage.get_all_data()
        self.storage.fail_saves(
            "ledger_entries", failures=100, when=lambda data: data["kind"] == "TransferIn"
        )

        with pytest.raises(StorageFailureError):
            self.coordinator.transfer("owner-a", "owner-b", "300")

        assert self.storage.get_all_data() == before
        assert self.storage.failed_saves == 3
        assert len(self.sleeps) == 2
        assert self.balance(self.a.id) == Decimal("1001.00")
        assert self.balance(self.b.id) == Decimal("500.00")

    def test_transient_failure_retried_once_applied_once(self):
        """After a retried failure the transfer is applied exactly once"""
        self.storage.fail_saves("ledger_entries", failures=1)

        self.coordinator.transfer("owner-a", "owner-b", "300")

        assert self.storage.failed_saves == 1
        assert self.sleeps == [0.01]
        assert self.balance(self.a.id) == Decimal("700.00")
        assert self.balance(self.b.id) == Decimal("800.00")
        assert len(self.ledger.history(self.a.id)) == 1
        assert len(self.ledger.history(self.b.id)) == 1
        assert self.ledger.reconcile(self.a.id).balanced
        assert self.ledger.reconcile(self.b.id).balanced

    def test_failure_in_audit_write_rolls_back(self):
        """Audit events share the transfer's unit"""
        before = self.storage.get_all_data()
        self.storage.fail_saves(
            "audit_events", failures=100,
            when=lambda data: data["event_type"] == "transfer_completed"
        )

        with pytest.raises(StorageFailureError):
            self.coordinator.transfer("owner-a", "owner-b", "50")

        assert self.storage.get_all_data() == before

    def test_validation_errors_not_retried(self):
        with pytest.raises(InsufficientFundsError):
            self.coordinator.transfer("owner-a", "owner-b", "5000")
        assert self.sleeps == []

    def test_reconciliation_after_mixed_activity(self):
        self.coordinator.deposit(self.a.id, "12.34")
        self.coordinator.transfer("owner-a", "owner-b", "100")
        self.coordinator.withdraw(self.b.id, "0.99")
        self.coordinator.transfer("owner-b", "owner-a", "50.50")

        for account in (self.a, self.b):
            assert self.ledger.reconcile(account.id).balanced
        assert self.balance(self.a.id) + self.balance(self.b.id) == Decimal("1511.35")
