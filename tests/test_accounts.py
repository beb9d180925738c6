"""
Test suite for accounts module

Tests account creation, balance mutation, the status state machine and
the amount conversion helpers.
"""

import pytest
from decimal import Decimal

from deposit_ledger.storage import InMemoryStorage, SQLiteStorage
from deposit_ledger.audit import AuditTrail, AuditEventType
from deposit_ledger.accounts import (
    Account, AccountStatus, AccountStore, ALLOWED_TRANSITIONS, to_amount, to_positive_amount
)
from deposit_ledger.exceptions import (
    AccountNotActiveError,
    AccountNotFoundError,
    DuplicateAccountError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransitionError,
    LedgerValidationError,
)


class TestAmounts:
    """Test money conversion helpers"""

    def test_quantizes_to_two_places(self):
        """Values are rounded half-up to cents"""
        assert to_amount("10") == Decimal("10.00")
        assert to_amount("0.005") == Decimal("0.01")
        assert to_amount(1.1) == Decimal("1.10")
        assert to_amount(Decimal("2.345")) == Decimal("2.35")

    def test_custom_precision(self):
        assert to_amount("1.23456", precision=4) == Decimal("1.2346")

    def test_rejects_missing_and_non_numeric(self):
        """None, booleans, garbage and non-finite values are invalid"""
        for value in (None, True, "abc", "NaN", "Infinity", float("inf")):
            with pytest.raises(InvalidAmountError):
                to_amount(value)

    def test_positive_amount(self):
        """Zero, negatives and amounts that round to zero are rejected"""
        assert to_positive_amount("0.01") == Decimal("0.01")
        for value in (0, "-5", "0.001"):
            with pytest.raises(InvalidAmountError):
                to_positive_amount(value)

    def test_invalid_amount_is_value_error(self):
        with pytest.raises(ValueError):
            to_positive_amount(-1)

    def test_out_of_range_amount(self):
        """Amounts too large for the decimal context are invalid, not a decimal error"""
        with pytest.raises(InvalidAmountError):
            to_amount("1" + "0" * 27)
        assert to_amount("9" * 26) == Decimal("9" * 26 + ".00")


class TestAccountStatus:
    """Test the account state machine"""

    def test_transition_table(self):
        """Every pair of states is checked against the allowed set"""
        expected = {
            (AccountStatus.ACTIVE, AccountStatus.FROZEN): True,
            (AccountStatus.ACTIVE, AccountStatus.CLOSED): True,
            (AccountStatus.ACTIVE, AccountStatus.ACTIVE): False,
            (AccountStatus.FROZEN, AccountStatus.ACTIVE): True,
            (AccountStatus.FROZEN, AccountStatus.CLOSED): True,
            (AccountStatus.FROZEN, AccountStatus.FROZEN): False,
            (AccountStatus.CLOSED, AccountStatus.ACTIVE): False,
            (AccountStatus.CLOSED, AccountStatus.FROZEN): False,
            (AccountStatus.CLOSED, AccountStatus.CLOSED): False,
        }
        for (current, target), allowed in expected.items():
            assert current.can_transition_to(target) == allowed, (current, target)

        assert ALLOWED_TRANSITIONS[AccountStatus.CLOSED] == frozenset()

    def test_parse(self):
        """Names and values parse case-insensitively"""
        assert AccountStatus.parse("frozen") == AccountStatus.FROZEN
        assert AccountStatus.parse("ACTIVE") == AccountStatus.ACTIVE
        assert AccountStatus.parse(" Closed ") == AccountStatus.CLOSED
        assert AccountStatus.parse(AccountStatus.FROZEN) == AccountStatus.FROZEN

    def test_parse_unknown(self):
        for value in ("Suspended", "", None, 3):
            with pytest.raises(InvalidTransitionError):
                AccountStatus.parse(value)


class TestAccountStore:
    """Test AccountStore functionality"""

    def setup_method(self):
        """Set up test environment"""
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.store = AccountStore(self.storage, self.audit_trail, amount_precision=2)

    def test_create_account_defaults(self):
        """Create with no initial balance gives 0.00 and Active"""
        account = self.store.create("owner-1")

        assert account.balance == Decimal("0.00")
        assert account.opening_balance == Decimal("0.00")
        assert account.status == AccountStatus.ACTIVE
        assert account.is_active
        assert account.owner_id == "owner-1"
        assert account.account_id == account.id
        assert account.created_at.tzinfo is not None

    def test_account_id_format(self):
        """Account ids are DA followed by eight upper-case hex characters"""
        account = self.store.create("owner-1")

        assert account.id.startswith("DA")
        assert len(account.id) == 10
        int(account.id[2:], 16)
        assert account.id[2:] == account.id[2:].upper()

    def test_account_id_collision_picks_unused_id(self):
        """A generated id already in use is skipped, never overwritten"""
        ids = iter(["DA00000000", "DA00000000", "DA00000001"])
        self.store._generate_account_id = lambda: next(ids)

        alice = self.store.create("alice", "1000.00")
        bob = self.store.create("bob", "5.00")

        assert alice.id == "DA00000000"
        assert bob.id == "DA00000001"
        assert self.store.get("alice").balance == Decimal("1000.00")
        assert self.store.get("bob").balance == Decimal("5.00")

    def test_account_id_collision_on_sqlite(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "ledger.db")
        try:
            store = AccountStore(storage)
            ids = iter(["DA00000000", "DA00000000", "DA00000001"])
            store._generate_account_id = lambda: next(ids)

            store.create("alice", "1000.00")
            store.create("bob", "5.00")

            assert store.get("alice").id == "DA00000000"
            assert store.get("alice").balance == Decimal("1000.00")
            assert store.get("bob").id == "DA00000001"
        finally:
            storage.close()

    def test_create_with_initial_balance(self):
        account = self.store.create("owner-1", "1000")

        assert account.balance == Decimal("1000.00")
        assert account.opening_balance == Decimal("1000.00")

    def test_negative_initial_balance_coerced(self):
        """Under the default policy a negative opening balance becomes zero"""
        store = AccountStore(self.storage, negative_initial_balance="coerce")
        account = store.create("owner-1", "-50")

        assert account.balance == Decimal("0.00")

    def test_negative_initial_balance_rejected(self):
        """Under the reject policy a negative opening balance fails"""
        store = AccountStore(self.storage, negative_initial_balance="reject")

        with pytest.raises(InvalidAmountError):
            store.create("owner-1", "-50")
        assert self.store.find_by_owner("owner-1") is None

    def test_duplicate_account(self):
        """An owner holds at most one account"""
        first = self.store.create("owner-1")

        with pytest.raises(DuplicateAccountError) as exc_info:
            self.store.create("owner-1", "10")

        assert exc_info.value.account_id == first.id
        assert self.storage.count("accounts") == 1

    def test_get_and_not_found(self):
        created = self.store.create("owner-1")

        assert self.store.get("owner-1").id == created.id
        assert self.store.get_by_id(created.id).owner_id == "owner-1"
        with pytest.raises(AccountNotFoundError):
            self.store.get("nobody")
        with pytest.raises(AccountNotFoundError):
            self.store.get_by_id("DA00000000")

    def test_credit_and_debit(self):
        """Credit 100.00 then debit 30.00 leaves 70.00"""
        account = self.store.create("owner-1")

        self.store.credit(account.id, "100.00")
        updated = self.store.debit(account.id, "30.00")

        assert updated.balance == Decimal("70.00")
        assert self.store.get("owner-1").balance == Decimal("70.00")

    def test_invalid_amounts(self):
        """Zero and negative amounts fail before any change"""
        account = self.store.create("owner-1", "10")

        for amount in (0, "-1", "0.00"):
            with pytest.raises(InvalidAmountError):
                self.store.credit(account.id, amount)
            with pytest.raises(InvalidAmountError):
                self.store.debit(account.id, amount)

        assert self.store.get("owner-1").balance == Decimal("10.00")

    def test_credit_overflowing_balance_rejected(self):
        """A credit whose sum cannot be held exactly fails and leaves the balance alone"""
        big = "9" * 26 + ".99"
        account = self.store.create("owner-1", big)

        with pytest.raises(InvalidAmountError):
            self.store.credit(account.id, "0.01")

        assert self.store.get("owner-1").balance == Decimal(big)

    def test_insufficient_funds(self):
        """A debit above the balance fails and leaves the balance alone"""
        account = self.store.create("owner-1", "50")

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.store.debit(account.id, "50.01")

        assert exc_info.value.balance == Decimal("50.00")
        assert exc_info.value.amount == Decimal("50.01")
        assert self.store.get("owner-1").balance == Decimal("50.00")

    def test_debit_entire_balance(self):
        account = self.store.create("owner-1", "50")
        assert self.store.debit(account.id, "50").balance == Decimal("0.00")

    def test_frozen_account_rejects_mutation(self):
        """Freeze then credit 50.00 fails with AccountNotActive"""
        account = self.store.create("owner-1", "20")
        self.store.freeze(account.id)

        with pytest.raises(AccountNotActiveError) as exc_info:
            self.store.credit(account.id, "50.00")
        assert exc_info.value.status == "Frozen"

        with pytest.raises(AccountNotActiveError):
            self.store.debit(account.id, "5.00")

        assert self.store.get("owner-1").balance == Decimal("20.00")

    def test_unfreeze_restores_mutation(self):
        account = self.store.create("owner-1")
        self.store.freeze(account.id)
        self.store.unfreeze(account.id)

        assert self.store.credit(account.id, "5").balance == Decimal("5.00")

    def test_freeze_twice_rejected(self):
        account = self.store.create("owner-1")
        self.store.freeze(account.id)

        with pytest.raises(InvalidTransitionError) as exc_info:
            self.store.freeze(account.id)
        assert "already Frozen" in str(exc_info.value)

    def test_unfreeze_active_rejected(self):
        account = self.store.create("owner-1")

        with pytest.raises(InvalidTransitionError):
            self.store.unfreeze(account.id)
        assert self.store.get("owner-1").status == AccountStatus.ACTIVE

    def test_close_from_active_and_frozen(self):
        """Close is permitted from Active and from Frozen"""
        first = self.store.create("owner-1", "10")
        second = self.store.create("owner-2")
        self.store.freeze(second.id)

        assert self.store.close(first.id).is_closed
        assert self.store.close(second.id).is_closed

    def test_close_with_balance_allowed(self):
        """Closing does not require a zero balance"""
        account = self.store.create("owner-1", "25")
        closed = self.store.close(account.id)

        assert closed.balance == Decimal("25.00")

    def test_closed_is_terminal(self):
        """No operation moves an account out of Closed"""
        account = self.store.create("owner-1", "10")
        self.store.close(account.id)

        for target in AccountStatus:
            with pytest.raises(InvalidTransitionError):
                self.store.set_status(account.id, target)
        with pytest.raises(AccountNotActiveError):
            self.store.credit(account.id, "1")
        with pytest.raises(AccountNotActiveError):
            self.store.debit(account.id, "1")

        assert self.store.get("owner-1").status == AccountStatus.CLOSED

    def test_set_status_by_name(self):
        account = self.store.create("owner-1")

        assert self.store.set_status(account.id, "frozen").status == AccountStatus.FROZEN

    def test_set_status_unknown_value(self):
        account = self.store.create("owner-1")

        with pytest.raises(InvalidTransitionError):
            self.store.set_status(account.id, "Dormant")
        assert self.store.get("owner-1").status == AccountStatus.ACTIVE

    def test_set_status_missing_account(self):
        with pytest.raises(AccountNotFoundError):
            self.store.freeze("DA00000000")

    def test_errors_are_validation_errors(self):
        """Precondition failures share a common base and carry a code"""
        account = self.store.create("owner-1")

        with pytest.raises(LedgerValidationError) as exc_info:
            self.store.debit(account.id, "1")
        assert exc_info.value.code == "INSUFFICIENT_FUNDS"
        assert not exc_info.value.retryable

    def test_mutations_are_audited(self):
        """Creation, balance changes and status changes leave audit events"""
        account = self.store.create("owner-1")
        self.store.credit(account.id, "10")
        self.store.debit(account.id, "4")
        self.store.freeze(account.id)
        self.store.unfreeze(account.id)
        self.store.close(account.id)

        events = self.audit_trail.get_events_for_entity("account", account.id)
        assert [e.event_type for e in events] == [
            AuditEventType.ACCOUNT_CREATED,
            AuditEventType.ACCOUNT_CREDITED,
            AuditEventType.ACCOUNT_DEBITED,
            AuditEventType.ACCOUNT_FROZEN,
            AuditEventType.ACCOUNT_UNFROZEN,
            AuditEventType.ACCOUNT_CLOSED,
        ]
        assert events[2].metadata["balance"] == "6.00"

    def test_rejected_operation_not_audited(self):
        account = self.store.create("owner-1")
        before = self.audit_trail.count_events()

        with pytest.raises(InsufficientFundsError):
            self.store.debit(account.id, "1")

        assert self.audit_trail.count_events() == before

    def test_account_serialization(self):
        """Account survives a trip through storage unchanged"""
        account = self.store.create("owner-1", "12.34")
        restored = Account.from_dict(account.to_dict())

        assert restored == account
        assert account.to_dict()["balance"] == "12.34"
        assert account.to_dict()["status"] == "Active"

    def test_balance_never_negative(self):
        """A mixed sequence of operations keeps every balance non-negative"""
        account = self.store.create("owner-1", "5")
        operations = [
            ("debit", "3"), ("debit", "3"), ("credit", "1"), ("debit", "3"),
            ("debit", "0.01"), ("credit", "0.50"), ("debit", "0.51"), ("debit", "0.50"),
        ]
        for name, amount in operations:
            try:
                getattr(self.store, name)(account.id, amount)
            except InsufficientFundsError:
                pass
            assert self.store.get("owner-1").balance >= 0

        assert self.store.get("owner-1").balance == Decimal("0.00")
