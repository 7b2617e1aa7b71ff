"""
Test suite for the account store

Tests account opening, account number allocation, owner listings and the
balance non-negativity invariant.
"""

import re
from decimal import Decimal
from itertools import chain, repeat

import pytest

from kodbank.accounts import (
    Account, AccountStore, generate_account_number, is_valid_account_number, to_base36
)
from kodbank.audit import AuditTrail, AuditEventType
from kodbank.errors import (
    InsufficientFundsError, NotFoundError, PersistenceError, ValidationError
)
from kodbank.locking import AccountLockManager
from kodbank.storage import InMemoryStorage


class TestAccountNumbers:

    def test_base36(self):
        assert to_base36(0) == "0"
        assert to_base36(35) == "Z"
        assert to_base36(36) == "10"

    def test_generated_format(self):
        number = generate_account_number()
        assert re.match(r"^KB[0-9A-Z]{9,}$", number)
        assert is_valid_account_number(number)

    def test_custom_prefix(self):
        assert generate_account_number("TEST").startswith("TEST")

    @pytest.mark.parametrize("value", ["", None, 12345, "KB 123", "KB/1", "x" * 65])
    def test_invalid_numbers(self, value):
        assert not is_valid_account_number(value)


class TestAccountStore:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.locks = AccountLockManager(timeout=1.0)
        self.audit_trail = AuditTrail(self.storage)
        self.store = AccountStore(self.storage, self.locks, self.audit_trail)

    def test_create_account(self):
        account = self.store.create("user-1", "Checking", "Bills", opening_balance="250")

        assert account.account_number.startswith("KB")
        assert account.owner_id == "user-1"
        assert account.balance == Decimal("250.00")
        assert account.opening_balance == Decimal("250.00")
        assert self.store.get(account.account_number).balance == Decimal("250.00")

    def test_create_defaults_to_zero_balance(self):
        account = self.store.create("user-1", "Checking", "Bills")
        assert account.balance == Decimal("0.00")

    def test_open_default_account(self):
        account = self.store.open_default_account("user-1")

        assert account.account_type == "Savings"
        assert account.account_name == "Primary Savings"
        assert account.balance == Decimal("1000.00")

    def test_create_writes_audit_event(self):
        account = self.store.create("user-1", "Savings", "Main", opening_balance="10")

        events = self.audit_trail.get_events_for_entity("account", account.account_number)
        assert len(events) == 1
        assert events[0].event_type == AuditEventType.ACCOUNT_OPENED
        assert events[0].user_id == "user-1"
        assert events[0].metadata["opening_balance"] == "10.00"

    @pytest.mark.parametrize("owner,account_type,name", [
        ("", "Savings", "Main"),
        ("user-1", "", "Main"),
        ("user-1", "Savings", "   "),
        ("user-1", None, "Main"),
    ])
    def test_create_requires_fields(self, owner, account_type, name):
        with pytest.raises(ValidationError):
            self.store.create(owner, account_type, name)

    def test_create_rejects_negative_opening_balance(self):
        with pytest.raises(ValidationError):
            self.store.create("user-1", "Savings", "Main", opening_balance="-1")

    def test_create_rejects_oversized_opening_balance(self):
        with pytest.raises(ValidationError, match="too large"):
            self.store.create("user-1", "Savings", "Main", opening_balance="1e30")
        assert self.store.all_accounts() == []

    def test_number_collision_is_retried(self):
        existing = self.store.create("user-1", "Savings", "Main")
        numbers = iter([existing.account_number, existing.account_number, "KBFRESH001"])
        store = AccountStore(
            self.storage, self.locks, self.audit_trail,
            number_generator=lambda prefix: next(numbers)
        )

        account = store.create("user-2", "Savings", "Other")

        assert account.account_number == "KBFRESH001"
        assert self.store.get(existing.account_number).owner_id == "user-1"

    def test_number_allocation_gives_up(self):
        existing = self.store.create("user-1", "Savings", "Main")
        store = AccountStore(
            self.storage, self.locks, self.audit_trail, max_number_attempts=3,
            number_generator=lambda prefix: existing.account_number
        )

        with pytest.raises(PersistenceError, match="3 attempts"):
            store.create("user-2", "Savings", "Other")
        assert self.storage.count("accounts") == 1

    def test_find_and_get_unknown(self):
        assert self.store.find("KBNOPE") is None
        with pytest.raises(NotFoundError):
            self.store.get("KBNOPE")

    def test_accounts_for_owner_newest_first(self):
        numbers = chain(["KB0001", "KB0002", "KB0003"], repeat("KBUNUSED"))
        store = AccountStore(self.storage, self.locks, self.audit_trail,
                             number_generator=lambda prefix: next(numbers))
        store.create("user-1", "Savings", "First")
        store.create("user-2", "Savings", "Someone else")
        store.create("user-1", "Checking", "Second")

        owned = store.accounts_for_owner("user-1")

        assert [a.account_number for a in owned] == ["KB0003", "KB0001"]
        assert store.accounts_for_owner("nobody") == []

    def test_adjust_balance(self):
        account = self.store.create("user-1", "Savings", "Main", opening_balance="100")

        updated = self.store.adjust_balance(account.account_number, Decimal("-40"))
        assert updated.balance == Decimal("60.00")

        updated = self.store.adjust_balance(account.account_number, Decimal("15.50"))
        assert self.store.get(account.account_number).balance == Decimal("75.50")

    def test_adjust_balance_cannot_go_negative(self):
        account = self.store.create("user-1", "Savings", "Main", opening_balance="100")

        with pytest.raises(InsufficientFundsError):
            self.store.adjust_balance(account.account_number, Decimal("-100.01"))
        assert self.store.get(account.account_number).balance == Decimal("100.00")

    def test_adjust_balance_to_exactly_zero(self):
        account = self.store.create("user-1", "Savings", "Main", opening_balance="100")
        assert self.store.adjust_balance(account.account_number, Decimal("-100")).balance == Decimal("0.00")

    def test_adjust_unknown_account(self):
        with pytest.raises(NotFoundError):
            self.store.adjust_balance("KBNOPE", Decimal("1"))

    def test_total_balance(self):
        self.store.create("user-1", "Savings", "A", opening_balance="100")
        self.store.create("user-2", "Savings", "B", opening_balance="50.25")
        assert self.store.total_balance() == Decimal("150.25")

    def test_account_rejects_negative_balance(self):
        account = self.store.create("user-1", "Savings", "Main")
        data = account.to_dict()
        data["balance"] = "-1.00"
        with pytest.raises(ValueError):
            Account.from_dict(data)

    def test_to_response(self):
        account = self.store.create("user-1", "Savings", "Main", opening_balance="5")
        response = account.to_response()

        assert response["account_number"] == account.account_number
        assert response["balance"] == "5.00"
        assert "opening_balance" not in response
