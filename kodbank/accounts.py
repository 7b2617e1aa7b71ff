"""
Account Store Module

Holds account records keyed by account number and enforces balance
non-negativity. `adjust_balance` is the only way a balance changes after an
account is opened; there is no direct balance setter.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import re
import secrets
import time
import uuid

from .audit import AuditTrail, AuditEventType
from .errors import (
    InsufficientFundsError, NotFoundError, PersistenceError, ValidationError
)
from .locking import AccountLockManager
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount, quantize, to_decimal
from .storage import StorageInterface, StorageRecord

ACCOUNT_NUMBER_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_account_number(prefix: str = "KB") -> str:
    """
    Build a candidate account number: prefix, base-36 millisecond clock,
    three random base-36 characters
    """
    clock = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(3))
    return f"{prefix}{clock}{suffix}"


def is_valid_account_number(value: Any) -> bool:
    return isinstance(value, str) and bool(ACCOUNT_NUMBER_PATTERN.match(value))


@dataclass
class Account(StorageRecord):
    """
    Customer account. `owner_id` references an identity held outside the
    ledger core; `account_type` is a free label with no behaviour attached.
    """
    account_number: str
    owner_id: str
    account_type: str
    account_name: str
    balance: Decimal
    opening_balance: Decimal

    def __post_init__(self):
        if self.balance < ZERO:
            raise ValueError(f"Account {self.account_number} balance cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['balance'] = str(self.balance)
        result['opening_balance'] = str(self.opening_balance)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            owner_id=data['owner_id'],
            account_type=data['account_type'],
            account_name=data['account_name'],
            balance=Decimal(data['balance']),
            opening_balance=Decimal(data['opening_balance'])
        )

    def to_response(self) -> Dict[str, Any]:
        """Shape returned to the HTTP layer"""
        return {
            "account_number": self.account_number,
            "owner_id": self.owner_id,
            "account_type": self.account_type,
            "account_name": self.account_name,
            "balance": str(self.balance),
            "created_at": self.created_at.isoformat()
        }


class AccountStore:
    """
    Manages account records and the balance non-negativity invariant
    """

    def __init__(
        self,
        storage: StorageInterface,
        locks: AccountLockManager,
        audit_trail: AuditTrail,
        account_number_prefix: str = "KB",
        max_number_attempts: int = 5,
        number_generator: Optional[Callable[[str], str]] = None
    ):
        self.storage = storage
        self.locks = locks
        self.audit_trail = audit_trail
        self.accounts_table = "accounts"
        self.account_number_prefix = account_number_prefix
        self.max_number_attempts = max_number_attempts
        self._generate_number = number_generator or generate_account_number
        self.logger = get_logger("kodbank.accounts")

    def create(
        self,
        owner_id: str,
        account_type: str,
        account_name: str,
        opening_balance: Any = ZERO
    ) -> Account:
        """
        Open a new account with a unique account number

        Args:
            owner_id: External identity that owns the account
            account_type: Label such as Savings or Checking
            account_name: Display name
            opening_balance: Seed amount (zero for accounts added by the owner)

        Returns:
            Created Account

        Raises:
            ValidationError: Missing fields or negative opening balance
            PersistenceError: No unique number found within max_number_attempts,
                or the store failed
        """
        for name, value in (("owner_id", owner_id), ("account_type", account_type),
                            ("account_name", account_name)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")

        opening = quantize(to_decimal(opening_balance, "opening_balance"))
        if opening < ZERO:
            raise ValidationError("opening_balance cannot be negative")

        for attempt in range(1, self.max_number_attempts + 1):
            account_number = self._generate_number(self.account_number_prefix)
            # Holding the candidate's lock makes check-then-insert atomic
            with self.locks.hold(account_number):
                if self.storage.exists(self.accounts_table, account_number):
                    log_action(
                        self.logger, "warning", "Account number collision, retrying",
                        action="create_account", resource=f"account:{account_number}",
                        extra={"attempt": attempt}
                    )
                    continue

                now = datetime.now(timezone.utc)
                account = Account(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    account_number=account_number,
                    owner_id=owner_id,
                    account_type=account_type,
                    account_name=account_name,
                    balance=opening,
                    opening_balance=opening
                )
                self._save_account(account)
                break
        else:
            raise PersistenceError(
                f"Could not allocate a unique account number after "
                f"{self.max_number_attempts} attempts"
            )

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            user_id=owner_id, action="create_account",
            resource=f"account:{account.account_number}",
            extra={"account_type": account_type, "opening_balance": format_amount(opening)}
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_OPENED,
            entity_type="account",
            entity_id=account.account_number,
            user_id=owner_id,
            metadata={
                "account_type": account_type,
                "account_name": account_name,
                "opening_balance": opening
            }
        )
        return account

    def open_default_account(
        self,
        owner_id: str,
        account_type: str = "Savings",
        account_name: str = "Primary Savings",
        seed_balance: Any = "1000.00"
    ) -> Account:
        """Account every newly registered owner starts with"""
        return self.create(owner_id, account_type, account_name, opening_balance=seed_balance)

    def find(self, account_number: str) -> Optional[Account]:
        """Get account by number, None when unknown"""
        data = self.storage.load(self.accounts_table, account_number)
        if data:
            return Account.from_dict(data)
        return None

    def get(self, account_number: str) -> Account:
        """Get account by number or raise NotFoundError"""
        account = self.find(account_number)
        if account is None:
            raise NotFoundError(f"Account {account_number} not found")
        return account

    def accounts_for_owner(self, owner_id: str) -> List[Account]:
        """All accounts of an owner, newest first"""
        accounts = [
            Account.from_dict(data)
            for data in self.storage.find(self.accounts_table, {"owner_id": owner_id})
        ]
        # Storage returns insertion order; reverse it to break created_at ties
        accounts.reverse()
        accounts.sort(key=lambda a: a.created_at, reverse=True)
        return accounts

    def all_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.accounts_table)]

    def total_balance(self) -> Decimal:
        """Sum of every balance in the store"""
        return sum((account.balance for account in self.all_accounts()), ZERO)

    def adjust_balance(self, account_number: str, delta: Decimal) -> Account:
        """
        Apply `balance += delta` under the account's lock

        Args:
            account_number: Account to change
            delta: Signed amount; negative for debits

        Returns:
            The updated Account

        Raises:
            NotFoundError: Unknown account
            InsufficientFundsError: The result would be negative
            ConcurrencyConflictError: The account lock could not be taken in time
            PersistenceError: The store failed; the balance is unchanged
        """
        with self.locks.hold(account_number):
            account = self.get(account_number)
            new_balance = quantize(account.balance + delta)
            if new_balance < ZERO:
                raise InsufficientFundsError(
                    f"Insufficient funds in account {account_number}: "
                    f"balance {format_amount(account.balance)}, "
                    f"requested {format_amount(-delta)}"
                )
            account.balance = new_balance
            account.updated_at = datetime.now(timezone.utc)
            self._save_account(account)
            return account

    def _save_account(self, account: Account) -> None:
        self.storage.save(self.accounts_table, account.account_number, account.to_dict())
