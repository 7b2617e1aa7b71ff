"""
Transaction Ledger Module

Append-only log of completed transfers. Entries are immutable once written,
ids are strictly increasing, and the ledger is the source of truth for
transaction history and for rebuilding balances by replay.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional
import threading

from .errors import PersistenceError, ValidationError
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount
from .storage import StorageInterface


@dataclass(frozen=True)
class TransactionRecord:
    """
    One committed transfer. Frozen: there is no update path.
    """
    transaction_id: int
    from_account: str
    to_account: str
    amount: Decimal
    description: str
    created_at: datetime
    transaction_type: str = "transfer"

    def touches(self, account_numbers: Iterable[str]) -> bool:
        numbers = set(account_numbers)
        return self.from_account in numbers or self.to_account in numbers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "from_account": self.from_account,
            "to_account": self.to_account,
            "amount": str(self.amount),
            "description": self.description,
            "transaction_type": self.transaction_type,
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        return cls(
            transaction_id=int(data['transaction_id']),
            from_account=data['from_account'],
            to_account=data['to_account'],
            amount=Decimal(data['amount']),
            description=data.get('description', ""),
            created_at=datetime.fromisoformat(data['created_at']),
            transaction_type=data.get('transaction_type', "transfer")
        )


class Ledger:
    """
    Append-only transaction log

    The id sequence is the only state guarded by the ledger's own lock; it is
    held just long enough to allocate an id and write the entry.
    """

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name
        self.logger = get_logger("kodbank.ledger")
        self._lock = threading.Lock()
        self._last_id = max(
            (int(data['transaction_id']) for data in self.storage.load_all(self.table_name)),
            default=0
        )

    def append(
        self,
        from_account: str,
        to_account: str,
        amount: Decimal,
        description: Optional[str] = None
    ) -> TransactionRecord:
        """
        Write a new entry

        Args:
            from_account: Debited account number
            to_account: Credited account number
            amount: Positive amount moved
            description: Optional free text

        Returns:
            The stored TransactionRecord with its id and timestamp

        Raises:
            PersistenceError: The entry could not be written
        """
        if amount <= ZERO:
            raise ValidationError("Ledger entries must have a positive amount")

        with self._lock:
            transaction_id = self._last_id + 1
            key = self._key(transaction_id)
            if self.storage.exists(self.table_name, key):
                raise PersistenceError(
                    f"Ledger entry {transaction_id} already exists; entries are append-only"
                )

            record = TransactionRecord(
                transaction_id=transaction_id,
                from_account=from_account,
                to_account=to_account,
                amount=amount,
                description=description or "",
                created_at=datetime.now(timezone.utc)
            )
            self.storage.save(self.table_name, key, record.to_dict())
            self._last_id = transaction_id

        log_action(
            self.logger, "debug", f"Ledger entry {transaction_id} appended",
            action="ledger_append", resource=f"transaction:{transaction_id}",
            extra={"from_account": from_account, "to_account": to_account,
                   "amount": format_amount(amount)}
        )
        return record

    def get(self, transaction_id: int) -> Optional[TransactionRecord]:
        data = self.storage.load(self.table_name, self._key(transaction_id))
        if data:
            return TransactionRecord.from_dict(data)
        return None

    def entries(self) -> List[TransactionRecord]:
        """Every entry, oldest first"""
        records = [TransactionRecord.from_dict(data) for data in self.storage.load_all(self.table_name)]
        records.sort(key=lambda r: r.transaction_id)
        return records

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def query_by_accounts(self, account_numbers: Iterable[str]) -> List[TransactionRecord]:
        """
        Entries where either side is in `account_numbers`, newest first

        Scans and sorts the whole ledger on every call, so cost grows with
        ledger size rather than with the number of matching entries.
        """
        # TODO: index from_account/to_account in the SQLite backend and filter there
        numbers = set(account_numbers)
        if not numbers:
            return []
        matching = [record for record in self.entries() if record.touches(numbers)]
        matching.reverse()
        return matching

    def replay(self, opening_balances: Mapping[str, Decimal]) -> Dict[str, Decimal]:
        """
        Rebuild balances from opening balances plus every entry in id order

        Accounts that appear in the ledger but not in `opening_balances`
        start from zero.
        """
        balances: Dict[str, Decimal] = dict(opening_balances)
        for record in self.entries():
            balances[record.from_account] = balances.get(record.from_account, ZERO) - record.amount
            balances[record.to_account] = balances.get(record.to_account, ZERO) + record.amount
        return balances

    @staticmethod
    def _key(transaction_id: int) -> str:
        return f"{transaction_id:012d}"
