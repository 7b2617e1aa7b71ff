"""
Component wiring for the ledger core
"""

from typing import Optional

from .accounts import Account, AccountStore
from .audit import AuditTrail
from .config import KodBankConfig, get_config
from .ledger import Ledger
from .locking import AccountLockManager
from .queries import QueryService
from .reconciliation import Reconciler
from .storage import StorageInterface, create_storage
from .transfers import TransferEngine


class BankingSystem:
    """Ledger core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[KodBankConfig] = None):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(self.config.database_url)

        # Initialize core components
        self.locks = AccountLockManager(timeout=self.config.lock_timeout_seconds)
        self.audit_trail = AuditTrail(self.storage)
        self.accounts = AccountStore(
            self.storage, self.locks, self.audit_trail,
            account_number_prefix=self.config.account_number_prefix,
            max_number_attempts=self.config.account_number_max_attempts
        )
        self.ledger = Ledger(self.storage)
        self.transfer_engine = TransferEngine(
            self.accounts, self.ledger, self.locks, self.audit_trail,
            compensation_max_attempts=self.config.compensation_max_attempts,
            compensation_backoff_seconds=self.config.compensation_backoff_seconds
        )
        self.queries = QueryService(self.accounts, self.ledger, self.locks)
        self.reconciler = Reconciler(
            self.accounts, self.ledger, self.transfer_engine, self.audit_trail
        )

    def open_default_account(self, owner_id: str) -> Account:
        """Registration hook: seeded savings account for a new owner"""
        return self.accounts.open_default_account(
            owner_id,
            account_type=self.config.default_account_type,
            account_name=self.config.default_account_name,
            seed_balance=self.config.registration_seed_balance
        )

    def add_account(self, owner_id: str, account_type: str, account_name: str) -> Account:
        """Additional account opened by its owner, starting at zero"""
        return self.accounts.create(owner_id, account_type, account_name)

    def close(self) -> None:
        self.storage.close()
