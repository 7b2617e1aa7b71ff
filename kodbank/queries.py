"""
Query Layer Module

Read-only views over the account store and the ledger. Nothing here mutates
either. Reads take the caller's account locks so a snapshot never contains
one half of a transfer.
"""

from typing import List, Optional

from .accounts import Account, AccountStore, is_valid_account_number
from .errors import AuthorizationError, NotFoundError
from .ledger import Ledger, TransactionRecord
from .locking import AccountLockManager
from .logging_config import get_logger


class QueryService:
    """Per-identity views of balances and history"""

    def __init__(self, accounts: AccountStore, ledger: Ledger, locks: AccountLockManager):
        self.accounts = accounts
        self.ledger = ledger
        self.locks = locks
        self.logger = get_logger("kodbank.queries")

    def balance_of(self, account_number: str, requesting_identity: str) -> Account:
        """
        Account detail for its owner

        Raises:
            NotFoundError: Unknown account
            AuthorizationError: The caller does not own the account
        """
        # Unknown numbers never reach the lock registry, which only grows
        if not is_valid_account_number(account_number) or self.accounts.find(account_number) is None:
            raise NotFoundError(f"Account {account_number} not found")
        with self.locks.hold(account_number):
            account = self.accounts.get(account_number)
        if account.owner_id != requesting_identity:
            self.logger.info(
                "Balance read of %s refused for %s", account_number, requesting_identity
            )
            raise AuthorizationError(f"Account {account_number} does not belong to the caller")
        return account

    # GET accounts/:number returns the same view
    account_detail = balance_of

    def list_accounts(self, requesting_identity: str) -> List[Account]:
        """The caller's accounts, newest first, read as one consistent snapshot"""
        owned = self.accounts.accounts_for_owner(requesting_identity)
        if not owned:
            return []
        with self.locks.hold(*(account.account_number for account in owned)):
            snapshot = self.accounts.accounts_for_owner(requesting_identity)
        return snapshot

    def history_for(self, requesting_identity: str,
                    limit: Optional[int] = None) -> List[TransactionRecord]:
        """
        Ledger entries touching any account the caller owns, newest first

        The caller's account locks are held for a full ledger scan (see
        `Ledger.query_by_accounts`), so transfers on those accounts wait for
        large histories.
        """
        numbers = [account.account_number
                   for account in self.accounts.accounts_for_owner(requesting_identity)]
        if not numbers:
            return []
        with self.locks.hold(*numbers):
            history = self.ledger.query_by_accounts(numbers)
        if limit is not None:
            history = history[:max(0, limit)]
        return history
