"""
Per-Account Locking Module

One re-entrant lock per account number. Operations that touch several
accounts acquire them in lexicographic order so two transfers between the
same pair of accounts in opposite directions cannot deadlock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .errors import ConcurrencyConflictError


class AccountLockManager:
    """
    Hands out per-account mutexes keyed by account number

    Locks are re-entrant so a thread holding an account (the transfer engine)
    can call into the account store, which takes the same lock again.
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, account_number: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(account_number)
            if lock is None:
                lock = threading.RLock()
                self._locks[account_number] = lock
            return lock

    def registered_count(self) -> int:
        """Number of account locks handed out so far"""
        with self._registry_lock:
            return len(self._locks)

    @staticmethod
    def lock_order(*account_numbers: str) -> List[str]:
        """Global acquisition order: unique account numbers, sorted"""
        return sorted(set(account_numbers))

    @contextmanager
    def hold(self, *account_numbers: str, timeout: Optional[float] = None) -> Iterator[List[str]]:
        """
        Hold the locks for the given accounts

        Args:
            account_numbers: Accounts to lock (duplicates are ignored)
            timeout: Seconds to wait for each lock; defaults to the manager timeout

        Yields:
            The account numbers in the order they were acquired

        Raises:
            ConcurrencyConflictError: If a lock could not be acquired in time.
                Locks already taken by this call are released first.
        """
        wait = self.timeout if timeout is None else timeout
        ordered = self.lock_order(*account_numbers)
        acquired: List[threading.RLock] = []
        try:
            for account_number in ordered:
                lock = self._lock_for(account_number)
                if not lock.acquire(timeout=wait):
                    raise ConcurrencyConflictError(
                        f"Account {account_number} is busy, retry the operation"
                    )
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
