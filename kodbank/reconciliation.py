"""
Reconciliation Module

Replays the ledger over opening balances and compares the result with the
stored balances, and repairs transfers whose ledger entry could not be
written at commit time.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, Dict, List
import threading

from .accounts import AccountStore
from .audit import AuditTrail, AuditEventType
from .errors import NotFoundError
from .ledger import Ledger, TransactionRecord
from .logging_config import get_logger, log_action
from .money import ZERO
from .transfers import PendingReconciliation, TransferEngine


@dataclass
class Discrepancy:
    account_number: str
    stored_balance: Decimal
    replayed_balance: Decimal

    @property
    def difference(self) -> Decimal:
        return self.stored_balance - self.replayed_balance


@dataclass
class ReconciliationReport:
    total_opening: Decimal
    total_current: Decimal
    ledger_entries: int
    discrepancies: List[Discrepancy] = field(default_factory=list)
    pending: int = 0

    @property
    def conserved(self) -> bool:
        """Transfers neither created nor destroyed money"""
        return self.total_opening == self.total_current

    @property
    def consistent(self) -> bool:
        return self.conserved and not self.discrepancies and self.pending == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_opening": str(self.total_opening),
            "total_current": str(self.total_current),
            "ledger_entries": self.ledger_entries,
            "conserved": self.conserved,
            "consistent": self.consistent,
            "pending": self.pending,
            "discrepancies": [
                {
                    "account_number": d.account_number,
                    "stored_balance": str(d.stored_balance),
                    "replayed_balance": str(d.replayed_balance),
                    "difference": str(d.difference)
                }
                for d in self.discrepancies
            ]
        }


class Reconciler:
    """Checks ledger/balance agreement and repairs unrecorded transfers"""

    def __init__(self, accounts: AccountStore, ledger: Ledger,
                 engine: TransferEngine, audit_trail: AuditTrail):
        self.accounts = accounts
        self.ledger = ledger
        self.engine = engine
        self.audit_trail = audit_trail
        self.logger = get_logger("kodbank.reconciliation")
        self._repair_lock = threading.Lock()

    def check(self) -> ReconciliationReport:
        """
        Compare stored balances with opening balances plus the ledger.

        Not a locked snapshot: run it while no transfers are in flight, or
        expect transient discrepancies.
        """
        accounts = self.accounts.all_accounts()
        replayed = self.ledger.replay(
            {account.account_number: account.opening_balance for account in accounts}
        )

        report = ReconciliationReport(
            total_opening=sum((a.opening_balance for a in accounts), ZERO),
            total_current=sum((a.balance for a in accounts), ZERO),
            ledger_entries=self.ledger.count(),
            pending=len(self.engine.pending_reconciliation)
        )
        for account in accounts:
            expected = replayed.get(account.account_number, ZERO)
            if account.balance != expected:
                report.discrepancies.append(
                    Discrepancy(account.account_number, account.balance, expected)
                )
        # Entries naming accounts the store does not know
        known = {a.account_number for a in accounts}
        for number, balance in replayed.items():
            if number not in known:
                report.discrepancies.append(Discrepancy(number, ZERO, balance))

        level = "info" if report.consistent else "warning"
        log_action(
            self.logger, level, "Reconciliation check completed",
            action="reconcile", extra=report.to_dict()
        )
        return report

    def repair(self, pending: PendingReconciliation) -> TransactionRecord:
        """
        Write the ledger entry a committed transfer is missing

        Raises:
            NotFoundError: The transfer is not waiting for repair
            PersistenceError: The ledger is still failing; the item stays queued
        """
        with self._repair_lock:
            queued = {p.attempt_id for p in self.engine.pending_reconciliation}
            if pending.attempt_id not in queued:
                raise NotFoundError(f"Transfer {pending.attempt_id} is not awaiting reconciliation")

            record = self.ledger.append(
                pending.from_account, pending.to_account, pending.amount, pending.description
            )
            self.engine.resolve_pending(pending.attempt_id)

        log_action(
            self.logger, "warning", f"Ledger entry {record.transaction_id} written by reconciliation",
            user_id=pending.requested_by, action="repair_ledger_entry",
            resource=f"transaction:{record.transaction_id}",
            extra=pending.to_dict()
        )
        self.audit_trail.log_event(
            event_type=AuditEventType.LEDGER_ENTRY_REPAIRED,
            entity_type="transfer",
            entity_id=pending.attempt_id,
            user_id=pending.requested_by,
            metadata={"transaction_id": record.transaction_id, **pending.to_dict()}
        )
        return record
