"""
Transfer Engine Module

Moves money between two accounts as one atomic unit: validate, debit the
source, credit the destination, append the ledger entry. Each transfer is a
tagged state machine so every failure has exactly one recovery action:

    REQUESTED -> VALIDATED -> DEBITED -> CREDITED -> RECORDED

    precondition or debit failure  -> REJECTED    (nothing changed)
    credit failure                 -> UNWOUND     (debit reversed)
                                   -> ESCALATED   (debit could not be reversed)
    ledger append failure          -> UNRECORDED  (money moved, entry missing)

Both account locks are held from the debit until the ledger entry is written,
so no reader that takes those locks sees a half-applied transfer.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
import threading
import time
import uuid

from .accounts import AccountStore, is_valid_account_number
from .audit import AuditTrail, AuditEventType
from .errors import (
    AuthorizationError, CompensationFailedError, InsufficientFundsError,
    LedgerError, NotFoundError, ReconciliationRequired, ValidationError
)
from .ledger import Ledger, TransactionRecord
from .locking import AccountLockManager
from .logging_config import get_logger, log_action
from .money import ZERO, format_amount, parse_amount


class TransferState(Enum):
    """States of a single transfer"""
    REQUESTED = "requested"
    VALIDATED = "validated"
    DEBITED = "debited"
    CREDITED = "credited"
    RECORDED = "recorded"      # Success
    REJECTED = "rejected"      # Failed before any balance changed
    UNWOUND = "unwound"        # Credit failed, debit reversed
    UNRECORDED = "unrecorded"  # Balances moved, ledger entry missing
    ESCALATED = "escalated"    # Credit failed and the debit is still applied


ALLOWED_TRANSITIONS = {
    TransferState.REQUESTED: {TransferState.VALIDATED, TransferState.REJECTED},
    TransferState.VALIDATED: {TransferState.DEBITED, TransferState.REJECTED},
    TransferState.DEBITED: {TransferState.CREDITED, TransferState.UNWOUND, TransferState.ESCALATED},
    TransferState.CREDITED: {TransferState.RECORDED, TransferState.UNRECORDED},
}

TERMINAL_STATES = {
    TransferState.RECORDED, TransferState.REJECTED, TransferState.UNWOUND,
    TransferState.UNRECORDED, TransferState.ESCALATED
}


@dataclass
class TransferAttempt:
    """
    In-flight transfer with its state history
    """
    attempt_id: str
    from_account: Any
    to_account: Any
    requested_by: Optional[str]
    description: str = ""
    amount: Optional[Decimal] = None
    state: TransferState = TransferState.REQUESTED
    history: List[TransferState] = field(default_factory=lambda: [TransferState.REQUESTED])
    error: Optional[LedgerError] = None
    record: Optional[TransactionRecord] = None

    def advance(self, new_state: TransferState) -> None:
        """Move to `new_state`; only transitions in ALLOWED_TRANSITIONS are legal"""
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise ValueError(
                f"Illegal transfer transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.history.append(new_state)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def reached_commit(self) -> bool:
        """True once validation passed and the commit protocol started"""
        return TransferState.VALIDATED in self.history


@dataclass(frozen=True)
class PendingReconciliation:
    """
    A transfer whose balances were committed but whose ledger entry was not
    """
    attempt_id: str
    from_account: str
    to_account: str
    amount: Decimal
    description: str
    requested_by: str
    failed_at: datetime
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "from_account": self.from_account,
            "to_account": self.to_account,
            "amount": str(self.amount),
            "description": self.description,
            "requested_by": self.requested_by,
            "failed_at": self.failed_at.isoformat(),
            "reason": self.reason
        }


class TransferEngine:
    """
    Orchestrates transfers against the account store and the ledger
    """

    def __init__(
        self,
        accounts: AccountStore,
        ledger: Ledger,
        locks: AccountLockManager,
        audit_trail: AuditTrail,
        compensation_max_attempts: int = 5,
        compensation_backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.accounts = accounts
        self.ledger = ledger
        self.locks = locks
        self.audit_trail = audit_trail
        self.compensation_max_attempts = max(1, compensation_max_attempts)
        self.compensation_backoff_seconds = compensation_backoff_seconds
        self._sleep = sleep
        self.logger = get_logger("kodbank.transfers")

        self._pending: List[PendingReconciliation] = []
        self._pending_lock = threading.Lock()

    def transfer(
        self,
        from_account: str,
        to_account: str,
        amount: Any,
        description: Optional[str],
        requesting_identity: str
    ) -> TransactionRecord:
        """
        Move `amount` from `from_account` to `to_account`

        Args:
            from_account: Source account number, must be owned by the caller
            to_account: Destination account number, any existing account
            amount: Positive amount with at most two decimal places
            description: Optional free text stored on the ledger entry
            requesting_identity: Identity of the caller

        Returns:
            The committed TransactionRecord

        Raises:
            ValidationError: Missing or malformed fields, non-positive amount,
                same source and destination
            NotFoundError: Unknown source or destination
            AuthorizationError: Source not owned by the caller
            InsufficientFundsError: Source balance too low, at pre-check or commit
            ConcurrencyConflictError: Accounts busy; resubmit the transfer
            PersistenceError: Storage failed; no partial transfer remains
            CompensationFailedError: Debit applied and could not be reversed
            ReconciliationRequired: Balances moved but the ledger entry is missing
        """
        attempt = TransferAttempt(
            attempt_id=str(uuid.uuid4()),
            from_account=from_account,
            to_account=to_account,
            requested_by=requesting_identity,
            description=description or ""
        )

        try:
            self._validate(attempt, amount, description)
            with self.locks.hold(attempt.from_account, attempt.to_account):
                self._debit(attempt)
                self._credit(attempt)
                self._record(attempt)
        except LedgerError as error:
            attempt.error = error
            if not attempt.is_terminal:
                attempt.advance(TransferState.REJECTED)
            self._report_failure(attempt, error)
            raise

        self._report_success(attempt)
        return attempt.record

    @property
    def pending_reconciliation(self) -> List[PendingReconciliation]:
        """Transfers waiting for their ledger entry to be repaired"""
        with self._pending_lock:
            return list(self._pending)

    def resolve_pending(self, attempt_id: str) -> Optional[PendingReconciliation]:
        """Remove a repaired transfer from the queue"""
        with self._pending_lock:
            for index, pending in enumerate(self._pending):
                if pending.attempt_id == attempt_id:
                    return self._pending.pop(index)
        return None

    # Steps

    def _validate(self, attempt: TransferAttempt, raw_amount: Any, description: Any) -> None:
        """Preconditions, in order; the first failure is the one reported"""
        if not attempt.from_account or not attempt.to_account or raw_amount in (None, ""):
            raise ValidationError("From account, to account, and amount are required")
        for label, number in (("from", attempt.from_account), ("to", attempt.to_account)):
            if not is_valid_account_number(number):
                raise ValidationError(f"Invalid {label} account number: {number!r}")
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be text")

        amount = parse_amount(raw_amount)
        if amount <= ZERO:
            raise ValidationError("Amount must be greater than 0")
        attempt.amount = amount

        if attempt.from_account == attempt.to_account:
            raise ValidationError("Cannot transfer to the same account")

        source = self.accounts.find(attempt.from_account)
        if source is None:
            raise NotFoundError(f"Source account {attempt.from_account} not found")
        if not attempt.requested_by or source.owner_id != attempt.requested_by:
            raise AuthorizationError(
                f"Account {attempt.from_account} does not belong to the caller"
            )

        if self.accounts.find(attempt.to_account) is None:
            raise NotFoundError(f"Destination account {attempt.to_account} not found")

        if source.balance < amount:
            raise InsufficientFundsError(
                f"Insufficient balance: available {format_amount(source.balance)}, "
                f"requested {format_amount(amount)}"
            )

        attempt.advance(TransferState.VALIDATED)

    def _debit(self, attempt: TransferAttempt) -> None:
        # A failure here leaves nothing to undo
        self.accounts.adjust_balance(attempt.from_account, -attempt.amount)
        attempt.advance(TransferState.DEBITED)

    def _credit(self, attempt: TransferAttempt) -> None:
        try:
            self.accounts.adjust_balance(attempt.to_account, attempt.amount)
        except LedgerError as credit_error:
            self._compensate(attempt, credit_error)
            # Compensated: report the credit failure itself
            raise
        attempt.advance(TransferState.CREDITED)

    def _compensate(self, attempt: TransferAttempt, cause: LedgerError) -> None:
        """
        Reverse the debit, retrying with linear backoff. Exhausting the
        attempts escalates: the transfer ends ESCALATED and
        CompensationFailedError replaces the credit error.
        """
        last_error: Optional[LedgerError] = None
        for number in range(1, self.compensation_max_attempts + 1):
            try:
                self.accounts.adjust_balance(attempt.from_account, attempt.amount)
            except LedgerError as error:
                last_error = error
                log_action(
                    self.logger, "error",
                    f"Compensation attempt {number}/{self.compensation_max_attempts} failed: {error}",
                    user_id=attempt.requested_by, action="compensate_debit",
                    resource=f"account:{attempt.from_account}",
                    extra={"attempt_id": attempt.attempt_id, "amount": format_amount(attempt.amount)}
                )
                if number < self.compensation_max_attempts:
                    self._sleep(self.compensation_backoff_seconds * number)
                continue

            attempt.advance(TransferState.UNWOUND)
            return

        attempt.advance(TransferState.ESCALATED)
        raise CompensationFailedError(
            f"Transfer {attempt.attempt_id}: credit to {attempt.to_account} failed "
            f"({cause.message}) and the debit of {format_amount(attempt.amount)} from "
            f"{attempt.from_account} could not be reversed ({last_error.message})",
            account_number=attempt.from_account,
            amount=attempt.amount
        ) from cause

    def _record(self, attempt: TransferAttempt) -> None:
        try:
            attempt.record = self.ledger.append(
                attempt.from_account, attempt.to_account, attempt.amount, attempt.description
            )
        except LedgerError as error:
            # Balances stay as they are; losing the credit would be worse
            attempt.advance(TransferState.UNRECORDED)
            pending = PendingReconciliation(
                attempt_id=attempt.attempt_id,
                from_account=attempt.from_account,
                to_account=attempt.to_account,
                amount=attempt.amount,
                description=attempt.description,
                requested_by=attempt.requested_by,
                failed_at=datetime.now(timezone.utc),
                reason=error.message
            )
            with self._pending_lock:
                self._pending.append(pending)
            raise ReconciliationRequired(
                f"Transfer of {format_amount(attempt.amount)} from {attempt.from_account} "
                f"to {attempt.to_account} was applied but its ledger entry could not be "
                f"written: {error.message}",
                pending=pending
            ) from error
        attempt.advance(TransferState.RECORDED)

    # Reporting

    def _report_success(self, attempt: TransferAttempt) -> None:
        record = attempt.record
        log_action(
            self.logger, "info", f"Transfer {record.transaction_id} committed",
            user_id=attempt.requested_by, action="transfer",
            resource=f"transaction:{record.transaction_id}",
            extra={
                "from_account": record.from_account,
                "to_account": record.to_account,
                "amount": format_amount(record.amount)
            }
        )
        self._audit(
            AuditEventType.TRANSFER_COMMITTED, attempt,
            {"transaction_id": record.transaction_id}
        )

    def _report_failure(self, attempt: TransferAttempt, error: LedgerError) -> None:
        extra = {
            "attempt_id": attempt.attempt_id,
            "from_account": attempt.from_account,
            "to_account": attempt.to_account,
            "amount": format_amount(attempt.amount) if attempt.amount is not None else None,
            "state": attempt.state.value,
            "error_code": error.code
        }

        if attempt.state is TransferState.REJECTED:
            level = "warning" if attempt.reached_commit else "info"
            event_type = AuditEventType.TRANSFER_REJECTED
        elif attempt.state is TransferState.UNWOUND:
            level = "error"
            event_type = AuditEventType.TRANSFER_COMPENSATED
        elif attempt.state is TransferState.ESCALATED:
            level = "critical"
            event_type = AuditEventType.COMPENSATION_FAILED
        else:
            level = "critical"
            event_type = AuditEventType.RECONCILIATION_REQUIRED

        log_action(
            self.logger, level, f"Transfer {attempt.state.value}: {error.message}",
            user_id=attempt.requested_by, action="transfer",
            resource=f"attempt:{attempt.attempt_id}", extra=extra
        )
        self._audit(event_type, attempt, extra)

    def _audit(self, event_type: AuditEventType, attempt: TransferAttempt,
               metadata: Dict[str, Any]) -> None:
        """
        Write an audit event for a transfer that has already reached a
        terminal state. A failing audit write is logged and does not change
        the outcome reported to the caller.
        """
        metadata = dict(metadata)
        metadata.setdefault("from_account", attempt.from_account)
        metadata.setdefault("to_account", attempt.to_account)
        if attempt.amount is not None:
            metadata.setdefault("amount", attempt.amount)
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="transfer",
                entity_id=attempt.attempt_id,
                user_id=attempt.requested_by,
                metadata={k: v for k, v in metadata.items() if v is not None}
            )
        except LedgerError:
            self.logger.exception(
                "Audit write failed for transfer %s (%s)",
                attempt.attempt_id, event_type.value
            )
