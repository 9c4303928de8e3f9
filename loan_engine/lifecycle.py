"""
Loan Lifecycle Module

Orchestrates the loan state machine:

    requested -> approved | rejected
    approved  -> active (disburse)
    active    -> ad-hoc payment, restructure, skip, closed
    any non-terminal -> cancelled

Each mutation reads the loan, changes ledger rows and appends its event
inside one storage transaction conditioned on the loan version it read.
Notifications are published only after the transaction commits.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import List, Optional, Any, Union, Tuple
from enum import Enum
import uuid

from .storage import StorageInterface
from .amortization import (
    RepaymentTerm, FixedInstallment, FixedDuration, RepaymentMethod, DEFAULT_PRECISION,
    to_amount, round_amount, minor_unit, add_months, schedule_for_term,
    generate_schedule, generate_schedule_by_duration, restructure
)
from .loans import (
    Loan, LoanInstallment, LoanLedger, LoanStatus, InstallmentStatus, PaymentMethod,
    installments_from_schedule, schedule_duration, next_schedule_version
)
from .loan_events import LoanEvent, LoanEventLog, LoanEventType
from .employees import EmployeeDirectory
from .events import EventDispatcher, DomainEvent, create_loan_event
from .exceptions import (
    InvalidAmount, InvalidTermKind, InvalidRestructure, InvalidTransition,
    AlreadyDisbursed, NotDue, TerminalStateProtected, ConcurrentModification,
    NotBelongsToLoan
)
from .logging_config import get_logger, log_action


SKIP_REASON_CLOSED_BY_PAYMENT = "loan_closed_by_payment"
SKIP_REASON_CANCELLED = "loan_cancelled"
SKIP_REASON_RESCHEDULED = "rescheduled_by_payment"
SKIP_REASON_RESTRUCTURED = "restructured"


class RescheduleOption(Enum):
    """How an ad-hoc payment reshapes the remaining schedule"""
    REDUCE_DURATION = "reduce_duration"  # same installment, fewer months
    REDUCE_AMOUNT = "reduce_amount"      # same months, smaller installment
    APPLY_NEXT = "apply_next"            # settle the next due installments


@dataclass
class DisbursementResult:
    loan: Loan
    installments: List[LoanInstallment]
    event: LoanEvent


@dataclass
class AdHocPaymentResult:
    loan: Loan
    installments: List[LoanInstallment]
    applied_amount: Decimal
    leftover_unapplied: Decimal
    event: LoanEvent


@dataclass
class RestructureResult:
    loan: Loan
    installments: List[LoanInstallment]
    event: LoanEvent


@dataclass
class SkipResult:
    loan: Loan
    installments: List[LoanInstallment]
    event: LoanEvent


def _require_authorized(authorized: bool, action: str) -> None:
    if not authorized:
        raise PermissionError(f"Caller is not authorized to {action} loans")


def _require_status(loan: Loan, action: str, *allowed: LoanStatus) -> None:
    if loan.status not in allowed:
        raise InvalidTransition(
            f"Cannot {action} a loan that is {loan.status.value}", loan_id=loan.id
        )


def _ordered(installments: List[LoanInstallment]) -> List[LoanInstallment]:
    return sorted(installments, key=lambda row: row.installment_number)


class LoanLifecycleController:
    """
    Loan lifecycle state machine over the ledger and event log
    """

    def __init__(
        self,
        storage: StorageInterface,
        employee_directory: Optional[EmployeeDirectory] = None,
        dispatcher: Optional[EventDispatcher] = None,
        precision: int = DEFAULT_PRECISION,
        default_skip_reason: str = "Employee request"
    ):
        self.storage = storage
        self.ledger = LoanLedger(storage, precision)
        self.event_log = LoanEventLog(storage)
        self.employee_directory = employee_directory
        self.dispatcher = dispatcher
        self.precision = precision
        self.default_skip_reason = default_skip_reason
        self.logger = get_logger("loan_engine.lifecycle")

    # Helpers

    def _amount(self, value: Any) -> Decimal:
        return round_amount(to_amount(value), self.precision)

    def _load(self, loan_id: str, expected_version: Optional[int]) -> Tuple[Loan, int]:
        """Read a loan for update, optionally pinned to the version the caller saw"""
        loan = self.ledger.get_loan(loan_id)
        if expected_version is not None and loan.version != expected_version:
            raise ConcurrentModification(
                f"Loan {loan_id} is at version {loan.version}, caller read {expected_version}",
                loan_id=loan_id
            )
        return loan, loan.version

    def _preview(self, principal: Decimal, term: RepaymentTerm, start_date: date) -> Tuple[Decimal, int]:
        schedule = schedule_for_term(principal, term, start_date, self.precision)
        return schedule[0].amount, len(schedule)

    def _apply_term(self, loan: Loan, term: Optional[RepaymentTerm]) -> None:
        """Record a term on a loan that has no schedule yet"""
        if term is None:
            return
        loan.installment_amount, loan.duration_months = self._preview(
            loan.principal_amount, term, loan.start_date
        )
        loan.repayment_method = term.method

    def _stored_term(self, loan: Loan) -> Optional[RepaymentTerm]:
        if not loan.has_terms:
            return None
        if loan.repayment_method == RepaymentMethod.FIXED_INSTALLMENT:
            return FixedInstallment(loan.installment_amount)
        return FixedDuration(loan.duration_months)

    def _apply_disbursement(
        self,
        loan: Loan,
        term: Optional[RepaymentTerm],
        now: datetime
    ) -> List[LoanInstallment]:
        """Activate an approved loan and materialize its first schedule"""
        if loan.disbursed_at is not None:
            raise AlreadyDisbursed(f"Loan {loan.id} was disbursed at {loan.disbursed_at}", loan_id=loan.id)
        _require_status(loan, "disburse", LoanStatus.APPROVED)

        term = term or self._stored_term(loan)
        if term is None:
            raise InvalidTermKind(
                "Disbursement needs an installment amount or a duration", loan_id=loan.id
            )
        schedule = schedule_for_term(loan.principal_amount, term, loan.start_date, self.precision)
        installments = installments_from_schedule(loan.id, schedule, 1, 1, now)

        loan.installment_amount = schedule[0].amount
        loan.duration_months = len(schedule)
        loan.repayment_method = term.method
        loan.status = LoanStatus.ACTIVE
        loan.disbursed_at = now
        return installments

    def _append_disburse_event(self, loan: Loan, now: datetime, acted_by: Optional[str]) -> LoanEvent:
        return self.event_log.append(
            loan_id=loan.id,
            event_type=LoanEventType.DISBURSE,
            effective_date=now.date(),
            amount_delta=loan.principal_amount,
            new_installment_amount=loan.installment_amount,
            new_duration_months=loan.duration_months,
            notes=f"Disbursed: {loan.duration_months} months @ {loan.installment_amount}/mo",
            created_by=acted_by
        )

    def _close(self, loan: Loan, installments: List[LoanInstallment], reason: str, now: datetime) -> None:
        for row in installments:
            if row.is_due:
                row.mark_skipped(reason, now)
        loan.status = LoanStatus.CLOSED

    def _notify(self, event_type: DomainEvent, loan: Loan, **extra: Any) -> None:
        if self.dispatcher is None:
            return
        self.dispatcher.publish(create_loan_event(event_type, loan, **extra))

    def _log(self, message: str, action: str, loan: Loan, acted_by: Optional[str], **extra: Any) -> None:
        log_action(
            self.logger, "info", message,
            user_id=acted_by,
            action=action,
            resource=f"loan:{loan.id}",
            extra={'status': loan.status.value, 'version': loan.version, **extra}
        )

    # Origination

    def request_loan(
        self,
        employee_id: str,
        principal: Any,
        notes: Optional[str] = None,
        *,
        start_date: Optional[date] = None,
        term: Optional[RepaymentTerm] = None,
        deduct_from_payroll: bool = True,
        requested_by: Optional[str] = None
    ) -> Loan:
        """
        Submit a loan request

        Args:
            employee_id: Borrowing employee
            principal: Amount requested
            notes: Free-text reason
            start_date: Due date of the first installment; first of next month by default
            term: Optional preview of the repayment term
            deduct_from_payroll: Whether payroll collects the installments
            requested_by: ID of user submitting the request

        Returns:
            Loan in the requested state
        """
        if self.employee_directory is not None:
            self.employee_directory.require_active(employee_id)

        now = datetime.now(timezone.utc)
        if start_date is None:
            start_date = add_months(now.date().replace(day=1), 1)

        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee_id,
            principal_amount=self._amount(principal),
            start_date=start_date,
            deduct_from_payroll=deduct_from_payroll,
            notes=notes,
            requested_by=requested_by
        )
        self._apply_term(loan, term)

        with self.storage.atomic():
            self.ledger.add_loan(loan)
            self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.NOTE,
                effective_date=now.date(),
                amount_delta=loan.principal_amount,
                notes=notes or "Loan requested",
                created_by=requested_by
            )

        self._notify(DomainEvent.LOAN_REQUESTED, loan)
        self._log(f"Loan requested for employee {employee_id}", "request", loan, requested_by,
                  principal_amount=str(loan.principal_amount))
        return loan

    def create_loan(
        self,
        employee_id: str,
        principal: Any,
        term: RepaymentTerm,
        *,
        start_date: date,
        deduct_from_payroll: bool = True,
        notes: Optional[str] = None,
        auto_disburse: bool = False,
        acted_by: Optional[str] = None,
        authorized: bool = True
    ) -> Loan:
        """Create an already approved loan on behalf of an employee, optionally disbursing it"""
        _require_authorized(authorized, "create")
        if term is None:
            raise InvalidTermKind("A loan created directly needs a repayment term")
        if self.employee_directory is not None:
            self.employee_directory.require_active(employee_id)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee_id,
            principal_amount=self._amount(principal),
            start_date=start_date,
            status=LoanStatus.APPROVED,
            deduct_from_payroll=deduct_from_payroll,
            notes=notes,
            created_by=acted_by,
            approved_by=acted_by,
            approved_at=now
        )
        self._apply_term(loan, term)

        with self.storage.atomic():
            installments = self._apply_disbursement(loan, term, now) if auto_disburse else []
            self.ledger.add_loan(loan)
            if installments:
                self.ledger.write_schedule(loan, installments)
            self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.NOTE,
                effective_date=now.date(),
                amount_delta=loan.principal_amount,
                notes=notes or "Loan created by HR",
                created_by=acted_by
            )
            if auto_disburse:
                self._append_disburse_event(loan, now, acted_by)

        self._notify(DomainEvent.LOAN_APPROVED, loan)
        if auto_disburse:
            self._notify(DomainEvent.LOAN_DISBURSED, loan)
        self._log(f"Loan created for employee {employee_id}", "create", loan, acted_by,
                  auto_disburse=auto_disburse)
        return loan

    # Approval

    def approve_loan(
        self,
        loan_id: str,
        deduct_from_payroll: bool = True,
        auto_disburse: bool = False,
        term: Optional[RepaymentTerm] = None,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> Loan:
        """
        Approve a requested loan

        With ``auto_disburse`` the loan is disbursed in the same transaction
        and comes back active.
        """
        _require_authorized(authorized, "approve")
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            _require_status(loan, "approve", LoanStatus.REQUESTED)

            loan.status = LoanStatus.APPROVED
            loan.deduct_from_payroll = deduct_from_payroll
            loan.approved_by = acted_by
            loan.approved_at = now
            if not auto_disburse:
                self._apply_term(loan, term)

            self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.NOTE,
                effective_date=now.date(),
                notes="Loan approved",
                created_by=acted_by
            )
            if auto_disburse:
                installments = self._apply_disbursement(loan, term, now)
                self.ledger.write_schedule(loan, installments)
            self.ledger.save_loan(loan, version)
            if auto_disburse:
                self._append_disburse_event(loan, now, acted_by)

        self._notify(DomainEvent.LOAN_APPROVED, loan)
        if auto_disburse:
            self._notify(DomainEvent.LOAN_DISBURSED, loan)
        self._log(f"Loan {loan.id} approved", "approve", loan, acted_by, auto_disburse=auto_disburse)
        return loan

    def reject_loan(
        self,
        loan_id: str,
        reason: Optional[str] = None,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> Loan:
        """Reject a requested loan"""
        _require_authorized(authorized, "reject")
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            _require_status(loan, "reject", LoanStatus.REQUESTED)

            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason
            self.ledger.save_loan(loan, version)
            self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.NOTE,
                effective_date=now.date(),
                notes=f"Loan rejected: {reason}" if reason else "Loan rejected",
                created_by=acted_by
            )

        self._notify(DomainEvent.LOAN_REJECTED, loan, reason=reason)
        self._log(f"Loan {loan.id} rejected", "reject", loan, acted_by)
        return loan

    def disburse_loan(
        self,
        loan_id: str,
        term: Optional[RepaymentTerm] = None,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> DisbursementResult:
        """
        Release an approved loan and build its installment schedule

        Args:
            loan_id: Loan to disburse
            term: FixedInstallment or FixedDuration; the term recorded on the
                loan is used when omitted

        Returns:
            DisbursementResult with the active loan and its installments
        """
        _require_authorized(authorized, "disburse")
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            installments = self._apply_disbursement(loan, term, now)
            self.ledger.write_schedule(loan, installments)
            self.ledger.save_loan(loan, version)
            event = self._append_disburse_event(loan, now, acted_by)

        self._notify(DomainEvent.LOAN_DISBURSED, loan)
        self._log(f"Loan {loan.id} disbursed", "disburse", loan, acted_by,
                  installments=len(installments))
        return DisbursementResult(loan=loan, installments=installments, event=event)

    # Repayment

    def make_ad_hoc_payment(
        self,
        loan_id: str,
        amount: Any,
        reschedule_option: Union[RescheduleOption, str],
        *,
        notes: Optional[str] = None,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> AdHocPaymentResult:
        """
        Apply an out-of-schedule payment to an active loan

        Args:
            loan_id: Loan being repaid
            amount: Payment, 0 < amount <= outstanding balance
            reschedule_option: How the remaining schedule absorbs the payment

        Returns:
            AdHocPaymentResult; ``leftover_unapplied`` is the part of an
            apply_next payment that did not cover a whole installment
        """
        _require_authorized(authorized, "take payments on")
        option = RescheduleOption(reschedule_option)
        amount = self._amount(amount)
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            _require_status(loan, "take a payment on", LoanStatus.ACTIVE)

            installments = self.ledger.get_installments(loan.id)
            balance = self.ledger.outstanding_balance(loan, installments)
            if amount <= 0 or amount > balance:
                raise InvalidAmount(
                    f"Payment {amount} must be positive and at most the outstanding balance {balance}",
                    loan_id=loan.id
                )

            if option == RescheduleOption.APPLY_NEXT:
                leftover = self._apply_to_next_due(installments, amount, now)
            else:
                leftover = Decimal('0')
                self._reschedule_after_payment(loan, installments, amount, balance - amount, option, now)

            closed = self.ledger.outstanding_balance(loan, installments) <= 0
            if closed:
                self._close(loan, installments, SKIP_REASON_CLOSED_BY_PAYMENT, now)

            self.ledger.write_schedule(loan, installments)
            self.ledger.save_loan(loan, version)
            event = self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.MANUAL_PAYMENT,
                effective_date=now.date(),
                amount_delta=amount,
                notes=notes or f"Ad-hoc payment ({option.value})",
                created_by=acted_by
            )

        applied = amount - leftover
        self._notify(DomainEvent.LOAN_PAYMENT_MADE, loan, amount=str(amount),
                     reschedule_option=option.value, leftover_unapplied=str(leftover))
        if closed:
            self._notify(DomainEvent.LOAN_CLOSED, loan)
        self._log(f"Ad-hoc payment of {amount} on loan {loan.id}", "ad_hoc_payment", loan, acted_by,
                  amount=str(amount), reschedule_option=option.value, leftover=str(leftover))
        return AdHocPaymentResult(
            loan=loan,
            installments=_ordered(installments),
            applied_amount=applied,
            leftover_unapplied=leftover,
            event=event
        )

    def _apply_to_next_due(
        self,
        installments: List[LoanInstallment],
        amount: Decimal,
        now: datetime
    ) -> Decimal:
        """Settle whole due installments in order; returns what is left over"""
        due_rows = [row for row in _ordered(installments) if row.is_due]
        remaining = amount
        for row in due_rows:
            if row.amount > remaining:
                break
            row.mark_paid(PaymentMethod.MANUAL, now)
            remaining -= row.amount
        return remaining

    def _reschedule_after_payment(
        self,
        loan: Loan,
        installments: List[LoanInstallment],
        amount: Decimal,
        new_balance: Decimal,
        option: RescheduleOption,
        now: datetime
    ) -> None:
        """
        Record the payment as a paid row and regenerate the due rows.

        Replaced due rows are retired as superseded skips; the payment row
        and the new schedule are appended after them.
        """
        ordered = _ordered(installments)
        due_rows = [row for row in ordered if row.is_due]
        paid_dates = [row.due_date for row in ordered if row.is_paid]
        forward_start = max([due_rows[0].due_date] + paid_dates)
        version = next_schedule_version(ordered)
        reason = SKIP_REASON_CLOSED_BY_PAYMENT if new_balance <= 0 else SKIP_REASON_RESCHEDULED

        for row in due_rows:
            row.supersede(version, reason, now)

        next_number = len(ordered) + 1
        installments.append(LoanInstallment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            installment_number=next_number,
            due_date=forward_start,
            amount=amount,
            status=InstallmentStatus.PAID,
            paid_at=now,
            paid_method=PaymentMethod.MANUAL,
            schedule_version=version,
            is_ad_hoc_payment=True
        ))
        if new_balance <= 0:
            return

        if option == RescheduleOption.REDUCE_DURATION:
            schedule = generate_schedule(new_balance, loan.installment_amount, forward_start, self.precision)
        else:
            # Never spread the balance thinner than one minor unit per month
            count = min(len(due_rows), int(new_balance / minor_unit(self.precision)))
            schedule = generate_schedule_by_duration(new_balance, count, forward_start, self.precision)
            loan.installment_amount = schedule[0].amount

        installments.extend(installments_from_schedule(loan.id, schedule, next_number + 1, version, now))
        loan.duration_months = schedule_duration(installments)

    def restructure_loan(
        self,
        loan_id: str,
        effective_date: date,
        term: RepaymentTerm,
        top_up_amount: Any = Decimal('0'),
        notes: Optional[str] = None,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> RestructureResult:
        """
        Recompute the remaining schedule of an active loan

        Args:
            loan_id: Loan to restructure
            effective_date: Due date of the first regenerated installment
            term: FixedInstallment or FixedDuration for the new schedule
            top_up_amount: Additional funds released to the employee (>= 0)
            notes: Free-text notes for the event

        Returns:
            RestructureResult with the updated loan, all installments and the event
        """
        _require_authorized(authorized, "restructure")
        top_up = self._amount(top_up_amount if top_up_amount is not None else Decimal('0'))
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            _require_status(loan, "restructure", LoanStatus.ACTIVE)

            installments = self.ledger.get_installments(loan.id)
            paid_dates = [row.due_date for row in installments if row.is_paid]
            if paid_dates and effective_date < max(paid_dates):
                raise InvalidRestructure(
                    f"Effective date {effective_date} precedes settled installments",
                    loan_id=loan.id
                )

            balance = self.ledger.outstanding_balance(loan, installments)
            plan = restructure(balance, top_up, term, effective_date, self.precision)

            version_no = next_schedule_version(installments)
            for row in installments:
                if row.is_due:
                    row.supersede(version_no, SKIP_REASON_RESTRUCTURED, now)
            installments.extend(installments_from_schedule(
                loan.id, plan.schedule, len(installments) + 1, version_no, now
            ))

            loan.principal_amount = loan.principal_amount + top_up
            loan.installment_amount = plan.installment_amount
            loan.duration_months = schedule_duration(installments)
            loan.repayment_method = term.method

            self.ledger.write_schedule(loan, installments)
            self.ledger.save_loan(loan, version)
            event = self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.RESTRUCTURE,
                effective_date=effective_date,
                amount_delta=top_up if top_up > 0 else None,
                new_installment_amount=plan.installment_amount,
                new_duration_months=loan.duration_months,
                notes=notes or f"Restructured: {plan.duration_months} months @ {plan.installment_amount}/mo",
                created_by=acted_by
            )

        self._notify(DomainEvent.LOAN_RESTRUCTURED, loan, top_up_amount=str(top_up),
                     effective_date=effective_date.isoformat())
        self._log(f"Loan {loan.id} restructured", "restructure", loan, acted_by,
                  top_up_amount=str(top_up), new_principal=str(plan.new_principal))
        return RestructureResult(loan=loan, installments=_ordered(installments), event=event)

    def skip_installment(
        self,
        loan_id: str,
        installment_id: str,
        reason: Optional[str] = None,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> SkipResult:
        """
        Defer one due installment to the end of the schedule

        The skipped amount is re-added as a new last installment one month
        after the latest scheduled due date.
        """
        _require_authorized(authorized, "skip installments of")
        reason = reason or self.default_skip_reason
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            target = self.ledger.get_installment(installment_id)
            if target.loan_id != loan.id:
                raise NotBelongsToLoan(
                    f"Installment {installment_id} does not belong to loan {loan.id}", loan_id=loan.id
                )
            if not target.is_due:
                raise NotDue(
                    f"Installment #{target.installment_number} is {target.status.value}", loan_id=loan.id
                )
            _require_status(loan, "skip an installment of", LoanStatus.ACTIVE)

            installments = self.ledger.get_installments(loan.id)
            target = next(row for row in installments if row.id == installment_id)
            last_due_date = max(row.due_date for row in installments if not row.is_skipped)

            target.mark_skipped(reason, now)
            replacement = LoanInstallment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=len(installments) + 1,
                due_date=add_months(last_due_date, 1),
                amount=target.amount,
                rescheduled_from_installment_id=target.id,
                schedule_version=next_schedule_version(installments)
            )
            installments.append(replacement)
            loan.duration_months = schedule_duration(installments)

            self.ledger.write_schedule(loan, installments)
            self.ledger.save_loan(loan, version)
            event = self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.SKIP_INSTALLMENT,
                effective_date=target.due_date,
                affected_installment_id=target.id,
                notes=reason,
                created_by=acted_by
            )

        self._notify(DomainEvent.LOAN_INSTALLMENT_SKIPPED, loan, installment_id=target.id,
                     replacement_id=replacement.id)
        self._log(f"Installment #{target.installment_number} of loan {loan.id} skipped",
                  "skip_installment", loan, acted_by, installment_id=target.id)
        return SkipResult(loan=loan, installments=_ordered(installments), event=event)

    # Administration

    def cancel_loan(
        self,
        loan_id: str,
        reason: Optional[str] = None,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> Loan:
        """Withdraw a loan that has not reached a terminal state"""
        _require_authorized(authorized, "cancel")
        now = datetime.now(timezone.utc)

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            if loan.is_terminal:
                raise InvalidTransition(
                    f"Cannot cancel a loan that is {loan.status.value}", loan_id=loan.id
                )

            installments = self.ledger.get_installments(loan.id)
            for row in installments:
                if row.is_due:
                    row.mark_skipped(SKIP_REASON_CANCELLED, now)
            loan.status = LoanStatus.CANCELLED

            self.ledger.write_schedule(loan, installments)
            self.ledger.save_loan(loan, version)
            self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.NOTE,
                effective_date=now.date(),
                notes=f"Loan cancelled: {reason}" if reason else "Loan cancelled",
                created_by=acted_by
            )

        self._notify(DomainEvent.LOAN_CANCELLED, loan, reason=reason)
        self._log(f"Loan {loan.id} cancelled", "cancel", loan, acted_by)
        return loan

    def delete_loan(
        self,
        loan_id: str,
        *,
        acted_by: Optional[str] = None,
        authorized: bool = True,
        expected_version: Optional[int] = None
    ) -> None:
        """Remove a loan with its installments and events; closed loans are protected"""
        _require_authorized(authorized, "delete")

        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            if loan.status == LoanStatus.CLOSED:
                raise TerminalStateProtected(
                    f"Loan {loan.id} is closed and kept as an audit record", loan_id=loan.id
                )
            removed = self.ledger.delete_loan(loan, version)
            purged = self.event_log._purge_loan(loan.id)

        self._notify(DomainEvent.LOAN_DELETED, loan)
        self._log(f"Loan {loan.id} deleted", "delete", loan, acted_by,
                  installments_removed=removed, events_removed=purged)

    def add_note(
        self,
        loan_id: str,
        notes: str,
        *,
        acted_by: Optional[str] = None,
        expected_version: Optional[int] = None
    ) -> LoanEvent:
        """Attach a free-text note to a loan's history"""
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            loan, version = self._load(loan_id, expected_version)
            self.ledger.save_loan(loan, version)
            event = self.event_log.append(
                loan_id=loan.id,
                event_type=LoanEventType.NOTE,
                effective_date=now.date(),
                notes=notes,
                created_by=acted_by
            )

        self._notify(DomainEvent.LOAN_NOTE_ADDED, loan, notes=notes)
        self._log(f"Note added to loan {loan.id}", "add_note", loan, acted_by)
        return event

    # Reads

    def get_loan(self, loan_id: str) -> Loan:
        return self.ledger.get_loan(loan_id)

    def list_loans(
        self,
        employee_id: Optional[str] = None,
        status: Optional[LoanStatus] = None
    ) -> List[Loan]:
        return self.ledger.list_loans(employee_id=employee_id, status=status)

    def get_installments(self, loan_id: str) -> List[LoanInstallment]:
        self.ledger.get_loan(loan_id)
        return self.ledger.get_installments(loan_id)

    def get_events(self, loan_id: str) -> List[LoanEvent]:
        """Loan history, newest first"""
        self.ledger.get_loan(loan_id)
        return self.event_log.list_for_loan(loan_id)

    def get_outstanding_balance(self, loan_id: str) -> Decimal:
        return self.ledger.outstanding_balance(self.ledger.get_loan(loan_id))
