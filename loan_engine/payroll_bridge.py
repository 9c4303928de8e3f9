"""
Payroll Deduction Bridge Module

The touchpoint between payroll runs and the loan ledger: lists the
installments a pay period should deduct and records that payroll
collected them.
"""

from datetime import datetime, timezone, date
from typing import List, Optional, Iterable, Tuple

from .storage import StorageInterface
from .amortization import DEFAULT_PRECISION
from .loans import Loan, LoanInstallment, LoanLedger, LoanStatus, PaymentMethod
from .events import EventDispatcher, DomainEvent, create_loan_event
from .logging_config import get_logger, log_action


class PayrollDeductionBridge:
    """
    Installment deductions for payroll runs
    """

    def __init__(
        self,
        storage: StorageInterface,
        dispatcher: Optional[EventDispatcher] = None,
        precision: int = DEFAULT_PRECISION
    ):
        self.storage = storage
        self.ledger = LoanLedger(storage, precision)
        self.dispatcher = dispatcher
        self.logger = get_logger("loan_engine.payroll")

    def due_installments(self, employee_id: str, period_end: date) -> List[LoanInstallment]:
        """
        Installments payroll should deduct for a pay period

        Args:
            employee_id: Employee being paid
            period_end: Last day of the pay period (inclusive)

        Returns:
            Due installments of active payroll-deducted loans, oldest first
        """
        installments = []
        for loan in self.ledger.list_loans(employee_id=employee_id, status=LoanStatus.ACTIVE):
            if not loan.deduct_from_payroll:
                continue
            installments.extend(
                row for row in self.ledger.get_installments(loan.id)
                if row.is_due and row.due_date <= period_end
            )
        installments.sort(key=lambda row: (row.due_date, row.installment_number))
        return installments

    def _confirm(
        self,
        installment_id: str,
        payroll_run_id: str,
        now: datetime
    ) -> Tuple[LoanInstallment, Loan, bool]:
        row = self.ledger.get_installment(installment_id)
        loan = self.ledger.get_loan(row.loan_id)
        version = loan.version

        installments = self.ledger.get_installments(loan.id)
        target = next(item for item in installments if item.id == installment_id)
        target.mark_paid(PaymentMethod.PAYROLL, now, payroll_run_id)

        closed = self.ledger.outstanding_balance(loan, installments) <= 0
        if closed:
            loan.status = LoanStatus.CLOSED

        self.ledger.write_schedule(loan, installments)
        self.ledger.save_loan(loan, version)
        return target, loan, closed

    def _announce(self, installment: LoanInstallment, loan: Loan, closed: bool, payroll_run_id: str) -> None:
        log_action(
            self.logger, "info",
            f"Installment #{installment.installment_number} of loan {loan.id} paid by payroll",
            action="payroll_confirm",
            resource=f"loan:{loan.id}",
            extra={'installment_id': installment.id, 'payroll_run_id': payroll_run_id, 'closed': closed}
        )
        if self.dispatcher is None:
            return
        self.dispatcher.publish(create_loan_event(
            DomainEvent.LOAN_INSTALLMENT_PAID_BY_PAYROLL, loan,
            installment_id=installment.id,
            amount=str(installment.amount),
            payroll_run_id=payroll_run_id
        ))
        if closed:
            self.dispatcher.publish(create_loan_event(DomainEvent.LOAN_CLOSED, loan))

    def confirm_paid(self, installment_id: str, payroll_run_id: str) -> LoanInstallment:
        """
        Record that payroll collected an installment

        Raises AlreadyPaid if the installment is not due. Collecting the last
        due installment closes the loan.
        """
        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            installment, loan, closed = self._confirm(installment_id, payroll_run_id, now)

        self._announce(installment, loan, closed, payroll_run_id)
        return installment

    def confirm_paid_many(self, installment_ids: Iterable[str], payroll_run_id: str) -> List[LoanInstallment]:
        """Confirm a whole payroll run's deductions; all succeed or none do"""
        now = datetime.now(timezone.utc)
        confirmed = []
        with self.storage.atomic():
            for installment_id in installment_ids:
                confirmed.append(self._confirm(installment_id, payroll_run_id, now))

        for installment, loan, closed in confirmed:
            self._announce(installment, loan, closed, payroll_run_id)
        return [installment for installment, _, _ in confirmed]
