"""
Test suite for the payroll deduction bridge
"""

import pytest
from decimal import Decimal
from datetime import date
from unittest.mock import Mock

from loan_engine.storage import InMemoryStorage
from loan_engine.amortization import FixedInstallment, FixedDuration
from loan_engine.events import EventDispatcher, DomainEvent
from loan_engine.lifecycle import LoanLifecycleController
from loan_engine.payroll_bridge import PayrollDeductionBridge
from loan_engine.loans import LoanStatus, InstallmentStatus, PaymentMethod
from loan_engine.exceptions import AlreadyPaid, InstallmentNotFound


class TestPayrollDeductionBridge:
    """Test payroll listing and confirmation of deductions"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.dispatcher = EventDispatcher()
        self.controller = LoanLifecycleController(self.storage, dispatcher=self.dispatcher)
        self.bridge = PayrollDeductionBridge(self.storage, self.dispatcher)
        self.loan = self.controller.create_loan(
            "E1", "1200", FixedInstallment(Decimal("100")),
            start_date=date(2025, 1, 31), auto_disburse=True
        )

    def test_due_installments_up_to_period_end(self):
        """Test only installments due by the period end are listed"""
        rows = self.bridge.due_installments("E1", date(2025, 2, 28))

        assert [row.installment_number for row in rows] == [1, 2]
        assert rows[1].due_date == date(2025, 2, 28)

    def test_due_installments_across_loans(self):
        """Test several loans are merged oldest first"""
        second = self.controller.create_loan(
            "E1", "300", FixedDuration(3), start_date=date(2025, 1, 15), auto_disburse=True
        )
        rows = self.bridge.due_installments("E1", date(2025, 1, 31))

        assert [row.loan_id for row in rows] == [second.id, self.loan.id]

    def test_excludes_loans_outside_payroll(self):
        self.controller.create_loan(
            "E2", "300", FixedDuration(3), start_date=date(2025, 1, 15),
            deduct_from_payroll=False, auto_disburse=True
        )

        assert self.bridge.due_installments("E2", date(2025, 12, 31)) == []

    def test_excludes_inactive_loans(self):
        self.controller.cancel_loan(self.loan.id)

        assert self.bridge.due_installments("E1", date(2025, 12, 31)) == []

    def test_confirm_paid(self):
        """Test a confirmed deduction settles the row and bumps the loan version"""
        row = self.bridge.due_installments("E1", date(2025, 1, 31))[0]
        listener = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_INSTALLMENT_PAID_BY_PAYROLL, listener)

        paid = self.bridge.confirm_paid(row.id, "run-2025-01")

        assert paid.status == InstallmentStatus.PAID
        assert paid.paid_method == PaymentMethod.PAYROLL
        assert paid.paid_in_payroll_run_id == "run-2025-01"
        assert self.controller.get_loan(self.loan.id).version == 1
        assert self.controller.get_outstanding_balance(self.loan.id) == Decimal("1100.00")
        assert listener.call_args[0][0].data["payroll_run_id"] == "run-2025-01"

    def test_confirm_twice(self):
        row = self.bridge.due_installments("E1", date(2025, 1, 31))[0]
        self.bridge.confirm_paid(row.id, "run-1")

        with pytest.raises(AlreadyPaid):
            self.bridge.confirm_paid(row.id, "run-2")

    def test_confirm_unknown(self):
        with pytest.raises(InstallmentNotFound):
            self.bridge.confirm_paid("missing", "run-1")

    def test_last_deduction_closes_loan(self):
        listener = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CLOSED, listener)
        rows = self.bridge.due_installments("E1", date(2025, 12, 31))

        self.bridge.confirm_paid_many([row.id for row in rows], "run-final")

        assert self.controller.get_loan(self.loan.id).status == LoanStatus.CLOSED
        assert self.controller.get_outstanding_balance(self.loan.id) == Decimal("0")
        listener.assert_called_once()

    def test_run_confirms_several_rows_of_one_loan(self):
        rows = self.bridge.due_installments("E1", date(2025, 3, 31))

        confirmed = self.bridge.confirm_paid_many([row.id for row in rows], "run-q1")

        assert len(confirmed) == 3
        assert self.controller.get_loan(self.loan.id).version == 3
        assert self.controller.ledger.verify_schedule(self.loan.id) == []

    def test_run_is_all_or_nothing(self):
        """Test one bad row aborts the whole payroll run"""
        rows = self.bridge.due_installments("E1", date(2025, 2, 28))
        self.bridge.confirm_paid(rows[1].id, "run-early")

        with pytest.raises(AlreadyPaid):
            self.bridge.confirm_paid_many([rows[0].id, rows[1].id], "run-late")

        assert self.controller.ledger.get_installment(rows[0].id).is_due
        assert self.controller.get_loan(self.loan.id).version == 1
