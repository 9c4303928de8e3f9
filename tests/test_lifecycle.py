"""
Test suite for the loan lifecycle controller

Covers origination, approval, disbursement, ad-hoc payments, restructures,
skips, cancellation and deletion, and checks the ledger invariants after
every mutation.
"""

import pytest
import threading
from decimal import Decimal
from datetime import date, datetime, timezone
from unittest.mock import Mock

from loan_engine.storage import InMemoryStorage
from loan_engine.amortization import FixedInstallment, FixedDuration, RepaymentMethod
from loan_engine.employees import EmployeeRecord, InMemoryEmployeeDirectory
from loan_engine.events import EventDispatcher, DomainEvent
from loan_engine.loans import LoanStatus, InstallmentStatus, PaymentMethod
from loan_engine.loan_events import LoanEventType
from loan_engine.lifecycle import (
    LoanLifecycleController, RescheduleOption,
    SKIP_REASON_CLOSED_BY_PAYMENT, SKIP_REASON_CANCELLED, SKIP_REASON_RESCHEDULED,
    SKIP_REASON_RESTRUCTURED
)
from loan_engine.exceptions import (
    InvalidAmount, InvalidTermKind, InvalidRestructure, InvalidTransition,
    AlreadyDisbursed, NotDue, TerminalStateProtected, ConcurrentModification,
    LoanNotFound, InstallmentNotFound, NotBelongsToLoan, EmployeeNotFound
)


START = date(2025, 1, 15)


class LifecycleTestBase:
    """Shared controller setup"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.directory = InMemoryEmployeeDirectory([
            EmployeeRecord("E1", "Alice Employee", "USD"),
            EmployeeRecord("E2", "Bob Employee", "USD"),
            EmployeeRecord("E9", "Former Employee", "USD", is_active=False),
        ])
        self.dispatcher = EventDispatcher()
        self.controller = LoanLifecycleController(
            self.storage,
            employee_directory=self.directory,
            dispatcher=self.dispatcher
        )

    def active_loan(self, principal="1200", term=None, employee_id="E1"):
        """1200 repaid at 100 per month from START unless told otherwise"""
        return self.controller.create_loan(
            employee_id,
            principal,
            term or FixedInstallment(Decimal("100")),
            start_date=START,
            auto_disburse=True,
            acted_by="hr-1"
        )

    def due_rows(self, loan_id):
        return [row for row in self.controller.get_installments(loan_id) if row.is_due]

    def assert_consistent(self, loan_id):
        assert self.controller.ledger.verify_schedule(loan_id) == []
        assert self.controller.event_log.verify_integrity(loan_id)['valid']


class TestOrigination(LifecycleTestBase):
    """Test loan requests and direct creation"""

    def test_request_loan(self):
        """Test a request is stored in the requested state"""
        loan = self.controller.request_loan("E1", "1500", "School fees", requested_by="E1")

        assert loan.status == LoanStatus.REQUESTED
        assert loan.principal_amount == Decimal("1500.00")
        assert loan.version == 0
        assert loan.installment_amount is None
        assert self.controller.get_loan(loan.id).notes == "School fees"
        assert self.controller.get_installments(loan.id) == []

    def test_request_defaults_start_to_first_of_next_month(self):
        loan = self.controller.request_loan("E1", "1500")

        assert loan.start_date.day == 1
        assert loan.start_date > datetime.now(timezone.utc).date()

    def test_request_with_term_preview(self):
        """Test a requested term is recorded without creating installments"""
        loan = self.controller.request_loan("E1", "1000", term=FixedDuration(3), start_date=START)

        assert loan.installment_amount == Decimal("333.33")
        assert loan.duration_months == 3
        assert loan.repayment_method == RepaymentMethod.FIXED_DURATION
        assert self.controller.get_installments(loan.id) == []

    def test_unknown_or_inactive_employee(self):
        """Test borrowers must be active employees"""
        with pytest.raises(EmployeeNotFound):
            self.controller.request_loan("E404", "1000")
        with pytest.raises(EmployeeNotFound):
            self.controller.request_loan("E9", "1000")

    def test_non_positive_principal(self):
        with pytest.raises(InvalidAmount):
            self.controller.request_loan("E1", "0")

    def test_float_principal_rejected(self):
        with pytest.raises(InvalidAmount):
            self.controller.request_loan("E1", 1000.0)

    def test_create_loan_with_auto_disburse(self):
        """Test direct creation builds the twelve-month schedule"""
        loan = self.active_loan()

        assert loan.status == LoanStatus.ACTIVE
        assert loan.installment_amount == Decimal("100.00")
        assert loan.duration_months == 12
        assert loan.approved_by == "hr-1"

        installments = self.controller.get_installments(loan.id)
        assert [row.installment_number for row in installments] == list(range(1, 13))
        assert all(row.amount == Decimal("100.00") for row in installments)
        assert installments[0].due_date == START
        assert installments[-1].due_date == date(2025, 12, 15)
        self.assert_consistent(loan.id)

    def test_create_loan_without_disbursing(self):
        loan = self.controller.create_loan("E1", "600", FixedDuration(6), start_date=START)

        assert loan.status == LoanStatus.APPROVED
        assert loan.installment_amount == Decimal("100.00")
        assert self.controller.get_installments(loan.id) == []

    def test_create_loan_needs_term_and_authorization(self):
        with pytest.raises(InvalidTermKind):
            self.controller.create_loan("E1", "600", None, start_date=START)
        with pytest.raises(PermissionError):
            self.controller.create_loan("E1", "600", FixedDuration(6), start_date=START, authorized=False)

    def test_events_are_newest_first(self):
        """Test creation writes a note then a disburse event"""
        loan = self.active_loan()
        events = self.controller.get_events(loan.id)

        assert [event.event_type for event in events] == [LoanEventType.DISBURSE, LoanEventType.NOTE]
        assert [event.sequence for event in events] == [2, 1]
        assert events[0].amount_delta == Decimal("1200.00")
        assert events[0].new_duration_months == 12


class TestApprovalAndDisbursement(LifecycleTestBase):
    """Test approve, reject and disburse transitions"""

    def test_request_approve_disburse(self):
        """Test the full path to an active loan"""
        loan = self.controller.request_loan("E1", "1000", start_date=START)
        approved = self.controller.approve_loan(loan.id, acted_by="hr-1")

        assert approved.status == LoanStatus.APPROVED
        assert approved.approved_by == "hr-1"
        assert approved.version == 1

        result = self.controller.disburse_loan(loan.id, FixedDuration(3), acted_by="hr-1")

        assert result.loan.status == LoanStatus.ACTIVE
        assert result.loan.version == 2
        assert result.loan.disbursed_at is not None
        assert [row.amount for row in result.installments] == [
            Decimal("333.33"), Decimal("333.33"), Decimal("333.34")
        ]
        assert result.event.event_type == LoanEventType.DISBURSE
        self.assert_consistent(loan.id)

    def test_disburse_uses_recorded_term(self):
        """Test the term previewed at request time drives disbursement"""
        loan = self.controller.request_loan("E1", "1000", term=FixedDuration(3), start_date=START)
        self.controller.approve_loan(loan.id)

        result = self.controller.disburse_loan(loan.id)

        assert len(result.installments) == 3
        assert result.installments[-1].amount == Decimal("333.34")

    def test_disburse_without_any_term(self):
        loan = self.controller.request_loan("E1", "1000", start_date=START)
        self.controller.approve_loan(loan.id)

        with pytest.raises(InvalidTermKind):
            self.controller.disburse_loan(loan.id)

    def test_double_disburse(self):
        """Test a second disbursement fails and leaves the schedule alone"""
        loan = self.controller.request_loan("E1", "1000", start_date=START)
        self.controller.approve_loan(loan.id)
        first = self.controller.disburse_loan(loan.id, FixedDuration(3))

        with pytest.raises(AlreadyDisbursed):
            self.controller.disburse_loan(loan.id, FixedDuration(5))

        installments = self.controller.get_installments(loan.id)
        assert [row.id for row in installments] == [row.id for row in first.installments]
        assert self.controller.get_loan(loan.id).version == 2

    def test_disburse_requires_approval(self):
        loan = self.controller.request_loan("E1", "1000", start_date=START)

        with pytest.raises(InvalidTransition):
            self.controller.disburse_loan(loan.id, FixedDuration(3))

    def test_approve_with_auto_disburse(self):
        loan = self.controller.request_loan("E1", "1200", start_date=START)
        approved = self.controller.approve_loan(
            loan.id, auto_disburse=True, term=FixedInstallment(Decimal("100"))
        )

        assert approved.status == LoanStatus.ACTIVE
        assert approved.version == 1
        assert len(self.controller.get_installments(loan.id)) == 12
        self.assert_consistent(loan.id)

    def test_failed_approval_rolls_back(self):
        """Test nothing from a failed approval is committed"""
        loan = self.controller.request_loan("E1", "1200", start_date=START)

        with pytest.raises(InvalidTermKind):
            self.controller.approve_loan(loan.id, auto_disburse=True)

        stored = self.controller.get_loan(loan.id)
        assert stored.status == LoanStatus.REQUESTED
        assert stored.version == 0
        assert len(self.controller.get_events(loan.id)) == 1

    def test_reject(self):
        loan = self.controller.request_loan("E1", "1000")
        rejected = self.controller.reject_loan(loan.id, "Exceeds policy limit")

        assert rejected.status == LoanStatus.REJECTED
        assert rejected.rejection_reason == "Exceeds policy limit"
        with pytest.raises(InvalidTransition):
            self.controller.approve_loan(loan.id)

    def test_unauthorized_approval(self):
        loan = self.controller.request_loan("E1", "1000")

        with pytest.raises(PermissionError):
            self.controller.approve_loan(loan.id, authorized=False)
        assert self.controller.get_loan(loan.id).status == LoanStatus.REQUESTED

    def test_stale_expected_version(self):
        """Test a caller pinned to an old version is refused"""
        loan = self.controller.request_loan("E1", "1000")
        self.controller.approve_loan(loan.id, expected_version=0)

        with pytest.raises(ConcurrentModification):
            self.controller.disburse_loan(loan.id, FixedDuration(3), expected_version=0)

    def test_missing_loan(self):
        with pytest.raises(LoanNotFound):
            self.controller.approve_loan("no-such-loan")


class TestAdHocPayments(LifecycleTestBase):
    """Test out-of-schedule payments"""

    def test_reduce_duration(self):
        """Test paying 500 on 1200 at 100/month leaves seven installments of 100"""
        loan = self.active_loan()
        result = self.controller.make_ad_hoc_payment(loan.id, "500", RescheduleOption.REDUCE_DURATION)

        due = [row for row in result.installments if row.is_due]
        assert len(due) == 7
        assert all(row.amount == Decimal("100.00") for row in due)
        assert result.loan.duration_months == 7
        assert result.loan.installment_amount == Decimal("100.00")
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("700.00")
        assert result.applied_amount == Decimal("500.00")
        assert result.leftover_unapplied == Decimal("0")

        payment_rows = [row for row in result.installments if row.is_ad_hoc_payment]
        assert len(payment_rows) == 1
        assert payment_rows[0].amount == Decimal("500.00")
        assert payment_rows[0].paid_method == PaymentMethod.MANUAL

        retired = [row for row in result.installments if row.is_superseded]
        assert len(retired) == 12
        assert all(row.skipped_reason == SKIP_REASON_RESCHEDULED for row in retired)
        assert all(row.superseded_in_version == 2 for row in retired)
        self.assert_consistent(loan.id)

    def test_reduce_amount(self):
        """Test the remaining months are kept and the installment shrinks"""
        loan = self.active_loan()
        result = self.controller.make_ad_hoc_payment(loan.id, "600", "reduce_amount")

        due = [row for row in result.installments if row.is_due]
        assert len(due) == 12
        assert all(row.amount == Decimal("50.00") for row in due)
        assert result.loan.installment_amount == Decimal("50.00")
        assert result.loan.duration_months == 12
        self.assert_consistent(loan.id)

    def test_apply_next(self):
        """Test whole installments are settled and the rest reported"""
        loan = self.active_loan()
        result = self.controller.make_ad_hoc_payment(loan.id, "250", RescheduleOption.APPLY_NEXT)

        paid = [row for row in result.installments if row.is_paid]
        assert [row.installment_number for row in paid] == [1, 2]
        assert result.applied_amount == Decimal("200.00")
        assert result.leftover_unapplied == Decimal("50.00")
        assert result.event.amount_delta == Decimal("250.00")
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("1000.00")
        self.assert_consistent(loan.id)

    def test_apply_next_below_one_installment(self):
        """Test a payment short of the next installment is handed back whole"""
        loan = self.active_loan()
        result = self.controller.make_ad_hoc_payment(loan.id, "50", RescheduleOption.APPLY_NEXT)

        assert result.applied_amount == Decimal("0")
        assert result.leftover_unapplied == Decimal("50.00")
        assert len(self.due_rows(loan.id)) == 12
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("1200.00")
        assert result.loan.version == 1

        event = self.controller.get_events(loan.id)[0]
        assert event.event_type == LoanEventType.MANUAL_PAYMENT
        assert event.amount_delta == Decimal("50.00")
        self.assert_consistent(loan.id)

    def test_full_payment_closes_loan(self):
        """Test paying the balance closes the loan with nothing left due"""
        loan = self.active_loan()
        listener = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_CLOSED, listener)

        result = self.controller.make_ad_hoc_payment(loan.id, "1200", RescheduleOption.REDUCE_DURATION)

        assert result.loan.status == LoanStatus.CLOSED
        assert self.due_rows(loan.id) == []
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("0")
        retired = [row for row in result.installments if row.is_skipped]
        assert all(row.skipped_reason == SKIP_REASON_CLOSED_BY_PAYMENT for row in retired)
        listener.assert_called_once()

    def test_full_payment_by_apply_next(self):
        loan = self.active_loan()
        result = self.controller.make_ad_hoc_payment(loan.id, "1200", RescheduleOption.APPLY_NEXT)

        assert result.loan.status == LoanStatus.CLOSED
        assert all(row.is_paid for row in result.installments)
        assert result.leftover_unapplied == Decimal("0")

    def test_payment_bounds(self):
        """Test zero and over-balance payments"""
        loan = self.active_loan()

        with pytest.raises(InvalidAmount):
            self.controller.make_ad_hoc_payment(loan.id, "0", RescheduleOption.REDUCE_DURATION)
        with pytest.raises(InvalidAmount):
            self.controller.make_ad_hoc_payment(loan.id, "1200.01", RescheduleOption.REDUCE_DURATION)
        assert self.controller.get_loan(loan.id).version == 0

    def test_payment_on_inactive_loan(self):
        loan = self.controller.request_loan("E1", "1000")

        with pytest.raises(InvalidTransition):
            self.controller.make_ad_hoc_payment(loan.id, "100", RescheduleOption.APPLY_NEXT)

    def test_repeated_payments_keep_invariants(self):
        """Test successive reschedules keep numbering dense and totals exact"""
        loan = self.active_loan()
        self.controller.make_ad_hoc_payment(loan.id, "150", RescheduleOption.REDUCE_DURATION)
        self.controller.make_ad_hoc_payment(loan.id, "100", RescheduleOption.APPLY_NEXT)
        result = self.controller.make_ad_hoc_payment(loan.id, "333.33", RescheduleOption.REDUCE_AMOUNT)

        numbers = [row.installment_number for row in result.installments]
        assert numbers == list(range(1, len(numbers) + 1))
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("616.67")
        self.assert_consistent(loan.id)


class TestRestructure(LifecycleTestBase):
    """Test schedule restructuring"""

    def test_no_op_restructure_keeps_duration(self):
        """Test restructuring to the same term changes nothing observable"""
        loan = self.active_loan()
        result = self.controller.restructure_loan(loan.id, START, FixedDuration(12))

        due = [row for row in result.installments if row.is_due]
        assert len(due) == 12
        assert result.loan.duration_months == 12
        assert result.loan.installment_amount == Decimal("100.00")
        assert result.loan.principal_amount == Decimal("1200.00")
        assert all(
            row.skipped_reason == SKIP_REASON_RESTRUCTURED
            for row in result.installments if row.is_superseded
        )
        self.assert_consistent(loan.id)

    def test_same_installment_after_payments_keeps_duration(self):
        loan = self.active_loan()
        self.controller.make_ad_hoc_payment(loan.id, "200", RescheduleOption.APPLY_NEXT)

        result = self.controller.restructure_loan(
            loan.id, date(2025, 3, 15), FixedInstallment(Decimal("100"))
        )

        assert result.loan.duration_months == 12
        assert result.event.amount_delta is None
        self.assert_consistent(loan.id)

    def test_restructure_with_top_up(self):
        """Test a top-up raises the principal and is spread forward"""
        loan = self.active_loan()
        self.controller.make_ad_hoc_payment(loan.id, "200", RescheduleOption.APPLY_NEXT)

        result = self.controller.restructure_loan(
            loan.id, date(2025, 3, 15), FixedInstallment(Decimal("150")), "500", "Medical top-up"
        )

        due = [row for row in result.installments if row.is_due]
        assert len(due) == 10
        assert all(row.amount == Decimal("150.00") for row in due)
        assert due[0].due_date == date(2025, 3, 15)
        assert result.loan.principal_amount == Decimal("1700.00")
        assert result.loan.installment_amount == Decimal("150.00")
        assert result.loan.duration_months == 12
        assert result.loan.repayment_method == RepaymentMethod.FIXED_INSTALLMENT
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("1500.00")

        assert result.event.event_type == LoanEventType.RESTRUCTURE
        assert result.event.amount_delta == Decimal("500.00")
        assert result.event.new_installment_amount == Decimal("150.00")
        assert result.event.notes == "Medical top-up"
        self.assert_consistent(loan.id)

    def test_effective_date_before_settled_rows(self):
        loan = self.active_loan()
        self.controller.make_ad_hoc_payment(loan.id, "200", RescheduleOption.APPLY_NEXT)

        with pytest.raises(InvalidRestructure):
            self.controller.restructure_loan(loan.id, date(2025, 1, 1), FixedDuration(6))

    def test_restructure_needs_active_loan(self):
        loan = self.controller.request_loan("E1", "1000")

        with pytest.raises(InvalidTransition):
            self.controller.restructure_loan(loan.id, START, FixedDuration(6))

    def test_restructure_rejects_bad_terms(self):
        loan = self.active_loan()

        with pytest.raises(InvalidTermKind):
            self.controller.restructure_loan(loan.id, START, FixedDuration(0))
        with pytest.raises(InvalidAmount):
            self.controller.restructure_loan(loan.id, START, FixedDuration(6), "-10")
        assert self.controller.get_loan(loan.id).version == 0


class TestSkipInstallment(LifecycleTestBase):
    """Test deferring installments"""

    def test_skip_first_installment(self):
        """Test the skipped amount moves to a new last installment"""
        loan = self.active_loan()
        first = self.controller.get_installments(loan.id)[0]

        result = self.controller.skip_installment(loan.id, first.id)

        skipped = next(row for row in result.installments if row.id == first.id)
        assert skipped.status == InstallmentStatus.SKIPPED
        assert skipped.skipped_reason == "Employee request"

        replacement = result.installments[-1]
        assert replacement.installment_number == 13
        assert replacement.due_date == date(2026, 1, 15)
        assert replacement.amount == Decimal("100.00")
        assert replacement.rescheduled_from_installment_id == first.id

        live = [row for row in result.installments if not row.is_skipped]
        assert len(live) == 12
        assert sum(row.amount for row in live) == Decimal("1200.00")
        assert result.loan.duration_months == 13

        assert result.event.event_type == LoanEventType.SKIP_INSTALLMENT
        assert result.event.effective_date == START
        assert result.event.affected_installment_id == first.id
        self.assert_consistent(loan.id)

    def test_skip_with_reason(self):
        loan = self.active_loan()
        second = self.controller.get_installments(loan.id)[1]

        result = self.controller.skip_installment(loan.id, second.id, "Hardship")

        assert result.event.notes == "Hardship"
        assert next(row for row in result.installments if row.id == second.id).skipped_reason == "Hardship"

    def test_skip_paid_installment(self):
        loan = self.active_loan()
        self.controller.make_ad_hoc_payment(loan.id, "100", RescheduleOption.APPLY_NEXT)
        first = self.controller.get_installments(loan.id)[0]

        with pytest.raises(NotDue):
            self.controller.skip_installment(loan.id, first.id)

    def test_skip_installment_of_other_loan(self):
        loan = self.active_loan()
        other = self.active_loan(employee_id="E2")
        foreign = self.controller.get_installments(other.id)[0]

        with pytest.raises(NotBelongsToLoan):
            self.controller.skip_installment(loan.id, foreign.id)

    def test_skip_unknown_installment(self):
        loan = self.active_loan()

        with pytest.raises(InstallmentNotFound):
            self.controller.skip_installment(loan.id, "no-such-installment")


class TestAdministration(LifecycleTestBase):
    """Test cancel, delete and notes"""

    def test_cancel_active_loan(self):
        loan = self.active_loan()
        cancelled = self.controller.cancel_loan(loan.id, "Employee resigned")

        assert cancelled.status == LoanStatus.CANCELLED
        installments = self.controller.get_installments(loan.id)
        assert all(row.skipped_reason == SKIP_REASON_CANCELLED for row in installments)
        with pytest.raises(InvalidTransition):
            self.controller.cancel_loan(loan.id)

    def test_cancel_requested_loan(self):
        loan = self.controller.request_loan("E1", "1000")

        assert self.controller.cancel_loan(loan.id).status == LoanStatus.CANCELLED

    def test_delete_loan(self):
        """Test delete removes the loan, its installments and its history"""
        loan = self.active_loan()
        self.controller.delete_loan(loan.id)

        with pytest.raises(LoanNotFound):
            self.controller.get_loan(loan.id)
        assert self.storage.find("loan_installments", {"loan_id": loan.id}) == []
        assert self.storage.find("loan_events", {"loan_id": loan.id}) == []

    def test_closed_loan_cannot_be_deleted(self):
        loan = self.active_loan()
        self.controller.make_ad_hoc_payment(loan.id, "1200", RescheduleOption.APPLY_NEXT)

        with pytest.raises(TerminalStateProtected):
            self.controller.delete_loan(loan.id)
        assert self.controller.get_loan(loan.id).status == LoanStatus.CLOSED

    def test_add_note(self):
        loan = self.active_loan()
        event = self.controller.add_note(loan.id, "Called employee", acted_by="hr-2")

        assert event.event_type == LoanEventType.NOTE
        assert self.controller.get_events(loan.id)[0].id == event.id
        assert self.controller.get_loan(loan.id).version == 1

    def test_add_note_with_stale_version(self):
        loan = self.active_loan()
        self.controller.add_note(loan.id, "First call")

        with pytest.raises(ConcurrentModification):
            self.controller.add_note(loan.id, "Second call", expected_version=0)
        assert len(self.controller.get_events(loan.id)) == 3

    def test_list_loans(self):
        first = self.active_loan()
        self.controller.request_loan("E1", "300")
        self.active_loan(employee_id="E2")

        assert len(self.controller.list_loans(employee_id="E1")) == 2
        active = self.controller.list_loans(status=LoanStatus.ACTIVE)
        assert {loan.employee_id for loan in active} == {"E1", "E2"}
        assert first.id in {loan.id for loan in active}


class TestConcurrentWriters(LifecycleTestBase):
    """Test two writers that read the same loan version"""

    def run_in_thread(self, target):
        errors = []

        def run():
            try:
                target()
            except Exception as exc:
                errors.append(exc)

        worker = threading.Thread(target=run)
        worker.start()
        worker.join()
        assert errors == []

    def test_payment_loses_to_committed_skip(self):
        """Test the later commit is refused and the schedule stays whole"""
        loan = self.active_loan()
        first = self.due_rows(loan.id)[0]

        with pytest.raises(ConcurrentModification):
            with self.storage.atomic():
                self.controller.make_ad_hoc_payment(loan.id, "300", RescheduleOption.REDUCE_DURATION)
                self.run_in_thread(lambda: self.controller.skip_installment(loan.id, first.id, "Hardship"))

        stored = self.controller.get_loan(loan.id)
        assert stored.version == 1
        assert stored.duration_months == 13
        assert self.controller.get_outstanding_balance(loan.id) == Decimal("1200.00")
        assert not any(row.is_ad_hoc_payment for row in self.controller.get_installments(loan.id))
        self.assert_consistent(loan.id)

    def test_note_cannot_fork_the_history(self):
        """Test a note racing a skip leaves one unbroken event chain"""
        loan = self.active_loan()
        first = self.due_rows(loan.id)[0]

        with pytest.raises(ConcurrentModification):
            with self.storage.atomic():
                self.controller.add_note(loan.id, "Called employee")
                self.run_in_thread(lambda: self.controller.skip_installment(loan.id, first.id))

        events = self.controller.get_events(loan.id)
        assert [event.sequence for event in events] == [3, 2, 1]
        assert events[0].event_type == LoanEventType.SKIP_INSTALLMENT
        self.assert_consistent(loan.id)


class TestNotifications(LifecycleTestBase):
    """Test notifications follow committed changes only"""

    def test_disbursement_is_announced(self):
        listener = Mock()
        self.dispatcher.subscribe(DomainEvent.LOAN_DISBURSED, listener)

        loan = self.active_loan()

        listener.assert_called_once()
        payload = listener.call_args[0][0]
        assert payload.entity_id == loan.id
        assert payload.data["status"] == "active"
        assert payload.data["duration_months"] == 12

    def test_failed_operation_is_not_announced(self):
        loan = self.active_loan()
        listener = Mock()
        self.dispatcher.subscribe_all(listener)

        with pytest.raises(InvalidAmount):
            self.controller.make_ad_hoc_payment(loan.id, "5000", RescheduleOption.APPLY_NEXT)

        listener.assert_not_called()

    def test_handler_failure_does_not_fail_operation(self):
        """Test a broken notifier cannot undo a committed change"""
        self.dispatcher.subscribe_all(Mock(side_effect=RuntimeError("mail server down")))

        loan = self.controller.request_loan("E1", "1000")

        assert self.controller.get_loan(loan.id).status == LoanStatus.REQUESTED

    def test_controller_without_dispatcher(self):
        controller = LoanLifecycleController(InMemoryStorage())
        loan = controller.request_loan("anyone", "100")

        assert controller.get_loan(loan.id).employee_id == "anyone"
