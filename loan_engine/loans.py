"""
Loan Module

Loan and installment records and the loan ledger that persists them.
The ledger enforces schedule invariants (dense numbering, monotonic due
dates, settled history never rewritten, principal fully scheduled) and
conditions every loan write on the version it was read at.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Iterable
from enum import Enum
import uuid

from .storage import StorageInterface, StorageRecord
from .amortization import (
    ScheduleLine, RepaymentMethod, outstanding_balance, minor_unit, DEFAULT_PRECISION
)
from .exceptions import (
    LoanStateError, LoanNotFound, InstallmentNotFound, InvalidAmount,
    InvalidTermKind, AlreadyPaid, NotDue
)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    REQUESTED = "requested"    # Submitted by or for the employee
    APPROVED = "approved"      # Approved, funds not yet released
    REJECTED = "rejected"      # Declined by an approver
    ACTIVE = "active"          # Disbursed and repaying
    CLOSED = "closed"          # Fully repaid
    CANCELLED = "cancelled"    # Withdrawn before completion

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({LoanStatus.REJECTED, LoanStatus.CLOSED, LoanStatus.CANCELLED})


class InstallmentStatus(Enum):
    """Installment states"""
    DUE = "due"
    PAID = "paid"
    SKIPPED = "skipped"


class PaymentMethod(Enum):
    """How an installment was settled"""
    MANUAL = "manual"
    PAYROLL = "payroll"


class ScheduleIntegrityError(LoanStateError):
    """A schedule write would break a ledger invariant"""


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


@dataclass
class Loan(StorageRecord):
    """Salary-advance loan extended to an employee"""
    employee_id: str
    principal_amount: Decimal
    start_date: date
    status: LoanStatus = LoanStatus.REQUESTED
    installment_amount: Optional[Decimal] = None
    duration_months: Optional[int] = None
    repayment_method: Optional[RepaymentMethod] = None
    repayment_frequency: str = "monthly"
    deduct_from_payroll: bool = True
    disbursed_at: Optional[datetime] = None
    notes: Optional[str] = None
    requested_by: Optional[str] = None
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    results_in_negative_balance: Optional[bool] = None
    version: int = 0

    def __post_init__(self):
        if not isinstance(self.principal_amount, Decimal):
            self.principal_amount = Decimal(str(self.principal_amount))
        if self.principal_amount <= 0:
            raise InvalidAmount(f"Principal must be positive, got {self.principal_amount}")
        if (self.installment_amount is None) != (self.duration_months is None):
            raise InvalidTermKind("Installment amount and duration must be set together")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def has_terms(self) -> bool:
        return self.installment_amount is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['principal_amount'] = Decimal(data['principal_amount'])
        data['start_date'] = date.fromisoformat(data['start_date'])
        data['status'] = LoanStatus(data['status'])
        data['installment_amount'] = _parse_decimal(data.get('installment_amount'))
        if data.get('repayment_method'):
            data['repayment_method'] = RepaymentMethod(data['repayment_method'])
        data['disbursed_at'] = _parse_datetime(data.get('disbursed_at'))
        data['approved_at'] = _parse_datetime(data.get('approved_at'))
        return cls(**data)


@dataclass
class LoanInstallment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    amount: Decimal
    status: InstallmentStatus = InstallmentStatus.DUE
    paid_at: Optional[datetime] = None
    paid_method: Optional[PaymentMethod] = None
    paid_in_payroll_run_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    rescheduled_from_installment_id: Optional[str] = None
    schedule_version: int = 1
    is_ad_hoc_payment: bool = False
    superseded_in_version: Optional[int] = None

    def __post_init__(self):
        if self.amount <= 0:
            raise InvalidAmount(f"Installment amount must be positive, got {self.amount}")

    @property
    def is_due(self) -> bool:
        return self.status == InstallmentStatus.DUE

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def is_skipped(self) -> bool:
        return self.status == InstallmentStatus.SKIPPED

    @property
    def is_superseded(self) -> bool:
        """Retired by a later schedule regeneration"""
        return self.superseded_in_version is not None

    @property
    def counts_toward_duration(self) -> bool:
        """Occupies a repayment period of the current schedule"""
        return not self.is_superseded and not self.is_ad_hoc_payment

    def mark_paid(
        self,
        method: PaymentMethod,
        paid_at: datetime,
        payroll_run_id: Optional[str] = None
    ) -> None:
        """Settle a due installment"""
        if not self.is_due:
            raise AlreadyPaid(
                f"Installment #{self.installment_number} is {self.status.value}",
                loan_id=self.loan_id
            )
        self.status = InstallmentStatus.PAID
        self.paid_at = paid_at
        self.paid_method = method
        self.paid_in_payroll_run_id = payroll_run_id
        self.updated_at = paid_at

    def mark_skipped(self, reason: str, when: datetime) -> None:
        """Set a due installment aside"""
        if not self.is_due:
            raise NotDue(
                f"Installment #{self.installment_number} is {self.status.value}",
                loan_id=self.loan_id
            )
        self.status = InstallmentStatus.SKIPPED
        self.skipped_reason = reason
        self.updated_at = when

    def supersede(self, schedule_version: int, reason: str, when: datetime) -> None:
        """Retire a due installment replaced by schedule ``schedule_version``"""
        self.mark_skipped(reason, when)
        self.superseded_in_version = schedule_version

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanInstallment':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['due_date'] = date.fromisoformat(data['due_date'])
        data['amount'] = Decimal(data['amount'])
        data['status'] = InstallmentStatus(data['status'])
        data['paid_at'] = _parse_datetime(data.get('paid_at'))
        if data.get('paid_method'):
            data['paid_method'] = PaymentMethod(data['paid_method'])
        return cls(**data)


def installments_from_schedule(
    loan_id: str,
    schedule: Iterable[ScheduleLine],
    first_number: int,
    schedule_version: int,
    now: Optional[datetime] = None
) -> List[LoanInstallment]:
    """Materialize calculator lines as due installments numbered from ``first_number``"""
    now = now or datetime.now(timezone.utc)
    return [
        LoanInstallment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            installment_number=first_number + line.sequence - 1,
            due_date=line.due_date,
            amount=line.amount,
            schedule_version=schedule_version
        )
        for line in schedule
    ]


def schedule_duration(installments: Iterable[LoanInstallment]) -> int:
    """Repayment periods of the current schedule, user skips included"""
    return sum(1 for row in installments if row.counts_toward_duration)


def next_schedule_version(installments: Iterable[LoanInstallment]) -> int:
    return max((row.schedule_version for row in installments), default=0) + 1


class LoanLedger:
    """
    Persistent record of loans and their ordered installments
    """

    def __init__(self, storage: StorageInterface, precision: int = DEFAULT_PRECISION):
        self.storage = storage
        self.precision = precision

        self.loans_table = "loans"
        self.installments_table = "loan_installments"

    # Loans

    def add_loan(self, loan: Loan) -> Loan:
        """Persist a newly created loan"""
        loan.version = 0
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if not loan_dict:
            raise LoanNotFound(f"Loan {loan_id} not found", loan_id=loan_id)
        return Loan.from_dict(loan_dict)

    def list_loans(
        self,
        employee_id: Optional[str] = None,
        status: Optional[LoanStatus] = None
    ) -> List[Loan]:
        """Loans matching the filters, newest first"""
        filters: Dict[str, Any] = {}
        if employee_id:
            filters['employee_id'] = employee_id
        if status:
            filters['status'] = status.value

        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def save_loan(self, loan: Loan, expected_version: int) -> Loan:
        """
        Write a loan conditioned on the version it was read at.

        Raises ConcurrentModification (now or at commit) if another writer
        bumped the version in between.
        """
        self.storage.require(self.loans_table, loan.id, 'version', expected_version)
        if (loan.installment_amount is None) != (loan.duration_months is None):
            raise ScheduleIntegrityError(
                "Installment amount and duration must be set together", loan_id=loan.id
            )
        if loan.is_active and not loan.has_terms:
            raise ScheduleIntegrityError("Active loan must carry its terms", loan_id=loan.id)

        loan.version = expected_version + 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
        return loan

    # Installments

    def get_installments(self, loan_id: str) -> List[LoanInstallment]:
        """Installments of a loan ordered by number"""
        rows = self.storage.find(self.installments_table, {'loan_id': loan_id})
        installments = [LoanInstallment.from_dict(data) for data in rows]
        installments.sort(key=lambda installment: installment.installment_number)
        return installments

    def get_installment(self, installment_id: str) -> LoanInstallment:
        """Get installment by ID"""
        data = self.storage.load(self.installments_table, installment_id)
        if not data:
            raise InstallmentNotFound(f"Installment {installment_id} not found")
        return LoanInstallment.from_dict(data)

    def find_installments(self, filters: Dict[str, Any]) -> List[LoanInstallment]:
        """Installments matching raw field filters"""
        return [
            LoanInstallment.from_dict(data)
            for data in self.storage.find(self.installments_table, filters)
        ]

    def outstanding_balance(
        self,
        loan: Loan,
        installments: Optional[List[LoanInstallment]] = None
    ) -> Decimal:
        """Principal minus paid installments, always recomputed"""
        if installments is None:
            installments = self.get_installments(loan.id)
        return outstanding_balance(loan.principal_amount, installments)

    def write_schedule(self, loan: Loan, installments: List[LoanInstallment]) -> None:
        """
        Store the complete installment list of a loan.

        Every stored row must be present. Paid/skipped rows must come back
        unchanged; due rows may be settled, skipped or superseded, and new
        rows appended.
        """
        stored = {row.id: row for row in self.get_installments(loan.id)}
        incoming = {row.id: row for row in installments}

        for row_id, row in stored.items():
            replacement = incoming.get(row_id)
            if replacement is None:
                raise ScheduleIntegrityError(
                    f"Installment #{row.installment_number} cannot be dropped", loan_id=loan.id
                )
            if not row.is_due and replacement.to_dict() != row.to_dict():
                raise ScheduleIntegrityError(
                    f"Settled installment #{row.installment_number} cannot be rewritten",
                    loan_id=loan.id
                )

        violations = self.check_schedule(loan, installments)
        if violations:
            raise ScheduleIntegrityError("; ".join(violations), loan_id=loan.id)

        for row in installments:
            if _row_changed(stored.get(row.id), row):
                self.storage.save(self.installments_table, row.id, row.to_dict())

    def check_schedule(self, loan: Loan, installments: List[LoanInstallment]) -> List[str]:
        """Return every invariant the given schedule violates"""
        violations = []
        ordered = sorted(installments, key=lambda row: row.installment_number)

        numbers = [row.installment_number for row in ordered]
        if numbers != list(range(1, len(ordered) + 1)):
            violations.append(f"installment numbers {numbers} are not dense from 1")

        # Skipped rows are history; ordering applies to what is paid or owed
        live = [row for row in ordered if not row.is_skipped]
        for previous, current in zip(live, live[1:]):
            if current.due_date < previous.due_date:
                violations.append(
                    f"installment #{current.installment_number} is due before "
                    f"#{previous.installment_number}"
                )

        for row in ordered:
            if row.loan_id != loan.id:
                violations.append(f"installment {row.id} belongs to loan {row.loan_id}")
            if row.amount <= 0:
                violations.append(f"installment #{row.installment_number} amount is not positive")

        if loan.is_active:
            scheduled = sum((row.amount for row in ordered if not row.is_skipped), Decimal('0'))
            if abs(scheduled - loan.principal_amount) > minor_unit(self.precision):
                violations.append(
                    f"scheduled total {scheduled} does not match principal {loan.principal_amount}"
                )
            periods = schedule_duration(ordered)
            if loan.duration_months != periods:
                violations.append(
                    f"duration {loan.duration_months} does not match {periods} scheduled periods"
                )
            if not any(row.is_due for row in ordered):
                violations.append("active loan has no due installments")

        return violations

    def verify_schedule(self, loan_id: str) -> List[str]:
        """Invariant violations of the stored schedule, for operators"""
        loan = self.get_loan(loan_id)
        return self.check_schedule(loan, self.get_installments(loan_id))

    def delete_loan(self, loan: Loan, expected_version: int) -> int:
        """Remove a loan and its installments; returns installments removed"""
        self.storage.require(self.loans_table, loan.id, 'version', expected_version)
        removed = 0
        for row in self.get_installments(loan.id):
            if self.storage.delete(self.installments_table, row.id):
                removed += 1
        self.storage.delete(self.loans_table, loan.id)
        return removed


def _row_changed(stored: Optional[LoanInstallment], row: LoanInstallment) -> bool:
    """True when ``row`` differs from what is stored under its id"""
    return stored is None or stored.to_dict() != row.to_dict()
