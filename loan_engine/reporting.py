"""
Loan Reporting Module

Read-only summaries over the loan ledger: per-loan repayment progress and
portfolio exposure across all employees.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from .storage import StorageInterface
from .amortization import DEFAULT_PRECISION
from .loans import LoanLedger, LoanStatus


@dataclass
class LoanSummary:
    """Repayment progress of one loan"""
    loan_id: str
    employee_id: str
    status: LoanStatus
    principal_amount: Decimal
    paid_amount: Decimal
    outstanding_balance: Decimal
    paid_count: int
    due_count: int
    skipped_count: int
    next_due_date: Optional[date] = None
    expected_end_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'employee_id': self.employee_id,
            'status': self.status.value,
            'principal_amount': str(self.principal_amount),
            'paid_amount': str(self.paid_amount),
            'outstanding_balance': str(self.outstanding_balance),
            'paid_count': self.paid_count,
            'due_count': self.due_count,
            'skipped_count': self.skipped_count,
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'expected_end_date': self.expected_end_date.isoformat() if self.expected_end_date else None
        }


@dataclass
class ReportResult:
    """Result of a report execution"""
    report_id: str
    generated_at: datetime
    data: List[Dict[str, Any]] = field(default_factory=list)
    totals: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)


class LoanReportingEngine:
    """
    Reports computed on demand from ledger rows
    """

    def __init__(self, storage: StorageInterface, precision: int = DEFAULT_PRECISION):
        self.ledger = LoanLedger(storage, precision)

    def loan_summary(self, loan_id: str) -> LoanSummary:
        """Paid and remaining totals, counts and dates for one loan"""
        loan = self.ledger.get_loan(loan_id)
        installments = self.ledger.get_installments(loan_id)

        paid = [row for row in installments if row.is_paid]
        due = sorted((row for row in installments if row.is_due), key=lambda row: row.due_date)
        paid_amount = sum((row.amount for row in paid), Decimal('0'))

        return LoanSummary(
            loan_id=loan.id,
            employee_id=loan.employee_id,
            status=loan.status,
            principal_amount=loan.principal_amount,
            paid_amount=paid_amount,
            outstanding_balance=self.ledger.outstanding_balance(loan, installments),
            paid_count=len(paid),
            due_count=len(due),
            skipped_count=sum(1 for row in installments if row.is_skipped),
            next_due_date=due[0].due_date if due else None,
            expected_end_date=due[-1].due_date if due else None
        )

    def portfolio_exposure(self, employee_id: Optional[str] = None) -> ReportResult:
        """
        Outstanding balance across active loans

        Args:
            employee_id: Restrict the report to one employee

        Returns:
            ReportResult with one row per active loan and portfolio totals
        """
        start_time = datetime.now(timezone.utc)
        loans = self.ledger.list_loans(employee_id=employee_id)

        status_counts = {status.value: 0 for status in LoanStatus}
        total_outstanding = Decimal('0')
        total_principal = Decimal('0')
        data = []

        for loan in loans:
            status_counts[loan.status.value] += 1
            if loan.status != LoanStatus.ACTIVE:
                continue
            summary = self.loan_summary(loan.id)
            total_outstanding += summary.outstanding_balance
            total_principal += summary.principal_amount
            data.append(summary.to_dict())

        end_time = datetime.now(timezone.utc)
        return ReportResult(
            report_id="portfolio_exposure",
            generated_at=end_time,
            data=data,
            totals={
                'active_loans': len(data),
                'total_principal': str(total_principal),
                'total_outstanding': str(total_outstanding),
                'loans_by_status': status_counts
            },
            metadata={
                'row_count': len(data),
                'generation_time_ms': int((end_time - start_time).total_seconds() * 1000)
            }
        )
