"""
Pydantic schemas for API requests

Amounts travel as decimal strings and are converted with the engine's own
parser, so binary floats never reach the ledger.
"""

from datetime import date
from typing import List, Optional
from pydantic import BaseModel, Field

from ..amortization import RepaymentTerm, term_from_values
from ..lifecycle import RescheduleOption


class TermFields(BaseModel):
    installment_amount: Optional[str] = Field(None, description="Fixed monthly installment, decimal string")
    duration_months: Optional[int] = Field(None, description="Fixed number of monthly installments")

    def to_term(self) -> Optional[RepaymentTerm]:
        return term_from_values(self.installment_amount, self.duration_months)


class VersionedRequest(BaseModel):
    expected_version: Optional[int] = Field(
        None, description="Loan version the caller read; stale versions are rejected"
    )


# Origination
class LoanRequestBody(TermFields):
    employee_id: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    notes: Optional[str] = None
    start_date: Optional[date] = None
    deduct_from_payroll: bool = True
    requested_by: Optional[str] = None


class CreateLoanBody(TermFields):
    employee_id: str
    principal_amount: str = Field(..., description="Decimal amount as string")
    start_date: date
    notes: Optional[str] = None
    deduct_from_payroll: bool = True
    auto_disburse: bool = False


# Approval
class ApproveBody(TermFields, VersionedRequest):
    deduct_from_payroll: bool = True
    auto_disburse: bool = False


class RejectBody(VersionedRequest):
    reason: Optional[str] = None


class DisburseBody(TermFields, VersionedRequest):
    pass


# Repayment
class PaymentBody(VersionedRequest):
    amount: str = Field(..., description="Decimal amount as string")
    reschedule_option: RescheduleOption
    notes: Optional[str] = None


class RestructureBody(TermFields, VersionedRequest):
    effective_date: date
    top_up_amount: str = Field("0", description="Additional funds released, decimal string")
    notes: Optional[str] = None


class SkipBody(VersionedRequest):
    reason: Optional[str] = None


# Administration
class CancelBody(VersionedRequest):
    reason: Optional[str] = None


class NoteBody(VersionedRequest):
    notes: str


# Payroll
class PayrollConfirmBody(BaseModel):
    installment_ids: List[str] = Field(..., min_length=1)
    payroll_run_id: str
