"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, Response, status

from .deps import LoanSystem, Approver, get_loan_system, get_approver
from .schemas import (
    LoanRequestBody, CreateLoanBody, ApproveBody, RejectBody, DisburseBody,
    PaymentBody, RestructureBody, SkipBody, CancelBody, NoteBody
)
from ..loans import LoanStatus


router = APIRouter()


# Origination

@router.post("/requests", status_code=status.HTTP_201_CREATED)
async def request_loan(
    request: LoanRequestBody,
    system: LoanSystem = Depends(get_loan_system)
):
    """Submit a loan request for an employee"""
    loan = system.controller.request_loan(
        request.employee_id,
        request.principal_amount,
        request.notes,
        start_date=request.start_date,
        term=request.to_term(),
        deduct_from_payroll=request.deduct_from_payroll,
        requested_by=request.requested_by
    )
    return loan.to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Create an approved loan directly, optionally disbursing it"""
    loan = system.controller.create_loan(
        request.employee_id,
        request.principal_amount,
        request.to_term(),
        start_date=request.start_date,
        deduct_from_payroll=request.deduct_from_payroll,
        notes=request.notes,
        auto_disburse=request.auto_disburse,
        acted_by=approver.user_id,
        authorized=approver.authorized
    )
    return loan.to_dict()


# Reads

@router.get("")
async def list_loans(
    employee_id: Optional[str] = None,
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    system: LoanSystem = Depends(get_loan_system)
):
    """List loans, newest first"""
    loans = system.controller.list_loans(employee_id=employee_id, status=loan_status)
    return {"loans": [loan.to_dict() for loan in loans]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Get loan details with its outstanding balance"""
    loan = system.controller.get_loan(loan_id)
    result = loan.to_dict()
    result["outstanding_balance"] = str(system.controller.get_outstanding_balance(loan_id))
    return result


@router.get("/{loan_id}/installments")
async def get_installments(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Installments ordered by number"""
    installments = system.controller.get_installments(loan_id)
    return {"installments": [row.to_dict() for row in installments]}


@router.get("/{loan_id}/events")
async def get_events(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Loan history, newest first"""
    events = system.controller.get_events(loan_id)
    return {"events": [event.to_dict() for event in events]}


@router.get("/{loan_id}/summary")
async def get_summary(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Repayment progress of a loan"""
    return system.reporting_engine.loan_summary(loan_id).to_dict()


@router.get("/{loan_id}/integrity")
async def get_integrity(
    loan_id: str,
    system: LoanSystem = Depends(get_loan_system)
):
    """Schedule invariant violations and event chain verification"""
    violations = system.controller.ledger.verify_schedule(loan_id)
    events = system.controller.event_log.verify_integrity(loan_id)
    return {
        "valid": not violations and events["valid"],
        "schedule_violations": violations,
        "events": events
    }


# Approval

@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: ApproveBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Approve a requested loan"""
    loan = system.controller.approve_loan(
        loan_id,
        deduct_from_payroll=request.deduct_from_payroll,
        auto_disburse=request.auto_disburse,
        term=request.to_term(),
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return loan.to_dict()


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: RejectBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Reject a requested loan"""
    loan = system.controller.reject_loan(
        loan_id,
        request.reason,
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return loan.to_dict()


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Disburse an approved loan and build its schedule"""
    result = system.controller.disburse_loan(
        loan_id,
        request.to_term(),
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return {
        "loan": result.loan.to_dict(),
        "installments": [row.to_dict() for row in result.installments],
        "event": result.event.to_dict()
    }


# Repayment

@router.post("/{loan_id}/payments")
async def make_payment(
    loan_id: str,
    request: PaymentBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Apply an ad-hoc payment"""
    result = system.controller.make_ad_hoc_payment(
        loan_id,
        request.amount,
        request.reschedule_option,
        notes=request.notes,
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return {
        "loan": result.loan.to_dict(),
        "installments": [row.to_dict() for row in result.installments],
        "applied_amount": str(result.applied_amount),
        "leftover_unapplied": str(result.leftover_unapplied),
        "event": result.event.to_dict()
    }


@router.post("/{loan_id}/restructure")
async def restructure_loan(
    loan_id: str,
    request: RestructureBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Recompute the remaining schedule, optionally with a top-up"""
    result = system.controller.restructure_loan(
        loan_id,
        request.effective_date,
        request.to_term(),
        request.top_up_amount,
        request.notes,
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return {
        "loan": result.loan.to_dict(),
        "installments": [row.to_dict() for row in result.installments],
        "event": result.event.to_dict()
    }


@router.post("/{loan_id}/installments/{installment_id}/skip")
async def skip_installment(
    loan_id: str,
    installment_id: str,
    request: SkipBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Defer a due installment to the end of the schedule"""
    result = system.controller.skip_installment(
        loan_id,
        installment_id,
        request.reason,
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return {
        "loan": result.loan.to_dict(),
        "installments": [row.to_dict() for row in result.installments],
        "event": result.event.to_dict()
    }


# Administration

@router.post("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: CancelBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Cancel a loan that is not yet terminal"""
    loan = system.controller.cancel_loan(
        loan_id,
        request.reason,
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=request.expected_version
    )
    return loan.to_dict()


@router.post("/{loan_id}/notes", status_code=status.HTTP_201_CREATED)
async def add_note(
    loan_id: str,
    request: NoteBody,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Attach a note to the loan history"""
    event = system.controller.add_note(
        loan_id, request.notes,
        acted_by=approver.user_id,
        expected_version=request.expected_version
    )
    return event.to_dict()


@router.delete("/{loan_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_loan(
    loan_id: str,
    expected_version: Optional[int] = None,
    system: LoanSystem = Depends(get_loan_system),
    approver: Approver = Depends(get_approver)
):
    """Delete a loan with its installments and events"""
    system.controller.delete_loan(
        loan_id,
        acted_by=approver.user_id,
        authorized=approver.authorized,
        expected_version=expected_version
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
