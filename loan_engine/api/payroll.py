"""
Payroll deduction endpoints
"""

from datetime import date
from fastapi import APIRouter, Depends

from .deps import LoanSystem, get_loan_system
from .schemas import PayrollConfirmBody


router = APIRouter()


@router.get("/due-installments")
async def due_installments(
    employee_id: str,
    period_end: date,
    system: LoanSystem = Depends(get_loan_system)
):
    """Installments payroll should deduct for the period"""
    installments = system.payroll_bridge.due_installments(employee_id, period_end)
    return {"installments": [row.to_dict() for row in installments]}


@router.post("/confirm")
async def confirm_paid(
    request: PayrollConfirmBody,
    system: LoanSystem = Depends(get_loan_system)
):
    """Record installments collected by a payroll run"""
    installments = system.payroll_bridge.confirm_paid_many(
        request.installment_ids, request.payroll_run_id
    )
    return {
        "payroll_run_id": request.payroll_run_id,
        "installments": [row.to_dict() for row in installments]
    }
