"""
Employee Loan Engine

Salary-advance loan lifecycle for HR administration: request, approval,
disbursement, amortization, ad-hoc payments, restructuring, skips and
payroll deduction, with an append-only, hash-chained event ledger.
All monetary values use Decimal.
"""

__version__ = "1.0.0"
