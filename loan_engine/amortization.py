"""
Amortization Module

Pure functions that turn a principal and a repayment term into a monthly
installment schedule, and recompute forward schedules for restructures.
Interest-free: every installment repays principal only. NEVER uses float.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_CEILING, InvalidOperation
from datetime import date
from dataclasses import dataclass
from typing import Iterable, List, Optional, Union, Any
from enum import Enum
import calendar

from .exceptions import InvalidAmount, InvalidTermKind, InvalidRestructure


DEFAULT_PRECISION = 2


class RepaymentMethod(Enum):
    """How a schedule is sized"""
    FIXED_INSTALLMENT = "fixed_installment"  # amount fixed, duration derived
    FIXED_DURATION = "fixed_duration"        # duration fixed, amount derived


@dataclass(frozen=True)
class FixedInstallment:
    """Repay a fixed amount per month until the principal is exhausted"""
    amount: Decimal

    @property
    def method(self) -> RepaymentMethod:
        return RepaymentMethod.FIXED_INSTALLMENT

    @property
    def value(self) -> Decimal:
        return self.amount


@dataclass(frozen=True)
class FixedDuration:
    """Repay the principal in a fixed number of monthly installments"""
    months: int

    @property
    def method(self) -> RepaymentMethod:
        return RepaymentMethod.FIXED_DURATION

    @property
    def value(self) -> int:
        return self.months


RepaymentTerm = Union[FixedInstallment, FixedDuration]


@dataclass(frozen=True)
class ScheduleLine:
    """One computed installment; sequence is 1-based within the schedule"""
    sequence: int
    due_date: date
    amount: Decimal


@dataclass(frozen=True)
class RestructurePlan:
    """Result of recomputing a schedule from a new balance"""
    new_principal: Decimal
    installment_amount: Decimal
    duration_months: int
    schedule: List[ScheduleLine]


def to_amount(value: Any) -> Decimal:
    """
    Coerce caller input to an exact Decimal.

    Floats are rejected: binary floating point cannot carry the rounding
    guarantees of the schedule.
    """
    if isinstance(value, bool) or isinstance(value, float):
        raise InvalidAmount(f"Amount {value!r} must be an exact decimal, not {type(value).__name__}")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError):
            raise InvalidAmount(f"Amount {value!r} is not a decimal number")
    if not amount.is_finite():
        raise InvalidAmount(f"Amount {value!r} is not finite")
    return amount


def round_amount(value: Decimal, places: int = DEFAULT_PRECISION) -> Decimal:
    """Round half-up to the currency's minor unit"""
    return value.quantize(Decimal('0.1') ** places, rounding=ROUND_HALF_UP)


def minor_unit(places: int = DEFAULT_PRECISION) -> Decimal:
    """Smallest representable amount, e.g. 0.01"""
    return Decimal('0.1') ** places


def add_months(anchor: date, months: int) -> date:
    """Same day-of-month ``months`` later, clamped to the month's last day"""
    month_index = anchor.month - 1 + months
    year = anchor.year + month_index // 12
    month = month_index % 12 + 1
    day = min(anchor.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def _ceil_div(numerator: Decimal, denominator: Decimal) -> int:
    return int((numerator / denominator).to_integral_value(rounding=ROUND_CEILING))


def _require_positive_principal(principal: Decimal) -> None:
    if principal <= 0:
        raise InvalidAmount(f"Principal must be positive, got {principal}")


def _build_schedule(
    principal: Decimal,
    installment_amount: Decimal,
    count: int,
    start_date: date
) -> List[ScheduleLine]:
    """Equal lines with the last absorbing rounding; a non-positive tail folds into the prior line"""
    last_amount = principal - installment_amount * (count - 1)
    while last_amount <= 0 and count > 1:
        count -= 1
        last_amount = principal - installment_amount * (count - 1)

    schedule = []
    for offset in range(count):
        amount = last_amount if offset == count - 1 else installment_amount
        schedule.append(ScheduleLine(
            sequence=offset + 1,
            due_date=add_months(start_date, offset),
            amount=amount
        ))
    return schedule


def generate_schedule(
    principal: Decimal,
    installment_amount: Decimal,
    start_date: date,
    places: int = DEFAULT_PRECISION
) -> List[ScheduleLine]:
    """
    Schedule with a fixed monthly installment.

    Args:
        principal: Amount to repay
        installment_amount: Amount of every installment but the last
        start_date: Due date of the first installment
        places: Minor-unit precision of the payroll currency

    Returns:
        ceil(principal / installment_amount) monthly lines
    """
    principal = round_amount(to_amount(principal), places)
    installment_amount = to_amount(installment_amount)
    _require_positive_principal(principal)
    if installment_amount <= 0:
        raise InvalidTermKind(f"Installment amount must be positive, got {installment_amount}")

    installment_amount = round_amount(installment_amount, places)
    if installment_amount <= 0:
        raise InvalidAmount("Installment amount rounds to zero")

    count = _ceil_div(principal, installment_amount)
    return _build_schedule(principal, installment_amount, count, start_date)


def generate_schedule_by_duration(
    principal: Decimal,
    duration_months: int,
    start_date: date,
    places: int = DEFAULT_PRECISION
) -> List[ScheduleLine]:
    """
    Schedule with a fixed number of monthly installments.

    The installment is round2(principal / duration_months); the last line
    absorbs the rounding difference.
    """
    principal = round_amount(to_amount(principal), places)
    _require_positive_principal(principal)
    if isinstance(duration_months, bool) or not isinstance(duration_months, int) or duration_months <= 0:
        raise InvalidTermKind(f"Duration must be a positive number of months, got {duration_months!r}")

    installment_amount = round_amount(principal / Decimal(duration_months), places)
    if installment_amount <= 0:
        raise InvalidAmount(
            f"Principal {principal} is too small to spread over {duration_months} months"
        )

    return _build_schedule(principal, installment_amount, duration_months, start_date)


def schedule_for_term(
    principal: Decimal,
    term: RepaymentTerm,
    start_date: date,
    places: int = DEFAULT_PRECISION
) -> List[ScheduleLine]:
    """Dispatch on the repayment term variant"""
    if isinstance(term, FixedInstallment):
        return generate_schedule(principal, term.amount, start_date, places)
    if isinstance(term, FixedDuration):
        return generate_schedule_by_duration(principal, term.months, start_date, places)
    raise InvalidTermKind(f"Unsupported repayment term {term!r}")


def term_from_values(
    installment_amount: Optional[Any] = None,
    duration_months: Optional[int] = None
) -> Optional[RepaymentTerm]:
    """Build a term from the nullable pair carried by requests; at most one may be set"""
    if installment_amount is not None and duration_months is not None:
        raise InvalidTermKind("Provide either an installment amount or a duration, not both")
    if installment_amount is not None:
        amount = to_amount(installment_amount)
        if amount <= 0:
            raise InvalidTermKind(f"Installment amount must be positive, got {amount}")
        return FixedInstallment(amount)
    if duration_months is not None and (
        isinstance(duration_months, bool) or not isinstance(duration_months, int) or duration_months <= 0
    ):
        raise InvalidTermKind(f"Duration must be a positive number of months, got {duration_months!r}")
    if duration_months is not None:
        return FixedDuration(duration_months)
    return None


def schedule_total(schedule: Iterable[ScheduleLine]) -> Decimal:
    """Sum of all line amounts"""
    return sum((line.amount for line in schedule), Decimal('0'))


def restructure(
    outstanding_balance: Decimal,
    top_up_amount: Decimal,
    term: RepaymentTerm,
    start_date: date,
    places: int = DEFAULT_PRECISION
) -> RestructurePlan:
    """
    Recompute a forward schedule from the outstanding balance plus a top-up.

    Args:
        outstanding_balance: Principal minus paid installments
        top_up_amount: Additional funds released (>= 0)
        term: FixedInstallment(amount) or FixedDuration(months)
        start_date: Due date of the first regenerated installment
        places: Minor-unit precision of the payroll currency

    Returns:
        RestructurePlan with the derived installment amount and duration
    """
    outstanding_balance = to_amount(outstanding_balance)
    top_up_amount = to_amount(top_up_amount or Decimal('0'))
    if top_up_amount < 0:
        raise InvalidAmount(f"Top-up amount cannot be negative, got {top_up_amount}")
    if isinstance(term, FixedInstallment):
        term = FixedInstallment(to_amount(term.amount))
    elif isinstance(term, FixedDuration):
        if isinstance(term.months, bool) or not isinstance(term.months, int):
            raise InvalidTermKind(f"Duration must be a whole number of months, got {term.months!r}")
    else:
        raise InvalidTermKind(f"Unsupported repayment term {term!r}")
    if term.value <= 0:
        raise InvalidTermKind(f"{term.method.value} value must be positive, got {term.value}")

    new_principal = round_amount(outstanding_balance + top_up_amount, places)
    if new_principal <= 0:
        raise InvalidRestructure("Nothing left to restructure: new principal is not positive")

    if isinstance(term, FixedInstallment):
        installment_amount = round_amount(term.amount, places)
    else:
        installment_amount = round_amount(new_principal / Decimal(term.months), places)
    if installment_amount <= 0:
        raise InvalidRestructure("Computed installment amount would be zero")

    if isinstance(term, FixedInstallment):
        count = _ceil_div(new_principal, installment_amount)
    else:
        count = term.months
    schedule = _build_schedule(new_principal, installment_amount, count, start_date)

    return RestructurePlan(
        new_principal=new_principal,
        installment_amount=installment_amount,
        duration_months=len(schedule),
        schedule=schedule
    )


def outstanding_balance(principal_amount: Decimal, installments: Iterable[Any]) -> Decimal:
    """
    Principal minus the sum of paid installments.

    Recomputed on every call; the base for every restructure and ad-hoc
    payment calculation.
    """
    paid = sum(
        (installment.amount for installment in installments if installment.is_paid),
        Decimal('0')
    )
    return principal_amount - paid
