"""
Employee Directory Module

Read-only lookup of employees consumed by the loan engine. Employee CRUD
lives elsewhere; the engine only checks that a borrower exists and is
active.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Iterable
from threading import RLock

from .exceptions import EmployeeNotFound


@dataclass(frozen=True)
class EmployeeRecord:
    """Directory entry of an employee"""
    employee_id: str
    name: str
    payroll_currency: str
    is_active: bool = True


class EmployeeDirectory(ABC):
    """Abstract interface for employee lookups"""

    @abstractmethod
    def lookup(self, employee_id: str) -> Optional[EmployeeRecord]:
        """Return the employee or None when unknown"""
        pass

    def require_active(self, employee_id: str) -> EmployeeRecord:
        """Return the employee, raising EmployeeNotFound unless known and active"""
        employee = self.lookup(employee_id)
        if employee is None:
            raise EmployeeNotFound(f"Employee {employee_id} not found")
        if not employee.is_active:
            raise EmployeeNotFound(f"Employee {employee_id} is not active")
        return employee


class InMemoryEmployeeDirectory(EmployeeDirectory):
    """Directory backed by a dictionary, for tests and single-process setups"""

    def __init__(self, employees: Iterable[EmployeeRecord] = ()):
        self._employees: Dict[str, EmployeeRecord] = {}
        self._lock = RLock()
        for employee in employees:
            self.add(employee)

    def add(self, employee: EmployeeRecord) -> None:
        with self._lock:
            self._employees[employee.employee_id] = employee

    def lookup(self, employee_id: str) -> Optional[EmployeeRecord]:
        with self._lock:
            return self._employees.get(employee_id)
