"""
Application wiring and request dependencies
"""

from typing import Optional
from dataclasses import dataclass
from fastapi import Header

from ..storage import StorageInterface, InMemoryStorage, SQLiteStorage
from ..employees import EmployeeDirectory
from ..events import EventDispatcher, get_global_dispatcher
from ..lifecycle import LoanLifecycleController
from ..payroll_bridge import PayrollDeductionBridge
from ..reporting import LoanReportingEngine
from ..config import LoanEngineConfig, get_config


class LoanSystem:
    """Loan engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LoanEngineConfig] = None,
        employee_directory: Optional[EmployeeDirectory] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is not None:
            self.storage = storage
        elif self.config.use_sqlite:
            self.storage = SQLiteStorage(self.config.database_path)
        else:
            self.storage = InMemoryStorage()

        if dispatcher is None and self.config.enable_notifications:
            dispatcher = get_global_dispatcher()
        self.dispatcher = dispatcher

        precision = self.config.amount_precision
        self.controller = LoanLifecycleController(
            self.storage,
            employee_directory=employee_directory,
            dispatcher=self.dispatcher,
            precision=precision,
            default_skip_reason=self.config.default_skip_reason
        )
        self.payroll_bridge = PayrollDeductionBridge(self.storage, self.dispatcher, precision)
        self.reporting_engine = LoanReportingEngine(self.storage, precision)

    def close(self) -> None:
        self.storage.close()


# Global loan system instance, created on first use
_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Dependency returning the shared loan system"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system


def set_loan_system(system: Optional[LoanSystem]) -> None:
    """Replace the shared loan system (tests, embedding applications)"""
    global _loan_system
    _loan_system = system


@dataclass
class Approver:
    """Acting user as established by the caller's auth layer"""
    user_id: Optional[str]

    @property
    def authorized(self) -> bool:
        return bool(self.user_id)


def get_approver(x_loan_approver: Optional[str] = Header(None)) -> Approver:
    """Approver identity forwarded by the gateway in ``X-Loan-Approver``"""
    return Approver(user_id=x_loan_approver)
