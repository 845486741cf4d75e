"""
System container and request dependencies
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ..audit import AuditTrail
from ..config import MicrolendConfig, get_config
from ..customers import CustomerManager
from ..errors import NotFoundError
from ..identifiers import IdentifierGenerator
from ..loans import LoanManager
from ..rbac import Actor, StaffManager
from ..reporting import ReportingEngine
from ..storage import SQLiteStorage, StorageInterface


class LendingSystem:
    """Loan management system with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[MicrolendConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or SQLiteStorage(self.config.sqlite_path)

        self.audit_trail = AuditTrail(self.storage)
        self.identifiers = IdentifierGenerator(self.storage)
        self.staff_manager = StaffManager(self.storage, self.audit_trail, self.identifiers)
        self.customer_manager = CustomerManager(self.storage, self.audit_trail, self.identifiers)
        self.loan_manager = LoanManager(
            self.storage, self.customer_manager, self.audit_trail, self.identifiers, self.config
        )
        self.reporting_engine = ReportingEngine(self.storage)

    def close(self) -> None:
        self.storage.close()


_system: Optional[LendingSystem] = None


def get_system() -> LendingSystem:
    """Dependency returning the process-wide system, created on first use"""
    global _system
    if _system is None:
        _system = LendingSystem()
    return _system


def set_system(system: Optional[LendingSystem]) -> None:
    """Install the system used by get_system (None resets it)"""
    global _system
    _system = system


def optional_actor(
    x_staff_id: Optional[str] = Header(None),
    system: LendingSystem = Depends(get_system)
) -> Optional[Actor]:
    """Resolve the X-Staff-Id header if present"""
    if not x_staff_id:
        return None
    try:
        return system.staff_manager.actor_for(x_staff_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown staff member")


def current_actor(actor: Optional[Actor] = Depends(optional_actor)) -> Actor:
    """Resolve the acting staff member; the header is mandatory"""
    if actor is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Staff-Id header required")
    return actor
