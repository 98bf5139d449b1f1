"""
circdesk: library circulation engine.

Exports key modules for convenient imports.
"""

from .domain import (
    CopyStatus,
    LoanStatus,
    FineStatus,
    SemesterStatus,
    Policy,
    EligibilityResult,
    BorrowResult,
    ReturnResult,
    FineComputation,
    FineAction,
    FineOutcome,
    FineView,
    LoanView,
    Page,
    PaymentResult,
    PayAllResult,
    BorrowingStatus,
    SemesterView,
    StudentPenaltySummary,
    LoopState,
    LoopStatus,
)

from .errors import (
    CirculationError,
    ValidationError,
    NotFoundError,
    ConflictError,
    PolicyViolationError,
    StoreError,
)

from .store import LedgerStore

from .services import (
    PolicyService,
    CatalogService,
    BorrowingStatusService,
    EligibilityService,
    SemesterService,
    CirculationService,
    FineService,
    calculate_fine,
)

from .reconciler import FineReconciliationLoop
from .config import Config, configure_logging
from .api import LibrarySystem
from .seed import seed_demo_data

__all__ = [
    # domain
    "CopyStatus",
    "LoanStatus",
    "FineStatus",
    "SemesterStatus",
    "Policy",
    "EligibilityResult",
    "BorrowResult",
    "ReturnResult",
    "FineComputation",
    "FineAction",
    "FineOutcome",
    "FineView",
    "LoanView",
    "Page",
    "PaymentResult",
    "PayAllResult",
    "BorrowingStatus",
    "SemesterView",
    "StudentPenaltySummary",
    "LoopState",
    "LoopStatus",
    # errors
    "CirculationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "PolicyViolationError",
    "StoreError",
    # store
    "LedgerStore",
    # services
    "PolicyService",
    "CatalogService",
    "BorrowingStatusService",
    "EligibilityService",
    "SemesterService",
    "CirculationService",
    "FineService",
    "calculate_fine",
    # loop
    "FineReconciliationLoop",
    # config
    "Config",
    "configure_logging",
    # api
    "LibrarySystem",
    # seed
    "seed_demo_data",
]
