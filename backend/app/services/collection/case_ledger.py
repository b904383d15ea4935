"""
Case Ledger

Applies case-level mutations requested by case steps:
- billing accumulation (atomic increment at the storage layer)
- lifecycle transitions (finish)
- start of the collection process and statutory cost recomputation

Steps never write case totals directly. They describe the change as a
CaseUpdate and the ledger applies it inside the current unit of work, so two
steps completing for the same case cannot lose a billing update.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from sqlalchemy import func, update as sa_update
from sqlalchemy.orm import Session

from ...models.db_models import CaseState, CaseTransition, CreditCaseDB


logger = logging.getLogger(__name__)


# =============================================================================
# STATUTORY COLLECTION COSTS (WIK scale, Besluit vergoeding voor
# buitengerechtelijke incassokosten)
# =============================================================================

WIK_BRACKETS = [
    # (bracket size, rate); None = remainder
    (Decimal("2500"), Decimal("0.15")),
    (Decimal("2500"), Decimal("0.10")),
    (Decimal("5000"), Decimal("0.05")),
    (Decimal("190000"), Decimal("0.01")),
    (None, Decimal("0.005")),
]
WIK_MINIMUM = Decimal("40.00")
WIK_MAXIMUM = Decimal("6775.00")
CENT = Decimal("0.01")


def calculate_collection_costs(principal: Decimal) -> Decimal:
    """Statutory extrajudicial collection costs for a principal amount."""
    principal = Decimal(principal or 0)
    if principal <= 0:
        return Decimal("0.00")

    remaining = principal
    costs = Decimal("0")
    for size, rate in WIK_BRACKETS:
        portion = remaining if size is None else min(remaining, size)
        costs += portion * rate
        remaining -= portion
        if remaining <= 0:
            break

    costs = max(WIK_MINIMUM, min(WIK_MAXIMUM, costs))
    return costs.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CaseUpdate:
    """Change a step requests on its case."""
    billing_delta: Optional[Decimal] = None
    transition: Optional[CaseTransition] = None


class CaseLedger:
    """
    Applies step-requested changes to credit cases.

    All methods stay inside the caller's transaction; the caller commits.
    """

    def __init__(self, db_session: Session):
        """Initialize with database session."""
        self.db = db_session

    def start_collections_process(self, case: CreditCaseDB, now: datetime) -> None:
        """Record the start of the collection process (first time only)."""
        if case.collection_started_at is None:
            case.collection_started_at = now
            logger.info(f"Collection process started for case {case.id}")

    def update_prices(self, case: CreditCaseDB) -> Decimal:
        """Recompute the statutory collection costs from the principal."""
        case.collection_costs = calculate_collection_costs(case.principal)
        return case.collection_costs

    def finish(self, case: CreditCaseDB, now: datetime) -> None:
        """Transition the case to finished."""
        if case.is_finished:
            return
        case.state = CaseState.FINISHED
        case.finished_at = now
        logger.info(f"Case {case.id} finished")

    def save(self, case: CreditCaseDB) -> None:
        self.db.add(case)
        self.db.flush()

    def apply(self, case: CreditCaseDB, change: CaseUpdate, now: Optional[datetime] = None) -> CreditCaseDB:
        """
        Apply a CaseUpdate.

        The billing delta is added with a single UPDATE statement
        (COALESCE(billing_price, 0) + delta) rather than read-modify-write.
        """
        if change.transition == CaseTransition.FINISH:
            self.finish(case, now or datetime.utcnow())

        self.save(case)

        if change.billing_delta is not None:
            delta = Decimal(change.billing_delta)
            self.db.execute(
                sa_update(CreditCaseDB)
                .where(CreditCaseDB.id == case.id)
                .values(billing_price=func.coalesce(CreditCaseDB.billing_price, 0) + delta)
                .execution_options(synchronize_session=False)
            )
            # Reload the total from the database on next access
            self.db.expire(case, ["billing_price"])
            logger.debug(f"Billed {delta} to case {case.id}")

        return case
