"""
Case Action Set

The actions attached to one case step.

Key behaviors:
- add()/remove() mutate the set and reschedule the step to the earliest
  run time among its remaining unperformed actions
- perform_scheduled_actions() destroys actions that can no longer be
  performed and runs the rest ordered by action type
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import (
    ActionResult, ActionState, CaseActionDB, CaseStepDB, CreditCaseDB,
)
from .notifier import CollectionNotifier


logger = logging.getLogger(__name__)


@dataclass
class ActionContext:
    """Everything an action needs to decide performability and run."""
    db: Session
    case: CreditCaseDB
    notifier: CollectionNotifier
    now: datetime


class CaseActionSet:
    """Mutations and execution of a case step's actions."""

    def __init__(self, db_session: Session, step: CaseStepDB):
        """Initialize with database session and the owning step."""
        self.db = db_session
        self.step = step

    def unperformed(self, condition: Optional[str] = None) -> List[CaseActionDB]:
        actions = self.step.unperformed_actions
        if condition is not None:
            actions = [action for action in actions if action.on == condition]
        return actions

    # -------------------------------------------------------------------------
    # Mutation (each one reschedules the step)
    # -------------------------------------------------------------------------

    def add(self, action: CaseActionDB) -> Optional[datetime]:
        """Attach an action, persist it and reschedule the step."""
        self.step.actions.append(action)
        self.db.add(action)
        self.db.flush()
        return self.reschedule()

    def remove(self, action: CaseActionDB) -> Optional[datetime]:
        """Detach (and delete) an action, then reschedule the step."""
        self.step.actions.remove(action)
        self.db.flush()
        return self.reschedule()

    def reschedule(self) -> Optional[datetime]:
        """
        Move the step to the earliest run time of its unperformed actions.

        Without unperformed actions the schedule is left untouched.
        """
        pending = self.unperformed()
        reference = self.step.scheduled_at
        if not pending or reference is None:
            return reference

        earliest = min(action.run_at_from(reference) for action in pending)
        if earliest != reference:
            self.step.scheduled_at = earliest
            logger.debug(f"Case step {self.step.id} rescheduled to {self.step.scheduled_at.isoformat()}")
        self.db.flush()
        return self.step.scheduled_at

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def perform_scheduled_actions(self, context: ActionContext, condition: str = "perform") -> List[ActionResult]:
        """
        Perform the unperformed actions tagged with condition.

        Returns one ActionResult per executed action, in execution order.
        """
        candidates = self.unperformed(condition)

        # Actions that cannot be performed now are never performed: drop them
        skipped = [action for action in candidates if not action.performable(context)]
        for action in skipped:
            logger.info(f"Dropping {action.type} {action.id} of case step {self.step.id}: not performable")
            self.step.actions.remove(action)
        if skipped:
            self.db.flush()

        runnable = sorted(
            (action for action in candidates if action not in skipped),
            key=lambda action: (action.type, action.id or ""),
        )

        results = []
        for action in runnable:
            result = ActionResult.coerce(action.perform(context))
            action.result_message = result.value
            if result == ActionResult.SUCCESS:
                action.state = ActionState.PERFORMED.value
                action.performed_at = context.now
            elif result == ActionResult.FAILURE:
                logger.warning(f"{action.type} {action.id} of case step {self.step.id} failed")
            else:
                logger.warning(f"{action.type} {action.id} of case step {self.step.id} returned no clear result")
            results.append(result)

        self.db.flush()
        return results
