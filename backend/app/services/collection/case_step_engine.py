"""
Case Step Engine

Deterministic state machine for case steps.
unperformed -> performed is the only transition and it is never reversed.

Key behaviors:
- A step only runs while its case is open or finished; otherwise it defers
  itself by one (business) day
- The first collection step starts the collection process on the case
- The final step notifies the creditor once and finishes the case instead
  of performing, unless the case is auto-forwarded to a bailiff
- A performed step schedules its successors and bills its price to the case
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from ...models.db_models import (
    ActionResult, CaseStepDB, CaseTransition, CreditCaseDB, StepKind, StepState,
    WorkflowStepDB,
)
from ..business_calendar import next_business_day
from .action_set import ActionContext, CaseActionSet
from .case_ledger import CaseLedger, CaseUpdate
from .errors import StepTransitionError, StepValidationError
from .notifier import CollectionNotifier, LoggingNotifier


logger = logging.getLogger(__name__)

DEFERRAL = timedelta(days=1)
PERFORM_CONDITION = "perform"


class StepOutcome(str, Enum):
    """What a call to perform() did."""
    DEFERRED = "deferred"
    CASE_FINISHED = "case_finished"
    PERFORMED = "performed"
    ACTIONS_FAILED = "actions_failed"
    ALREADY_PERFORMED = "already_performed"


class CaseStepEngine:
    """
    Performs, validates and schedules case steps.

    The engine flushes but never commits; the caller owns the transaction.
    """

    def __init__(
        self,
        db_session: Session,
        notifier: Optional[CollectionNotifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize with database session, notifier and clock."""
        self.db = db_session
        self.notifier = notifier or LoggingNotifier()
        self.clock = clock or datetime.utcnow
        self.ledger = CaseLedger(db_session)

    # =========================================================================
    # VALIDATION / PERSISTENCE
    # =========================================================================

    def validate(self, step: CaseStepDB) -> List[str]:
        """Return the list of invariant violations for a step (empty when valid)."""
        errors = []

        case_id = step.credit_case_id or (step.credit_case.id if step.credit_case is not None else None)
        if case_id is None and step.credit_case is None:
            errors.append("credit case is required")

        allowed = [state.value for state in StepState]
        if step.state not in allowed:
            errors.append(f"state '{step.state}' is not one of {', '.join(allowed)}")

        workflow_step_id = step.workflow_step_id or (
            step.workflow_step.id if step.workflow_step is not None else None
        )
        if workflow_step_id is not None and case_id is not None:
            with self.db.no_autoflush:
                duplicate = self.db.query(CaseStepDB).filter(
                    CaseStepDB.credit_case_id == case_id,
                    CaseStepDB.workflow_step_id == workflow_step_id,
                    CaseStepDB.id != step.id,
                ).first()
            if duplicate is not None:
                errors.append(f"case {case_id} already has a step for workflow step {workflow_step_id}")

        return errors

    def save(self, step: CaseStepDB) -> CaseStepDB:
        """Normalize, validate and flush a step. Raises StepValidationError."""
        if step.scheduled_at is not None:
            step.scheduled_at = next_business_day(step.scheduled_at)

        errors = self.validate(step)
        if errors:
            raise StepValidationError(errors)

        self.db.add(step)
        self.db.flush()
        return step

    # =========================================================================
    # STEP CREATION
    # =========================================================================

    def schedule_step(
        self,
        case: CreditCaseDB,
        workflow_step: Optional[WorkflowStepDB],
        scheduled_at: datetime,
        label: Optional[str] = None,
    ) -> CaseStepDB:
        """
        Create an unperformed step for a case and clone its template actions.

        Used for a case's first step, for ad hoc steps (no workflow step) and
        for successor scheduling.
        """
        step = CaseStepDB(
            credit_case=case,
            workflow_step=workflow_step,
            scheduled_at=scheduled_at,
            state=StepState.UNPERFORMED.value,
            label=label or (workflow_step.name if workflow_step is not None else None),
        )
        try:
            self.save(step)
        except StepValidationError:
            # Keep the rejected step out of the case's collection
            if step in case.steps:
                case.steps.remove(step)
            if step in self.db:
                self.db.expunge(step)
            raise

        self.populate_actions(step)
        logger.info(
            f"Scheduled case step {step.id} ({step.label}) for case {case.id} "
            f"at {step.scheduled_at.isoformat()}"
        )
        return step

    def populate_actions(self, step: CaseStepDB) -> None:
        """Clone the workflow step's template actions into a freshly scheduled step."""
        if step.workflow_step is None:
            return
        action_set = CaseActionSet(self.db, step)
        for template_action in step.workflow_step.actions:
            action_set.add(template_action.clone_to_case_action())

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def is_performable(self, step: CaseStepDB) -> bool:
        """Only perform a step when the case is open or finished (not paid or paused)."""
        case = step.credit_case
        return case.is_open or case.is_finished

    def perform(self, step: CaseStepDB) -> StepOutcome:
        """Perform a due step. See module docstring for the rules."""
        if step.is_performed:
            logger.warning(f"Case step {step.id} already performed; skipping")
            return StepOutcome.ALREADY_PERFORMED

        now = self.clock()
        case = step.credit_case

        if not self.is_performable(step):
            self._defer(step)
            self.save(step)
            logger.info(f"Case {case.id} not performable; case step {step.id} deferred to {step.scheduled_at.isoformat()}")
            return StepOutcome.DEFERRED

        kind = step.kind
        if kind == StepKind.FIRST_COLLECTION_STEP:
            self.ledger.start_collections_process(case, now)
            self.ledger.update_prices(case)
            self.ledger.save(case)
        elif kind == StepKind.FINAL_STEP and (not case.autoforward or case.bailiff_id is None):
            return self._finish_case(step, case, now)

        action_set = CaseActionSet(self.db, step)
        context = ActionContext(db=self.db, case=case, notifier=self.notifier, now=now)
        results = action_set.perform_scheduled_actions(context, condition=PERFORM_CONDITION)

        if ActionResult.FAILURE in results:
            logger.warning(f"Case step {step.id}: {results.count(ActionResult.FAILURE)} action(s) failed; step stays unperformed")
            return StepOutcome.ACTIONS_FAILED

        self.mark_performed(step)
        return StepOutcome.PERFORMED

    def _defer(self, step: CaseStepDB) -> None:
        """Move a step one day on; pending actions count again from the new time."""
        step.scheduled_at = step.scheduled_at + DEFERRAL
        for action in step.unperformed_actions:
            action.run_at = None

    def _finish_case(self, step: CaseStepDB, case: CreditCaseDB, now: datetime) -> StepOutcome:
        if not step.creditor_notified:
            self.notifier.send_case_finished(case)
        step.creditor_notified = True
        self._defer(step)

        transition = None if case.is_finished else CaseTransition.FINISH
        self.ledger.apply(case, CaseUpdate(transition=transition), now)
        self.save(step)
        return StepOutcome.CASE_FINISHED

    def mark_performed(self, step: CaseStepDB) -> List[CaseStepDB]:
        """
        Terminal transition to performed.

        Schedules the successors and bills the workflow step's price
        (0.00 when unset) to the case. Returns the newly created steps.
        """
        if step.is_performed:
            raise StepTransitionError(f"Case step {step.id} is already performed")

        now = self.clock()
        step.performed_at = now
        step.state = StepState.PERFORMED.value
        self.save(step)

        created = self.schedule_next(step)

        price = Decimal("0.00")
        if step.workflow_step is not None and step.workflow_step.price is not None:
            price = step.workflow_step.price
        self.ledger.apply(step.credit_case, CaseUpdate(billing_delta=price), now)

        logger.info(f"Case step {step.id} performed; {len(created)} successor(s) scheduled")
        return created

    # =========================================================================
    # SUCCESSOR SCHEDULING
    # =========================================================================

    def schedule_next(self, step: CaseStepDB) -> List[CaseStepDB]:
        """
        Schedule the successor steps that the case does not have yet.

        If the step was completed before its scheduled time (by an operator),
        successors are counted from the scheduled time so the rest of the
        schedule is not compressed.
        """
        workflow_step = step.workflow_step
        if workflow_step is None or not workflow_step.next_steps:
            return []

        now = self.clock()
        base = step.scheduled_at if step.scheduled_at is not None and step.scheduled_at > now else now
        case = step.credit_case

        created = []
        for next_step in workflow_step.next_steps:
            if self._case_has_step(case, next_step):
                continue
            scheduled_at = base + timedelta(days=workflow_step.after_step_in_days(next_step.id))
            created.append(self.schedule_step(case, next_step, scheduled_at))

        self.ledger.save(case)
        return created

    def _case_has_step(self, case: CreditCaseDB, workflow_step: WorkflowStepDB) -> bool:
        return self.db.query(CaseStepDB).filter(
            CaseStepDB.credit_case_id == case.id,
            CaseStepDB.workflow_step_id == workflow_step.id,
        ).first() is not None
