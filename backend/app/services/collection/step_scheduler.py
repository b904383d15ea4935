"""
Step Scheduler

Driver that selects due case steps and performs them one at a time.
Each step runs in its own unit of work: committed on success, rolled back
on any exception, after which processing continues with the next step.
"""
import logging
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Query, Session

from ...models.db_models import CaseState, CaseStepDB, CreditCaseDB, StepState
from .case_step_engine import CaseStepEngine, StepOutcome
from .errors import CaseStepNotFoundError


logger = logging.getLogger(__name__)


class StepScheduler:
    """
    Query scopes over case steps plus the periodic "perform due steps" run.
    """

    def __init__(self, db_session: Session, engine: Optional[CaseStepEngine] = None):
        """Initialize with database session and step engine."""
        self.db = db_session
        self.engine = engine or CaseStepEngine(db_session)

    # =========================================================================
    # QUERY SCOPES
    # =========================================================================

    def _unperformed(self) -> Query:
        return self.db.query(CaseStepDB).filter(CaseStepDB.state == StepState.UNPERFORMED.value)

    def due_steps(self, now: datetime, open_cases_only: bool = False) -> List[CaseStepDB]:
        """Unperformed steps scheduled at or before now, oldest first."""
        query = self._unperformed().filter(CaseStepDB.scheduled_at <= now)
        if open_cases_only:
            query = self.for_open_cases(query)
        return query.order_by(CaseStepDB.scheduled_at, CaseStepDB.id).all()

    def steps_for_today(self, now: datetime) -> List[CaseStepDB]:
        """Unperformed steps scheduled on now's calendar day."""
        start = datetime.combine(now.date(), time.min)
        end = datetime.combine(now.date(), time.max)
        return self._unperformed().filter(
            CaseStepDB.scheduled_at >= start,
            CaseStepDB.scheduled_at <= end,
        ).order_by(CaseStepDB.scheduled_at, CaseStepDB.id).all()

    def unnotified_steps(self) -> List[CaseStepDB]:
        """Steps the debtor has not been notified about yet."""
        return self.db.query(CaseStepDB).filter(
            CaseStepDB.notified_debtor.is_(False)
        ).order_by(CaseStepDB.scheduled_at, CaseStepDB.id).all()

    def for_open_cases(self, query: Query) -> Query:
        """Restrict a case step query to steps of open cases."""
        return query.join(CreditCaseDB, CaseStepDB.credit_case_id == CreditCaseDB.id).filter(
            CreditCaseDB.state == CaseState.OPEN
        )

    def upcoming_steps(self, days_ahead: int = 7, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Unperformed steps scheduled in the next N days."""
        now = now or self.engine.clock()
        horizon = now + timedelta(days=days_ahead)

        steps = self._unperformed().filter(
            CaseStepDB.scheduled_at >= now,
            CaseStepDB.scheduled_at <= horizon,
        ).order_by(CaseStepDB.scheduled_at, CaseStepDB.id).all()

        return [
            {
                "step_id": s.id,
                "case_id": s.credit_case_id,
                "label": s.label,
                "reference": s.workflow_step.reference if s.workflow_step is not None else None,
                "scheduled_at": s.scheduled_at.isoformat(),
                "days_remaining": (s.scheduled_at.date() - now.date()).days,
            }
            for s in steps
        ]

    # =========================================================================
    # DRIVER
    # =========================================================================

    def run_due_steps(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Perform every due step.

        Returns a summary with a count per outcome and the per-step details.
        """
        now = now or self.engine.clock()
        outcomes = {outcome.value: 0 for outcome in StepOutcome}
        processed = []
        errors = []

        for step in self.due_steps(now):
            step_id = step.id
            case_id = step.credit_case_id
            try:
                outcome = self.engine.perform(step)
                self.db.commit()
            except Exception as e:
                self.db.rollback()
                logger.exception(f"Performing case step {step_id} failed")
                errors.append({
                    "step_id": step_id,
                    "case_id": case_id,
                    "error": str(e),
                })
                continue

            outcomes[outcome.value] += 1
            processed.append({
                "step_id": step_id,
                "case_id": case_id,
                "outcome": outcome.value,
            })

        logger.info(f"Due step run at {now.isoformat()}: {len(processed)} processed, {len(errors)} errors")

        return {
            "run_date": now.isoformat(),
            "steps_due": len(processed) + len(errors),
            "outcomes": outcomes,
            "errors": len(errors),
            "details": {
                "processed": processed,
                "errors": errors,
            }
        }

    def complete_step(self, step_id: str) -> Dict[str, Any]:
        """
        Operator completion: mark a step performed now.

        Successors of a step completed ahead of schedule keep counting from
        the original scheduled time.
        """
        step = self.db.query(CaseStepDB).filter(CaseStepDB.id == step_id).first()
        if step is None:
            raise CaseStepNotFoundError(f"Case step {step_id} not found")

        created = self.engine.mark_performed(step)
        self.db.commit()

        return {
            "step_id": step.id,
            "case_id": step.credit_case_id,
            "performed_at": step.performed_at.isoformat(),
            "scheduled_successors": [
                {"step_id": s.id, "scheduled_at": s.scheduled_at.isoformat()}
                for s in created
            ],
        }
