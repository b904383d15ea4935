"""
Scheduler API Routes

Internal endpoints for the collection engine.
Due-step runs, upcoming-step monitoring and operator completion.
"""
import os
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Header
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..database import get_db
from ..services.collection import (
    CaseStepNotFoundError,
    StepScheduler,
    StepTransitionError,
    StepValidationError,
)


router = APIRouter(prefix="/internal/case-steps", tags=["scheduler"])


# =============================================================================
# INTERNAL API KEY VALIDATION
# =============================================================================

INTERNAL_API_KEY = os.getenv("COLLECTION_INTERNAL_KEY", "scheduler-internal-key-change-in-production")


async def verify_internal_key(x_internal_key: str = Header(...)):
    """Verify internal API key for scheduler endpoints."""
    if x_internal_key != INTERNAL_API_KEY:
        raise HTTPException(status_code=403, detail="Invalid internal API key")
    return True


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class UpcomingStep(BaseModel):
    step_id: str
    case_id: str
    label: Optional[str] = None
    reference: Optional[str] = None
    scheduled_at: str
    days_remaining: int


class UpcomingStepsResponse(BaseModel):
    days_ahead: int
    count: int
    steps: List[UpcomingStep]


class ScheduledSuccessor(BaseModel):
    step_id: str
    scheduled_at: str


class StepCompletionResponse(BaseModel):
    step_id: str
    case_id: str
    performed_at: str
    scheduled_successors: List[ScheduledSuccessor]


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/perform-due", response_model=dict)
async def perform_due_steps(
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Perform every case step that is due.

    Each step is committed on its own; failures are reported per step.
    """
    scheduler = StepScheduler(db)

    result = scheduler.run_due_steps()

    return result


@router.get("/upcoming", response_model=UpcomingStepsResponse)
async def get_upcoming_steps(
    days_ahead: int = 7,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Get unperformed steps scheduled in the next N days for monitoring.
    """
    if days_ahead < 0:
        raise HTTPException(status_code=400, detail="days_ahead must not be negative")

    scheduler = StepScheduler(db)
    steps = scheduler.upcoming_steps(days_ahead)

    return UpcomingStepsResponse(
        days_ahead=days_ahead,
        count=len(steps),
        steps=[UpcomingStep(**s) for s in steps],
    )


@router.post("/{step_id}/complete", response_model=StepCompletionResponse)
async def complete_step(
    step_id: str,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_internal_key),
):
    """
    Mark a step performed now (operator completion).

    Successors keep their original offsets from the step's scheduled time.
    """
    scheduler = StepScheduler(db)

    try:
        result = scheduler.complete_step(step_id)
    except CaseStepNotFoundError:
        raise HTTPException(status_code=404, detail="Case step not found")
    except StepTransitionError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except StepValidationError as e:
        db.rollback()
        raise HTTPException(status_code=422, detail=e.errors)

    return StepCompletionResponse(**result)
