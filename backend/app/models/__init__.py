"""Collection Engine - Data Models"""
from .db_models import (
    # Enums
    CaseState, StepState, ActionState, CaseTransition, ActionResult, StepKind,
    # Cases and templates
    CreditCaseDB, WorkflowStepDB, WorkflowTransitionDB, WorkflowActionDB,
    # Steps and actions
    CaseStepDB, CaseActionDB, EmailActionDB, FeeActionDB, LetterActionDB, TransferActionDB,
)

__all__ = [
    "CaseState", "StepState", "ActionState", "CaseTransition", "ActionResult", "StepKind",
    "CreditCaseDB", "WorkflowStepDB", "WorkflowTransitionDB", "WorkflowActionDB",
    "CaseStepDB", "CaseActionDB", "EmailActionDB", "FeeActionDB", "LetterActionDB", "TransferActionDB",
]
