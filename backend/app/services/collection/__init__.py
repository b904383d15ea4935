"""
Collection Engine Services

Case step scheduling and execution for the debt-collection workflow.

- CaseStepEngine: step state machine (perform, mark_performed, schedule_next)
- CaseActionSet: action execution and step rescheduling
- CaseLedger: atomic case-level updates requested by steps
- StepScheduler: due-step driver run by the internal scheduler endpoint
"""

from .errors import (
    CollectionEngineError,
    StepValidationError,
    StepTransitionError,
    UnknownActionTypeError,
    CaseStepNotFoundError,
)
from .notifier import CollectionNotifier, LoggingNotifier
from .action_set import ActionContext, CaseActionSet
from .case_ledger import CaseLedger, CaseUpdate, calculate_collection_costs
from .case_step_engine import CaseStepEngine, StepOutcome
from .step_scheduler import StepScheduler
from .default_workflow import seed_default_workflow

__all__ = [
    'CollectionEngineError',
    'StepValidationError',
    'StepTransitionError',
    'UnknownActionTypeError',
    'CaseStepNotFoundError',
    'CollectionNotifier',
    'LoggingNotifier',
    'ActionContext',
    'CaseActionSet',
    'CaseLedger',
    'CaseUpdate',
    'calculate_collection_costs',
    'CaseStepEngine',
    'StepOutcome',
    'StepScheduler',
    'seed_default_workflow',
]
