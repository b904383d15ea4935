"""
Collection engine errors.

Deferral of a non-performable step and individual action failures are
outcomes, not errors; they are reported through StepOutcome / ActionResult.
"""


class CollectionEngineError(Exception):
    """Base class for collection engine errors."""


class StepValidationError(CollectionEngineError):
    """A case step violates its invariants and was not persisted."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class UnknownActionTypeError(CollectionEngineError):
    """A template action names a case action type that is not registered."""


class StepTransitionError(CollectionEngineError):
    """A case step was asked to make a transition its state does not allow."""


class CaseStepNotFoundError(CollectionEngineError):
    """No case step exists with the requested id."""
