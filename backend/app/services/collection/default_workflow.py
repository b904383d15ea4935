"""
Default collection workflow.

Six templates, from the first reminder (reference "1", starts the statutory
collection process) to the bailiff handover (reference "6", finishes the case
unless it is auto-forwarded to an assigned bailiff).
"""
import logging
from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session

from ...models.db_models import WorkflowActionDB, WorkflowStepDB, WorkflowTransitionDB


logger = logging.getLogger(__name__)


# reference -> (name, price, needs_notification, owner_performable, actions)
# actions: (type, delay_in_days, payload)
DEFAULT_STEPS = [
    ("1", "Aanmaning", Decimal("0.00"), True, False, [
        ("EmailAction", 0, {"template": "aanmaning"}),
        ("LetterAction", 0, {"template": "aanmaning"}),
    ]),
    ("2", "Sommatie", Decimal("7.50"), True, False, [
        ("EmailAction", 0, {"template": "sommatie"}),
        ("FeeAction", 0, {"amount": "15.00"}),
        ("LetterAction", 0, {"template": "sommatie"}),
    ]),
    ("3", "Tweede sommatie", Decimal("7.50"), True, False, [
        ("EmailAction", 0, {"template": "tweede_sommatie"}),
        ("LetterAction", 1, {"template": "tweede_sommatie"}),
    ]),
    ("4", "Ingebrekestelling", Decimal("12.50"), True, True, [
        ("LetterAction", 0, {"template": "ingebrekestelling"}),
    ]),
    ("5", "Laatste waarschuwing", Decimal("12.50"), True, True, [
        ("EmailAction", 0, {"template": "laatste_waarschuwing"}),
        ("LetterAction", 0, {"template": "laatste_waarschuwing"}),
    ]),
    ("6", "Overdracht deurwaarder", Decimal("25.00"), False, False, [
        ("TransferAction", 0, {}),
    ]),
]

# (from reference, to reference, after days)
DEFAULT_TRANSITIONS = [
    ("1", "2", 14),
    ("2", "3", 14),
    ("3", "4", 7),
    ("4", "5", 14),
    ("5", "6", 7),
]


def seed_default_workflow(db: Session) -> Dict[str, WorkflowStepDB]:
    """
    Install the default workflow templates.

    Idempotent: templates whose reference already exists are left as they
    are, and missing transitions between existing templates are added.
    Returns the templates by reference. The caller commits.
    """
    existing = {step.reference: step for step in db.query(WorkflowStepDB).all()}
    created = 0

    for reference, name, price, needs_notification, owner_performable, actions in DEFAULT_STEPS:
        if reference in existing:
            continue

        step = WorkflowStepDB(
            reference=reference,
            name=name,
            price=price,
            needs_notification=needs_notification,
            owner_performable=owner_performable,
        )
        for action_type, delay_in_days, payload in actions:
            step.actions.append(WorkflowActionDB(
                type=action_type,
                on="perform",
                delay_in_days=delay_in_days,
                payload=payload,
            ))
        db.add(step)
        existing[reference] = step
        created += 1

    for from_reference, to_reference, after_days in DEFAULT_TRANSITIONS:
        from_step = existing[from_reference]
        to_step = existing[to_reference]
        if any(transition.to_step is to_step for transition in from_step.transitions):
            continue
        from_step.transitions.append(WorkflowTransitionDB(to_step=to_step, after_days=after_days))

    db.flush()
    logger.info(f"Default workflow seeded: {created} template(s) created")
    return existing
