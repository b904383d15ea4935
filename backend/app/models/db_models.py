"""
Collection Engine - SQLAlchemy ORM Models
Persistent storage for credit cases, workflow templates, case steps and actions
"""
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, UniqueConstraint, CheckConstraint,
)
from sqlalchemy.orm import relationship, validates

from ..database import Base
from ..services.business_calendar import next_business_day


def _uuid() -> str:
    return str(uuid4())


# =============================================================================
# ENUMS FOR THE COLLECTION WORKFLOW
# =============================================================================

class CaseState(str, Enum):
    """Lifecycle states of a credit case (only the ones the engine reads)."""
    OPEN = "open"
    PAUSED = "paused"
    FINISHED = "finished"
    CLOSED = "closed"


class StepState(str, Enum):
    """States of a case step. performed is terminal."""
    UNPERFORMED = "unperformed"
    PERFORMED = "performed"


class ActionState(str, Enum):
    """States of a case action."""
    UNPERFORMED = "unperformed"
    PERFORMED = "performed"


class CaseTransition(str, Enum):
    """Case lifecycle transitions a step may request."""
    FINISH = "finish"


class ActionResult(str, Enum):
    """Outcome of a single action execution."""
    SUCCESS = "success"
    FAILURE = "failure"
    INDETERMINATE = "indeterminate"

    @classmethod
    def coerce(cls, value) -> "ActionResult":
        """Map a raw action return value onto a result."""
        if isinstance(value, cls):
            return value
        if value is True:
            return cls.SUCCESS
        if value is False:
            return cls.FAILURE
        return cls.INDETERMINATE


# Template references with special behavior in the standard workflow
FIRST_COLLECTION_STEP_REFERENCE = "1"
FINAL_STEP_REFERENCE = "6"


class StepKind(str, Enum):
    """Kinds of workflow steps, resolved from the template reference."""
    ORDINARY = "ordinary"
    FIRST_COLLECTION_STEP = "first_collection_step"
    FINAL_STEP = "final_step"

    @classmethod
    def for_reference(cls, reference) -> "StepKind":
        if reference == FIRST_COLLECTION_STEP_REFERENCE:
            return cls.FIRST_COLLECTION_STEP
        if reference == FINAL_STEP_REFERENCE:
            return cls.FINAL_STEP
        return cls.ORDINARY


# =============================================================================
# CREDIT CASE
# =============================================================================

class CreditCaseDB(Base):
    """
    A debt-collection matter.
    Owns its case steps; the engine reads its state and accumulates billing.
    """
    __tablename__ = "credit_cases"

    id = Column(String(36), primary_key=True, default=_uuid)
    reference = Column(String(64), nullable=True, index=True)  # Creditor's own file number

    state = Column(SQLEnum(CaseState), nullable=False, default=CaseState.OPEN, index=True)

    # Bailiff handover
    autoforward = Column(Boolean, nullable=False, default=False)
    bailiff_id = Column(String(36), nullable=True)

    # Amounts
    principal = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    collection_costs = Column(Numeric(10, 2), nullable=True)  # Statutory extrajudicial costs
    fees_total = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))  # Posted by fee actions
    billing_price = Column(Numeric(10, 2), nullable=True)  # Running total billed to the creditor

    # Parties
    debtor_name = Column(String(255), nullable=True)
    debtor_email = Column(String(255), nullable=True)
    debtor_address = Column(String(500), nullable=True)
    creditor_email = Column(String(255), nullable=True)

    # Timestamps
    collection_started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    steps = relationship(
        "CaseStepDB",
        back_populates="credit_case",
        cascade="all, delete-orphan",
        order_by="CaseStepDB.scheduled_at",
    )

    @property
    def is_open(self) -> bool:
        return self.state == CaseState.OPEN

    @property
    def is_finished(self) -> bool:
        return self.state == CaseState.FINISHED


# =============================================================================
# WORKFLOW TEMPLATES (read-only reference data)
# =============================================================================

class WorkflowStepDB(Base):
    """
    Template for one stage of the collection workflow.
    Case steps are concrete occurrences of a template inside a case.
    """
    __tablename__ = "workflow_steps"

    id = Column(String(36), primary_key=True, default=_uuid)
    reference = Column(String(20), nullable=False, unique=True)  # Ordinal reference, "1".."6"
    name = Column(String(255), nullable=False)

    needs_notification = Column(Boolean, nullable=False, default=False)
    owner_performable = Column(Boolean, nullable=False, default=False)
    price = Column(Numeric(10, 2), nullable=True)  # Billed to the creditor when performed

    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    actions = relationship(
        "WorkflowActionDB",
        back_populates="workflow_step",
        cascade="all, delete-orphan",
        order_by="WorkflowActionDB.type",
    )
    transitions = relationship(
        "WorkflowTransitionDB",
        foreign_keys="WorkflowTransitionDB.from_step_id",
        back_populates="from_step",
        cascade="all, delete-orphan",
    )

    @property
    def kind(self) -> StepKind:
        return StepKind.for_reference(self.reference)

    @property
    def next_steps(self) -> list:
        return [transition.to_step for transition in self.transitions]

    def after_step_in_days(self, successor_id: str) -> int:
        """Day offset between this step and one of its successors."""
        for transition in self.transitions:
            if transition.to_step.id == successor_id:
                return transition.after_days
        raise ValueError(f"Workflow step {successor_id} does not follow {self.reference}")


class WorkflowTransitionDB(Base):
    """Edge from a workflow step to a successor, with its day offset."""
    __tablename__ = "workflow_transitions"
    __table_args__ = (
        UniqueConstraint("from_step_id", "to_step_id", name="uq_workflow_transitions_edge"),
        CheckConstraint("after_days >= 0", name="ck_workflow_transitions_after_days"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    from_step_id = Column(String(36), ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True)
    to_step_id = Column(String(36), ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False)
    after_days = Column(Integer, nullable=False, default=0)

    from_step = relationship("WorkflowStepDB", foreign_keys=[from_step_id], back_populates="transitions")
    to_step = relationship("WorkflowStepDB", foreign_keys=[to_step_id])


class WorkflowActionDB(Base):
    """Template action, cloned into every case step created from its workflow step."""
    __tablename__ = "workflow_actions"

    id = Column(String(36), primary_key=True, default=_uuid)
    workflow_step_id = Column(String(36), ForeignKey("workflow_steps.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(50), nullable=False)  # Polymorphic identity of the case action
    on = Column("on_condition", String(20), nullable=False, default="perform")
    delay_in_days = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=True)  # template, amount, ...

    workflow_step = relationship("WorkflowStepDB", back_populates="actions")

    def clone_to_case_action(self) -> "CaseActionDB":
        """Build an unsaved case action of the matching type."""
        from ..services.collection.errors import UnknownActionTypeError

        mapper = CaseActionDB.__mapper__.polymorphic_map.get(self.type)
        if mapper is None or mapper.class_ is CaseActionDB:
            raise UnknownActionTypeError(f"Unknown action type: {self.type}")

        return mapper.class_(
            on=self.on or "perform",
            delay_in_days=self.delay_in_days or 0,
            payload=dict(self.payload or {}),
        )


# =============================================================================
# CASE STEPS
# =============================================================================

class CaseStepDB(Base):
    """
    One scheduled occurrence of a workflow step inside a credit case.
    scheduled_at is moved onto a business day on every assignment.
    """
    __tablename__ = "case_steps"
    __table_args__ = (
        # NULL workflow_step_id (ad hoc steps) never collides
        UniqueConstraint("credit_case_id", "workflow_step_id", name="uq_case_steps_case_workflow_step"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    credit_case_id = Column(String(36), ForeignKey("credit_cases.id", ondelete="CASCADE"), nullable=False, index=True)
    workflow_step_id = Column(String(36), ForeignKey("workflow_steps.id"), nullable=True, index=True)

    label = Column(String(255), nullable=True)
    price = Column(Numeric(10, 2), nullable=True)

    # State Machine (plain string column; validation enforces StepState values)
    state = Column(String(20), nullable=False, default=StepState.UNPERFORMED.value, index=True)

    scheduled_at = Column(DateTime, nullable=True, index=True)
    performed_at = Column(DateTime, nullable=True)

    creditor_notified = Column(Boolean, nullable=False, default=False)
    notified_debtor = Column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    credit_case = relationship("CreditCaseDB", back_populates="steps")
    workflow_step = relationship("WorkflowStepDB")
    actions = relationship(
        "CaseActionDB",
        back_populates="step",
        cascade="all, delete-orphan",
        order_by="CaseActionDB.type",
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("id", _uuid())
        kwargs.setdefault("state", StepState.UNPERFORMED.value)
        kwargs.setdefault("creditor_notified", False)
        kwargs.setdefault("notified_debtor", False)
        super().__init__(**kwargs)

    @validates("scheduled_at")
    def _move_to_business_day(self, key, value):
        if value is None:
            return None
        if isinstance(value, date) and not isinstance(value, datetime):
            value = datetime.combine(value, time.min)
        return next_business_day(value)

    @property
    def kind(self) -> StepKind:
        if self.workflow_step is None:
            return StepKind.ORDINARY
        return self.workflow_step.kind

    @property
    def is_performed(self) -> bool:
        return self.state == StepState.PERFORMED.value

    @property
    def history_date(self):
        return self.performed_at or self.scheduled_at

    @property
    def unperformed_actions(self) -> list:
        return [action for action in self.actions if action.state == ActionState.UNPERFORMED.value]


# =============================================================================
# CASE ACTIONS (single-table inheritance on type)
# =============================================================================

class CaseActionDB(Base):
    """
    Atomic task performed as part of a case step.
    Concrete behavior lives in the subclasses below; type drives execution order.
    """
    __tablename__ = "case_actions"

    id = Column(String(36), primary_key=True, default=_uuid)
    case_step_id = Column(String(36), ForeignKey("case_steps.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(50), nullable=False, index=True)
    state = Column(String(20), nullable=False, default=ActionState.UNPERFORMED.value, index=True)
    on = Column("on_condition", String(20), nullable=False, default="perform")

    delay_in_days = Column(Integer, nullable=False, default=0)
    run_at = Column(DateTime, nullable=True)  # Fixed the first time it is computed
    payload = Column(JSON, nullable=True)

    performed_at = Column(DateTime, nullable=True)
    result_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    step = relationship("CaseStepDB", back_populates="actions")

    __mapper_args__ = {
        "polymorphic_on": type,
        "polymorphic_identity": "CaseAction",
    }

    def __init__(self, **kwargs):
        kwargs.setdefault("id", _uuid())
        kwargs.setdefault("state", ActionState.UNPERFORMED.value)
        kwargs.setdefault("on", "perform")
        kwargs.setdefault("delay_in_days", 0)
        super().__init__(**kwargs)

    @property
    def is_performed(self) -> bool:
        return self.state == ActionState.PERFORMED.value

    def run_at_from(self, reference: datetime) -> datetime:
        """Earliest run time relative to the owning step's scheduled time."""
        if self.run_at is None:
            self.run_at = reference + timedelta(days=self.delay_in_days or 0)
        return self.run_at

    def performable(self, context) -> bool:
        return True

    def perform(self, context):
        raise NotImplementedError(f"{self.type} does not implement perform()")


class EmailActionDB(CaseActionDB):
    """Debtor notice sent by email."""
    __mapper_args__ = {"polymorphic_identity": "EmailAction"}

    def performable(self, context) -> bool:
        return bool(context.case.debtor_email)

    def perform(self, context):
        return context.notifier.send_debtor_notice(
            context.case, channel="email", template=(self.payload or {}).get("template")
        )


class FeeActionDB(CaseActionDB):
    """Posts a collection fee to the case."""
    __mapper_args__ = {"polymorphic_identity": "FeeAction"}

    @property
    def amount(self) -> Decimal:
        return Decimal(str((self.payload or {}).get("amount", "0")))

    def performable(self, context) -> bool:
        return self.amount > 0

    def perform(self, context):
        context.case.fees_total = (context.case.fees_total or Decimal("0.00")) + self.amount
        return ActionResult.SUCCESS


class LetterActionDB(CaseActionDB):
    """Debtor notice sent by post."""
    __mapper_args__ = {"polymorphic_identity": "LetterAction"}

    def performable(self, context) -> bool:
        return bool(context.case.debtor_address)

    def perform(self, context):
        return context.notifier.send_debtor_notice(
            context.case, channel="letter", template=(self.payload or {}).get("template")
        )


class TransferActionDB(CaseActionDB):
    """Escalation: hands the case file over to the assigned bailiff."""
    __mapper_args__ = {"polymorphic_identity": "TransferAction"}

    def performable(self, context) -> bool:
        return context.case.bailiff_id is not None

    def perform(self, context):
        return context.notifier.send_bailiff_transfer(context.case)
