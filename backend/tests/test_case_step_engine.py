"""
Tests for the case step engine.

Tests the step state machine end to end against a real session:
1. Validation (case required, known state, one step per case and template)
2. Performability gate and one-day deferral
3. First collection step starts the collection process before any action
4. Final step finishes the case and notifies the creditor once
5. Action failures block the transition, other outcomes do not
6. mark_performed bills the template price and schedules successors
7. Successor scheduling (premature completion, calendar, idempotency)
"""
import pytest
from datetime import datetime
from decimal import Decimal

from app.models.db_models import (
    ActionState, CaseState, CaseStepDB, EmailActionDB, LetterActionDB, StepState,
)
from app.services.collection import (
    CaseActionSet,
    StepOutcome,
    StepTransitionError,
    StepValidationError,
)


def steps_for(db, case, workflow_step):
    return db.query(CaseStepDB).filter(
        CaseStepDB.credit_case_id == case.id,
        CaseStepDB.workflow_step_id == workflow_step.id,
    ).all()


# =============================================================================
# TEST: SCHEDULING AND VALIDATION
# =============================================================================

class TestScheduleAndValidate:

    def test_schedule_first_step_clones_template_actions(self, engine, case, workflow):
        """Scheduling a step copies the template actions onto it."""
        step = engine.schedule_step(case, workflow["1"], datetime(2024, 1, 8, 9, 0))

        assert step.state == StepState.UNPERFORMED.value
        assert step.label == "Aanmaning"
        assert step.scheduled_at == datetime(2024, 1, 8, 9, 0)
        assert sorted(a.type for a in step.actions) == ["EmailAction", "LetterAction"]
        assert all(a.state == ActionState.UNPERFORMED.value for a in step.actions)

    def test_scheduled_on_weekend_moves_to_monday(self, engine, case, workflow):
        """A step scheduled on Saturday lands on Monday."""
        step = engine.schedule_step(case, workflow["1"], datetime(2024, 1, 13, 9, 0))
        assert step.scheduled_at == datetime(2024, 1, 15, 9, 0)

    def test_duplicate_case_template_pair_is_rejected(self, db, engine, case, workflow):
        """A second step for the same case and template is rejected."""
        engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))

        with pytest.raises(StepValidationError) as exc_info:
            engine.schedule_step(case, workflow["2"], datetime(2024, 1, 9, 9, 0))

        assert "already has a step" in str(exc_info.value)
        db.flush()
        assert len(steps_for(db, case, workflow["2"])) == 1
        assert len(case.steps) == 1

    def test_ad_hoc_steps_are_exempt_from_uniqueness(self, engine, case):
        """Steps without a template may repeat within a case."""
        first = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0), label="Telefonisch contact")
        second = engine.schedule_step(case, None, datetime(2024, 1, 9, 9, 0), label="Telefonisch contact")

        assert first.id != second.id
        assert first.actions == []

    def test_same_template_on_another_case_is_allowed(self, engine, case, case_factory, workflow):
        """Uniqueness is per case."""
        other = case_factory(reference="INV-2024-0043")

        engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        engine.schedule_step(other, workflow["2"], datetime(2024, 1, 8, 9, 0))

    def test_case_is_required(self, engine):
        """A step without a case fails validation."""
        step = CaseStepDB(scheduled_at=datetime(2024, 1, 8, 9, 0))

        assert "credit case is required" in engine.validate(step)
        with pytest.raises(StepValidationError):
            engine.save(step)

    def test_state_must_be_known(self, engine, case):
        """An unknown state fails validation."""
        step = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0))
        step.state = "cancelled"

        errors = engine.validate(step)

        assert len(errors) == 1
        assert "cancelled" in errors[0]

    def test_saving_a_valid_step_does_not_conflict_with_itself(self, engine, case, workflow):
        """A saved step is not its own duplicate."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        assert engine.validate(step) == []


# =============================================================================
# TEST: PERFORMABILITY GATE
# =============================================================================

class TestDeferral:

    @pytest.mark.parametrize("state", [CaseState.PAUSED, CaseState.CLOSED])
    def test_step_of_inactive_case_defers_one_business_day(self, engine, notifier, case, workflow, state):
        """Paused or closed case: the step moves one business day, nothing runs."""
        # Friday
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 12, 9, 0))
        case.state = state

        outcome = engine.perform(step)

        assert outcome == StepOutcome.DEFERRED
        assert step.scheduled_at == datetime(2024, 1, 15, 9, 0)
        assert step.state == StepState.UNPERFORMED.value
        assert len(step.actions) == 3
        assert all(a.state == ActionState.UNPERFORMED.value for a in step.actions)
        notifier.send_debtor_notice.assert_not_called()
        assert case.billing_price is None

    def test_finished_case_is_performable(self, engine, case):
        """Steps of a finished case still run."""
        step = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0))
        case.state = CaseState.FINISHED

        assert engine.is_performable(step)
        assert engine.perform(step) == StepOutcome.PERFORMED

    def test_deferral_survives_adding_an_action(self, db, engine, case):
        """Adding an action after a deferral keeps the step on the deferred day."""
        step = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0))
        action_set = CaseActionSet(db, step)
        action_set.add(EmailActionDB(delay_in_days=0))
        case.state = CaseState.PAUSED

        assert engine.perform(step) == StepOutcome.DEFERRED
        assert step.scheduled_at == datetime(2024, 1, 9, 9, 0)

        action_set.add(EmailActionDB(delay_in_days=0))

        assert step.scheduled_at == datetime(2024, 1, 9, 9, 0)

    def test_deferral_survives_removing_an_action(self, db, engine, case):
        """Removing an action after a deferral counts delays from the deferred day."""
        step = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0))
        action_set = CaseActionSet(db, step)
        email = EmailActionDB(delay_in_days=0)
        action_set.add(email)
        action_set.add(LetterActionDB(delay_in_days=1))
        case.state = CaseState.PAUSED

        engine.perform(step)
        action_set.remove(email)

        # Letter runs one day after the deferred Tuesday
        assert step.scheduled_at == datetime(2024, 1, 10, 9, 0)

    def test_final_step_deferral_survives_adding_an_action(self, db, engine, case, workflow):
        """The final step's daily move is not undone by a later action change."""
        step = engine.schedule_step(case, workflow["6"], datetime(2024, 1, 8, 9, 0))

        assert engine.perform(step) == StepOutcome.CASE_FINISHED
        CaseActionSet(db, step).add(EmailActionDB(delay_in_days=0))

        assert step.scheduled_at == datetime(2024, 1, 9, 9, 0)


# =============================================================================
# TEST: ORDINARY PERFORMANCE
# =============================================================================

class TestPerform:

    def test_all_actions_succeed(self, db, engine, notifier, clock, case, workflow):
        """All actions succeed: step performed and price billed."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))

        outcome = engine.perform(step)

        assert outcome == StepOutcome.PERFORMED
        assert step.state == StepState.PERFORMED.value
        assert step.performed_at == clock.now
        assert all(a.state == ActionState.PERFORMED.value for a in step.actions)
        assert case.billing_price == Decimal("7.50")
        assert case.fees_total == Decimal("15.00")
        assert notifier.send_debtor_notice.call_count == 2

    def test_performed_step_schedules_successor(self, db, engine, case, workflow):
        """Performing a step schedules its successor with template actions."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))

        engine.perform(step)

        successors = steps_for(db, case, workflow["3"])
        assert len(successors) == 1
        assert successors[0].scheduled_at == datetime(2024, 1, 22, 9, 0)
        assert successors[0].state == StepState.UNPERFORMED.value
        assert sorted(a.type for a in successors[0].actions) == ["EmailAction", "LetterAction"]

    def test_failed_action_keeps_step_unperformed(self, db, engine, notifier, case, workflow):
        """A failed action blocks the step but siblings still run."""
        notifier.send_debtor_notice.return_value = False
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))

        outcome = engine.perform(step)

        assert outcome == StepOutcome.ACTIONS_FAILED
        assert step.state == StepState.UNPERFORMED.value
        assert step.performed_at is None
        assert case.billing_price is None
        assert steps_for(db, case, workflow["3"]) == []
        # Siblings still ran
        fee = next(a for a in step.actions if a.type == "FeeAction")
        assert fee.state == ActionState.PERFORMED.value
        assert notifier.send_debtor_notice.call_count == 2

    def test_failed_step_retries_only_unperformed_actions(self, engine, notifier, case, workflow):
        """A retry runs only the actions that did not succeed."""
        notifier.send_debtor_notice.return_value = False
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        engine.perform(step)

        notifier.send_debtor_notice.return_value = True
        outcome = engine.perform(step)

        assert outcome == StepOutcome.PERFORMED
        # The fee was posted once
        assert case.fees_total == Decimal("15.00")

    def test_indeterminate_result_does_not_block_step(self, engine, notifier, case, workflow):
        """An unclear action result does not block the step."""
        notifier.send_debtor_notice.return_value = None
        step = engine.schedule_step(case, workflow["1"], datetime(2024, 1, 8, 9, 0))

        outcome = engine.perform(step)

        assert outcome == StepOutcome.PERFORMED
        assert all(a.state == ActionState.UNPERFORMED.value for a in step.actions)

    def test_zero_price_still_initializes_billing(self, engine, case, workflow):
        """A zero price sets the billing total to 0.00."""
        step = engine.schedule_step(case, workflow["1"], datetime(2024, 1, 8, 9, 0))

        engine.perform(step)

        assert case.billing_price == Decimal("0.00")

    def test_ad_hoc_step_without_actions(self, engine, case):
        """An ad hoc step performs and bills nothing."""
        step = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0), label="Dossiercontrole")

        assert engine.perform(step) == StepOutcome.PERFORMED
        assert case.billing_price == Decimal("0.00")

    def test_performing_twice_is_a_no_op(self, engine, notifier, case, workflow):
        """A performed step is never performed again."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        engine.perform(step)

        assert engine.perform(step) == StepOutcome.ALREADY_PERFORMED
        assert case.billing_price == Decimal("7.50")
        assert notifier.send_debtor_notice.call_count == 2

    def test_billing_accumulates_over_steps(self, engine, clock, case, workflow):
        """Prices of consecutive steps add up on the case."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        engine.perform(step)

        clock.now = datetime(2024, 1, 22, 9, 0)
        successor = next(s for s in case.steps if s.workflow_step is workflow["3"])
        engine.perform(successor)

        assert case.billing_price == Decimal("15.00")


# =============================================================================
# TEST: FIRST COLLECTION STEP
# =============================================================================

class TestFirstCollectionStep:

    def test_starts_collection_process(self, engine, clock, case, workflow):
        """The first step starts collection and computes costs."""
        step = engine.schedule_step(case, workflow["1"], datetime(2024, 1, 8, 9, 0))

        engine.perform(step)

        assert case.collection_started_at == clock.now
        assert case.collection_costs == Decimal("150.00")
        assert case.state == CaseState.OPEN

    def test_runs_before_actions_even_when_actions_fail(self, engine, notifier, monkeypatch, case, workflow):
        """Collection start and price update run once, before any action."""
        calls = []
        ledger = engine.ledger
        start = ledger.start_collections_process
        update_prices = ledger.update_prices

        def recording_start(c, now):
            calls.append("start_collections_process")
            return start(c, now)

        def recording_update(c):
            calls.append("update_prices")
            return update_prices(c)

        def failing_notice(*args, **kwargs):
            calls.append("action")
            return False

        monkeypatch.setattr(ledger, "start_collections_process", recording_start)
        monkeypatch.setattr(ledger, "update_prices", recording_update)
        notifier.send_debtor_notice.side_effect = failing_notice
        step = engine.schedule_step(case, workflow["1"], datetime(2024, 1, 8, 9, 0))

        outcome = engine.perform(step)

        assert outcome == StepOutcome.ACTIONS_FAILED
        assert calls == ["start_collections_process", "update_prices", "action", "action"]


# =============================================================================
# TEST: FINAL STEP
# =============================================================================

class TestFinalStep:

    def test_finishes_case_without_bailiff_forwarding(self, db, engine, notifier, clock, case, workflow):
        """The final step finishes the case instead of performing."""
        step = engine.schedule_step(case, workflow["6"], datetime(2024, 1, 8, 9, 0))

        outcome = engine.perform(step)

        assert outcome == StepOutcome.CASE_FINISHED
        assert case.state == CaseState.FINISHED
        assert case.finished_at == clock.now
        assert step.creditor_notified is True
        assert step.state == StepState.UNPERFORMED.value
        assert step.scheduled_at == datetime(2024, 1, 9, 9, 0)
        notifier.send_case_finished.assert_called_once_with(case)
        notifier.send_bailiff_transfer.assert_not_called()
        assert case.billing_price is None

    def test_creditor_is_notified_only_once(self, engine, notifier, clock, case, workflow):
        """A repeated final step does not notify the creditor again."""
        step = engine.schedule_step(case, workflow["6"], datetime(2024, 1, 8, 9, 0))
        engine.perform(step)
        finished_at = case.finished_at

        clock.advance(days=1)
        outcome = engine.perform(step)

        assert outcome == StepOutcome.CASE_FINISHED
        notifier.send_case_finished.assert_called_once()
        assert case.finished_at == finished_at
        assert step.scheduled_at == datetime(2024, 1, 10, 9, 0)

    def test_autoforward_without_bailiff_still_finishes(self, engine, case_factory, workflow):
        """Auto-forward without a bailiff still finishes the case."""
        case = case_factory(autoforward=True, bailiff_id=None)
        step = engine.schedule_step(case, workflow["6"], datetime(2024, 1, 8, 9, 0))

        assert engine.perform(step) == StepOutcome.CASE_FINISHED

    def test_autoforward_with_bailiff_transfers_case(self, engine, notifier, case_factory, workflow):
        """Auto-forward with a bailiff performs the transfer normally."""
        case = case_factory(autoforward=True, bailiff_id="deurwaarder-17")
        step = engine.schedule_step(case, workflow["6"], datetime(2024, 1, 8, 9, 0))

        outcome = engine.perform(step)

        assert outcome == StepOutcome.PERFORMED
        notifier.send_bailiff_transfer.assert_called_once_with(case)
        notifier.send_case_finished.assert_not_called()
        assert case.state == CaseState.OPEN
        assert case.billing_price == Decimal("25.00")


# =============================================================================
# TEST: MARK PERFORMED / SUCCESSORS
# =============================================================================

class TestMarkPerformed:

    def test_cannot_mark_performed_twice(self, engine, case, workflow):
        """mark_performed on a performed step raises and bills nothing."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        engine.mark_performed(step)

        with pytest.raises(StepTransitionError):
            engine.mark_performed(step)
        assert case.billing_price == Decimal("7.50")

    def test_premature_completion_keeps_downstream_schedule(self, engine, clock, case, workflow):
        """Early completion counts successors from the scheduled time."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 22, 9, 0))

        created = engine.mark_performed(step)

        assert step.performed_at == clock.now
        assert [s.scheduled_at for s in created] == [datetime(2024, 2, 5, 9, 0)]

    def test_late_completion_counts_from_now(self, engine, clock, case, workflow):
        """Late completion counts successors from now."""
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))
        clock.now = datetime(2024, 1, 10, 9, 0)

        created = engine.mark_performed(step)

        assert [s.scheduled_at for s in created] == [datetime(2024, 1, 24, 9, 0)]

    def test_successor_on_holiday_moves_forward(self, engine, clock, case, workflow):
        """A successor falling on Christmas moves to the next business day."""
        clock.now = datetime(2024, 12, 18, 9, 0)
        step = engine.schedule_step(case, workflow["3"], datetime(2024, 12, 18, 9, 0))

        created = engine.mark_performed(step)

        # +7 days is Eerste Kerstdag
        assert [s.scheduled_at for s in created] == [datetime(2024, 12, 27, 9, 0)]

    def test_existing_successor_is_not_duplicated(self, db, engine, case, workflow):
        """A successor the case already has is not created again."""
        existing = engine.schedule_step(case, workflow["3"], datetime(2024, 1, 10, 9, 0))
        step = engine.schedule_step(case, workflow["2"], datetime(2024, 1, 8, 9, 0))

        created = engine.mark_performed(step)

        assert created == []
        assert steps_for(db, case, workflow["3"]) == [existing]

    def test_last_step_has_no_successors(self, engine, case, workflow):
        """The last template schedules nothing."""
        step = engine.schedule_step(case, workflow["6"], datetime(2024, 1, 8, 9, 0))
        assert engine.schedule_next(step) == []

    def test_ad_hoc_step_has_no_successors(self, engine, case):
        """An ad hoc step schedules nothing."""
        step = engine.schedule_step(case, None, datetime(2024, 1, 8, 9, 0))
        assert engine.schedule_next(step) == []
