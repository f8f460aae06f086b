"""
Unit tests for the sequential stage transition engine.
Tests envelope_services/workflow_engine.py
"""
import pytest

from envelope_services.errors import NotFoundError, InvalidStateError
from envelope_services.stages import (
    RequiredApproval, StageStatus, PaymentStatus, WorkflowStatus, EnvelopeStatus,
    WorkflowEvent,
)
from envelope_services.workflow_builder import WorkflowBuilder
from envelope_services.workflow_engine import StageTransitionEngine


NOW = "2026-03-02T10:00:00+00:00"


def build_stages(*fees):
    """Stages for one approval per fee, already in stage order."""
    approvals = [
        RequiredApproval(
            id=f"a{i + 1}",
            name=f"Approval {i + 1}",
            legal_entity_id=f"le-{i + 1}",
            legal_entity_name=f"Entity {i + 1}",
            fee_cents=fee,
        )
        for i, fee in enumerate(fees)
    ]
    return WorkflowBuilder.build(approvals, "env-1").stages


def current_numbers(stages):
    return [s.stage_number for s in stages if s.is_current]


def act_on_current(stages, workflow_status=None):
    """Pay for the current stage if it has an unpaid fee, otherwise complete it."""
    stage = next(s for s in stages if s.is_current)
    if stage.payment_required and stage.payment_status != PaymentStatus.COMPLETED:
        return StageTransitionEngine.process_payment(
            stages, stage.stage_number, workflow_status=workflow_status
        )
    return StageTransitionEngine.complete_stage(
        stages, stage.stage_number, "reviewer", workflow_status=workflow_status
    )


class TestCompleteStage:
    """ON_STAGE_COMPLETED transitions."""

    def test_complete_activates_next_stage(self):
        stages = build_stages(None, None, None)
        result = StageTransitionEngine.complete_stage(stages, 1, "officer-1", now=NOW)

        first, second, third = result.stages
        assert first.status == StageStatus.COMPLETED
        assert first.completed_at == NOW
        assert first.is_current is False
        assert second.status == StageStatus.PENDING
        assert second.is_current is True
        assert second.can_start is True
        assert second.assigned_at == NOW
        assert third.status == StageStatus.BLOCKED

        assert result.workflow_status == WorkflowStatus.IN_PROGRESS
        assert result.envelope_status == EnvelopeStatus.PENDING_REVIEW
        assert result.current_stage == 2
        assert result.next_stage.stage_number == 2

    def test_next_stage_with_fee_requires_payment(self):
        stages = build_stages(None, 2500)
        result = StageTransitionEngine.complete_stage(stages, 1, "officer-1")

        assert result.stages[1].status == StageStatus.PAYMENT_REQUIRED
        assert result.envelope_status == EnvelopeStatus.PENDING_PAYMENT

    def test_completing_last_stage_finishes_workflow(self):
        stages = build_stages(None, None)
        stages = StageTransitionEngine.complete_stage(stages, 1, "officer-1").stages
        result = StageTransitionEngine.complete_stage(stages, 2, "officer-2")

        assert result.workflow_status == WorkflowStatus.COMPLETED
        assert result.envelope_status == EnvelopeStatus.APPROVED
        assert result.current_stage == 2
        assert result.next_stage is None
        assert current_numbers(result.stages) == []
        assert all(s.status == StageStatus.COMPLETED for s in result.stages)

    def test_can_start_is_left_alone(self):
        stages = build_stages(None, None)
        result = StageTransitionEngine.complete_stage(stages, 1, "officer-1")
        assert result.stages[0].can_start is True

    def test_history_entry(self):
        stages = build_stages(None, None)
        result = StageTransitionEngine.complete_stage(stages, 1, "officer-1", notes="all good")
        entry = result.history_entry.to_dict()

        assert entry["event"] == "on_stage_completed"
        assert entry["stage_number"] == 1
        assert entry["from_status"] == "pending"
        assert entry["to_status"] == "completed"
        assert entry["actor"] == "officer-1"
        assert entry["reason"] == "all good"
        assert entry["metadata"]["next_stage"] == 2
        assert entry["metadata"]["next_legal_entity_id"] == "le-2"

    def test_unpaid_stage_cannot_be_completed(self):
        stages = build_stages(5000, None)
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.complete_stage(stages, 1, "officer-1")

    def test_input_stages_not_modified(self):
        stages = build_stages(None, None)
        before = [s.to_dict() for s in stages]
        StageTransitionEngine.complete_stage(stages, 1, "officer-1")
        assert [s.to_dict() for s in stages] == before


class TestProcessPayment:
    """ON_PAYMENT_COMPLETED transitions."""

    def test_payment_completes_stage_and_activates_next(self):
        stages = build_stages(5000, None)
        result = StageTransitionEngine.process_payment(stages, 1, now=NOW)

        first, second = result.stages
        assert first.status == StageStatus.COMPLETED
        assert first.payment_status == PaymentStatus.COMPLETED
        assert first.payment_completed_at == NOW
        assert first.is_current is False
        assert second.is_current is True
        assert second.can_start is True
        assert second.status == StageStatus.PENDING

    def test_next_stage_status_follows_its_own_fee(self):
        stages = build_stages(5000, 1200)
        result = StageTransitionEngine.process_payment(stages, 1)

        assert result.stages[1].status == StageStatus.PAYMENT_REQUIRED
        assert result.stages[1].payment_status == PaymentStatus.PENDING

    def test_payment_metadata(self):
        stages = build_stages(5000)
        result = StageTransitionEngine.process_payment(
            stages, 1, confirmation={"payment_reference": "pi_123"}, actor="payment_webhook"
        )
        entry = result.history_entry

        assert entry.actor == "payment_webhook"
        assert entry.metadata["payment_amount"] == 5000
        assert entry.metadata["confirmation"] == {"payment_reference": "pi_123"}
        assert result.workflow_status == WorkflowStatus.COMPLETED

    def test_stage_without_fee_cannot_be_paid(self):
        stages = build_stages(None, None)
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.process_payment(stages, 1)

    def test_paid_stage_cannot_be_paid_again(self):
        stages = build_stages(5000, None)
        stages[0].payment_status = PaymentStatus.COMPLETED
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.process_payment(stages, 1)

    def test_paid_but_open_stage_can_be_completed(self):
        stages = build_stages(5000, None)
        stages[0].payment_status = PaymentStatus.COMPLETED
        result = StageTransitionEngine.complete_stage(stages, 1, "officer-1")
        assert result.current_stage == 2


class TestRejectStage:
    """ON_STAGE_REJECTED transitions."""

    def test_reject_first_of_two(self):
        stages = build_stages(None, None)
        result = StageTransitionEngine.reject_stage(stages, 1, "missing doc", "partyX", now=NOW)

        first, second = result.stages
        assert first.status == StageStatus.REJECTED
        assert first.rejection_reason == "missing doc"
        assert first.rejected_at == NOW
        assert second.status == StageStatus.BLOCKED
        assert second.can_start is False
        assert result.workflow_status == WorkflowStatus.REJECTED
        assert result.envelope_status == EnvelopeStatus.REJECTED
        assert result.current_stage == 1
        assert "legal_entity_id" not in result.envelope_updates()

    def test_reject_blocks_every_later_stage(self):
        stages = build_stages(None, 300, None, None)
        stages = StageTransitionEngine.complete_stage(stages, 1, "officer-1").stages
        stages = StageTransitionEngine.process_payment(stages, 2).stages
        result = StageTransitionEngine.reject_stage(stages, 3, "expired permit", "officer-3")

        assert result.stages[0].status == StageStatus.COMPLETED
        assert result.stages[1].status == StageStatus.COMPLETED
        for stage in result.stages[3:]:
            assert stage.status == StageStatus.BLOCKED
            assert stage.can_start is False
            assert stage.is_current is False
        assert result.history_entry.metadata["blocked_stages"] == [4]
        assert current_numbers(result.stages) == []

    def test_stage_awaiting_payment_can_be_rejected(self):
        stages = build_stages(5000, None)
        result = StageTransitionEngine.reject_stage(stages, 1, "fee waived by mistake", "officer-1")
        assert result.stages[0].status == StageStatus.REJECTED

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_is_required(self, reason):
        stages = build_stages(None)
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.reject_stage(stages, 1, reason, "officer-1")


class TestEventGuards:
    """Events that must be refused."""

    def test_empty_workflow_has_no_stages_to_act_on(self):
        stages = WorkflowBuilder.build([], "env-1").stages
        with pytest.raises(NotFoundError):
            StageTransitionEngine.complete_stage(stages, 1, "officer-1")
        with pytest.raises(NotFoundError):
            StageTransitionEngine.process_payment(stages, 1)
        with pytest.raises(NotFoundError):
            StageTransitionEngine.reject_stage(stages, 1, "no", "officer-1")

    @pytest.mark.parametrize("stage_number", [0, 3, -1, 99])
    def test_unknown_stage_number(self, stage_number):
        stages = build_stages(None, None)
        with pytest.raises(NotFoundError):
            StageTransitionEngine.complete_stage(stages, stage_number, "officer-1")

    def test_non_current_stage(self):
        stages = build_stages(None, None)
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.complete_stage(stages, 2, "officer-2")
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.reject_stage(stages, 2, "too early", "officer-2")

    def test_completed_stage_cannot_be_completed_again(self):
        stages = build_stages(None, None)
        stages = StageTransitionEngine.complete_stage(stages, 1, "officer-1").stages
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.complete_stage(stages, 1, "officer-1")

    def test_completed_workflow_refuses_events(self):
        stages = build_stages(None)
        stages = StageTransitionEngine.complete_stage(stages, 1, "officer-1").stages
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.reject_stage(stages, 1, "late", "officer-1", workflow_status="completed")

    def test_rejected_workflow_refuses_events(self):
        stages = build_stages(None, None)
        stages = StageTransitionEngine.reject_stage(stages, 1, "missing doc", "partyX").stages
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.complete_stage(stages, 2, "officer-2")

    def test_unknown_workflow_status(self):
        stages = build_stages(None)
        with pytest.raises(InvalidStateError):
            StageTransitionEngine.complete_stage(stages, 1, "officer-1", workflow_status="paused")

    @pytest.mark.parametrize("workflow_status", [None, "not_started", "draft", "in_progress"])
    def test_open_workflow_statuses_accept_events(self, workflow_status):
        stages = build_stages(None)
        result = StageTransitionEngine.complete_stage(
            stages, 1, "officer-1", workflow_status=workflow_status
        )
        assert result.workflow_status == WorkflowStatus.COMPLETED

    def test_can_transition(self):
        stages = build_stages(5000, None)

        allowed, reason = StageTransitionEngine.can_transition(
            stages, 1, WorkflowEvent.ON_PAYMENT_COMPLETED
        )
        assert allowed is True

        allowed, reason = StageTransitionEngine.can_transition(
            stages, 1, WorkflowEvent.ON_STAGE_COMPLETED
        )
        assert allowed is False
        assert "fee" in reason

        allowed, reason = StageTransitionEngine.can_transition(
            stages, 5, WorkflowEvent.ON_STAGE_COMPLETED
        )
        assert allowed is False
        assert "does not exist" in reason


class TestSequences:
    """Properties over whole event sequences."""

    @pytest.mark.parametrize("fees", [
        (None,),
        (None, None, None),
        (5000, None, 1200),
        (100, 200, 300, 400),
        (None, 700, None, None, 900),
    ])
    def test_at_most_one_current_stage(self, fees):
        stages = build_stages(*fees)
        assert len(current_numbers(stages)) <= 1

        for _ in range(len(fees) * 2):
            if not current_numbers(stages):
                break
            result = act_on_current(stages)
            stages = result.stages
            assert len(current_numbers(stages)) <= 1

        assert result.workflow_status == WorkflowStatus.COMPLETED
        assert current_numbers(stages) == []

    @pytest.mark.parametrize("reject_at", [1, 2, 3])
    def test_rejection_after_progress(self, reject_at):
        stages = build_stages(None, 500, None)
        for _ in range(reject_at - 1):
            stages = act_on_current(stages).stages

        result = StageTransitionEngine.reject_stage(stages, reject_at, "missing doc", "partyX")

        assert len(current_numbers(result.stages)) == 0
        for stage in result.stages:
            if stage.stage_number > reject_at:
                assert stage.status == StageStatus.BLOCKED
                assert stage.can_start is False

    def test_envelope_updates(self):
        stages = build_stages(None, 2500)
        result = StageTransitionEngine.complete_stage(stages, 1, "officer-1")
        updates = result.envelope_updates()

        assert updates["current_stage"] == 2
        assert updates["workflow_status"] == "in_progress"
        assert updates["status"] == "pending_payment"
        assert updates["legal_entity_id"] == "le-2"
        assert updates["workflow_stages"][0]["status"] == "completed"
        assert result.stage.stage_number == 1

        final = StageTransitionEngine.process_payment(result.stages, 2).envelope_updates()
        assert final["status"] == "approved"
        assert final["workflow_status"] == "completed"
        assert "legal_entity_id" not in final


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
