"""
Envelope Hub - Sequential Stage Transition Engine

This module implements the state machine that moves an envelope through its
approval stages one legal entity at a time.

The engine is pure business logic with no direct HTTP or DB calls. Every
transition takes the full stage array, works on copies, validates the new
array and returns it together with the envelope fields to write. Nothing is
returned unless the whole transition succeeded, so callers issue exactly one
write per event or none at all.

Events:
- on_stage_completed: the current legal entity approved its stage
- on_payment_completed: the fee for the current stage was paid. Payment counts
  as approval; fee-gated stages have no separate review step after payment.
- on_stage_rejected: the current legal entity rejected; every later stage is
  blocked and the workflow ends
"""

from dataclasses import dataclass
from typing import Optional, Dict, List, Tuple, Any

from .errors import NotFoundError, InvalidStateError, WorkflowError
from .stages import (
    Stage, StageStatus, PaymentStatus, WorkflowStatus, EnvelopeStatus,
    WorkflowEvent, WorkflowHistoryEntry, TERMINAL_WORKFLOW_STATUSES,
    stages_to_records, validate_stages, utc_now,
)


# =============================================================================
# TRANSITION RESULT
# =============================================================================

@dataclass
class TransitionResult:
    """Outcome of one successful transition, ready to be persisted."""
    event: WorkflowEvent
    stage_number: int
    stages: List[Stage]
    workflow_status: WorkflowStatus
    envelope_status: EnvelopeStatus
    current_stage: int
    history_entry: WorkflowHistoryEntry
    next_stage: Optional[Stage] = None

    @property
    def stage(self) -> Stage:
        return StageTransitionEngine.find_stage(self.stages, self.stage_number)

    def envelope_updates(self) -> Dict[str, Any]:
        """Fields to write on the envelope record in a single update."""
        updates = {
            "workflow_stages": stages_to_records(self.stages),
            "current_stage": self.current_stage,
            "workflow_status": self.workflow_status.value,
            "status": self.envelope_status.value,
        }
        if self.next_stage is not None:
            updates["legal_entity_id"] = self.next_stage.legal_entity_id
        return updates


# =============================================================================
# MAIN ENGINE
# =============================================================================

class StageTransitionEngine:
    """
    Sequential stage state machine.

    Only the current stage can be acted on. Completing it (or paying for it)
    hands the envelope to the next legal entity; rejecting it ends the workflow.
    """

    @staticmethod
    def find_stage(stages: List[Stage], stage_number: int) -> Optional[Stage]:
        for stage in stages:
            if stage.stage_number == stage_number:
                return stage
        return None

    @staticmethod
    def get_stage(stages: List[Stage], stage_number: int) -> Stage:
        stage = StageTransitionEngine.find_stage(stages, stage_number)
        if stage is None:
            raise NotFoundError(
                f"Stage {stage_number} does not exist",
                details={"stage_number": stage_number, "total_stages": len(stages)}
            )
        return stage

    @staticmethod
    def get_workflow_status(
        stages: List[Stage],
        workflow_status: Optional[str] = None
    ) -> WorkflowStatus:
        """Stored workflow status, or rejected if a stage says so."""
        if any(s.status == StageStatus.REJECTED for s in stages):
            return WorkflowStatus.REJECTED
        if workflow_status is None:
            return WorkflowStatus.NOT_STARTED
        try:
            return WorkflowStatus(workflow_status)
        except ValueError:
            raise InvalidStateError(
                f"Unknown workflow status '{workflow_status}'",
                details={"workflow_status": workflow_status}
            )

    @staticmethod
    def check_event(
        stages: List[Stage],
        stage_number: int,
        event: WorkflowEvent,
        workflow_status: Optional[str] = None
    ) -> Stage:
        """
        Check that `event` may be applied to `stage_number`.

        Returns:
            The target stage from `stages`

        Raises:
            NotFoundError: the stage number does not exist
            InvalidStateError: the workflow or stage is not in the required state
        """
        stage = StageTransitionEngine.get_stage(stages, stage_number)
        status = StageTransitionEngine.get_workflow_status(stages, workflow_status)
        event_key = event.value if isinstance(event, WorkflowEvent) else event

        if status in TERMINAL_WORKFLOW_STATUSES:
            raise InvalidStateError(
                f"Workflow is {status.value}; no further transitions are allowed",
                details={"workflow_status": status.value, "event": event_key}
            )
        if stage.is_terminal:
            raise InvalidStateError(
                f"Stage {stage_number} is already {stage.status.value}",
                details={"stage_number": stage_number, "status": stage.status.value}
            )
        if not stage.is_current:
            raise InvalidStateError(
                f"Stage {stage_number} is not the current stage",
                details={"stage_number": stage_number, "status": stage.status.value}
            )

        if event_key == WorkflowEvent.ON_PAYMENT_COMPLETED.value:
            if not stage.payment_required:
                raise InvalidStateError(
                    f"Stage {stage_number} has no fee to pay",
                    details={"stage_number": stage_number}
                )
            if stage.payment_status == PaymentStatus.COMPLETED:
                raise InvalidStateError(
                    f"Payment for stage {stage_number} is already completed",
                    details={"stage_number": stage_number}
                )
        elif event_key == WorkflowEvent.ON_STAGE_COMPLETED.value:
            if stage.payment_required and stage.payment_status != PaymentStatus.COMPLETED:
                raise InvalidStateError(
                    f"Stage {stage_number} cannot be completed before its fee is paid",
                    details={
                        "stage_number": stage_number,
                        "payment_status": stage.payment_status.value if stage.payment_status else None,
                    }
                )

        return stage

    @staticmethod
    def can_transition(
        stages: List[Stage],
        stage_number: int,
        event: WorkflowEvent,
        workflow_status: Optional[str] = None
    ) -> Tuple[bool, str]:
        """
        Check if an event is valid without raising.

        Returns:
            (can_transition, reason)
        """
        try:
            StageTransitionEngine.check_event(stages, stage_number, event, workflow_status)
        except WorkflowError as e:
            return (False, e.message)
        return (True, "Transition allowed")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    @staticmethod
    def _copy_stages(stages: List[Stage]) -> List[Stage]:
        return sorted((s.copy() for s in stages), key=lambda s: s.stage_number)

    @staticmethod
    def _activate_successor(stages: List[Stage], stage_number: int, now: str) -> Optional[Stage]:
        successor = StageTransitionEngine.find_stage(stages, stage_number + 1)
        if successor is None:
            return None
        successor.status = (
            StageStatus.PAYMENT_REQUIRED if successor.payment_required else StageStatus.PENDING
        )
        successor.can_start = True
        successor.is_current = True
        successor.assigned_at = now
        return successor

    @staticmethod
    def _advance(
        stages: List[Stage],
        stage_number: int,
        event: WorkflowEvent,
        history_entry: WorkflowHistoryEntry,
        now: str
    ) -> TransitionResult:
        """Hand the envelope to the next stage, or finish the workflow."""
        successor = StageTransitionEngine._activate_successor(stages, stage_number, now)

        if successor is not None:
            workflow_status = WorkflowStatus.IN_PROGRESS
            envelope_status = (
                EnvelopeStatus.PENDING_PAYMENT if successor.payment_required
                else EnvelopeStatus.PENDING_REVIEW
            )
            current_stage = successor.stage_number
            history_entry.metadata["next_stage"] = successor.stage_number
            history_entry.metadata["next_legal_entity_id"] = successor.legal_entity_id
        else:
            workflow_status = WorkflowStatus.COMPLETED
            envelope_status = EnvelopeStatus.APPROVED
            current_stage = stage_number

        validate_stages(stages)

        return TransitionResult(
            event=event,
            stage_number=stage_number,
            stages=stages,
            workflow_status=workflow_status,
            envelope_status=envelope_status,
            current_stage=current_stage,
            history_entry=history_entry,
            next_stage=successor,
        )

    @staticmethod
    def complete_stage(
        stages: List[Stage],
        stage_number: int,
        completed_by: str,
        notes: Optional[str] = None,
        workflow_status: Optional[str] = None,
        now: Optional[str] = None
    ) -> TransitionResult:
        """
        Complete the current stage after the legal entity's review.

        The stage's can_start flag is left as it was.
        """
        event = WorkflowEvent.ON_STAGE_COMPLETED
        StageTransitionEngine.check_event(stages, stage_number, event, workflow_status)
        now = now or utc_now()

        new_stages = StageTransitionEngine._copy_stages(stages)
        stage = StageTransitionEngine.find_stage(new_stages, stage_number)
        from_status = stage.status

        stage.status = StageStatus.COMPLETED
        stage.completed_at = now
        stage.is_current = False

        history_entry = WorkflowHistoryEntry(
            event=event,
            stage_number=stage_number,
            from_status=from_status,
            to_status=stage.status,
            actor=completed_by,
            reason=notes,
            metadata={"legal_entity_id": stage.legal_entity_id},
        )
        return StageTransitionEngine._advance(
            new_stages, stage_number, event, history_entry, now
        )

    @staticmethod
    def process_payment(
        stages: List[Stage],
        stage_number: int,
        confirmation: Optional[Dict[str, Any]] = None,
        actor: str = "payment_provider",
        workflow_status: Optional[str] = None,
        now: Optional[str] = None
    ) -> TransitionResult:
        """
        Record the fee payment for the current stage.

        Payment completes the stage outright and activates the next one.
        """
        event = WorkflowEvent.ON_PAYMENT_COMPLETED
        StageTransitionEngine.check_event(stages, stage_number, event, workflow_status)
        now = now or utc_now()

        new_stages = StageTransitionEngine._copy_stages(stages)
        stage = StageTransitionEngine.find_stage(new_stages, stage_number)
        from_status = stage.status

        stage.status = StageStatus.COMPLETED
        stage.payment_status = PaymentStatus.COMPLETED
        stage.payment_completed_at = now
        stage.completed_at = now
        stage.is_current = False

        metadata = {
            "legal_entity_id": stage.legal_entity_id,
            "payment_amount": stage.payment_amount,
        }
        if confirmation:
            metadata["confirmation"] = dict(confirmation)

        history_entry = WorkflowHistoryEntry(
            event=event,
            stage_number=stage_number,
            from_status=from_status,
            to_status=stage.status,
            actor=actor,
            metadata=metadata,
        )
        return StageTransitionEngine._advance(
            new_stages, stage_number, event, history_entry, now
        )

    @staticmethod
    def reject_stage(
        stages: List[Stage],
        stage_number: int,
        reason: str,
        rejected_by: str,
        workflow_status: Optional[str] = None,
        now: Optional[str] = None
    ) -> TransitionResult:
        """
        Reject the current stage and block every stage after it.

        Rejection is terminal for the whole workflow.
        """
        event = WorkflowEvent.ON_STAGE_REJECTED
        StageTransitionEngine.check_event(stages, stage_number, event, workflow_status)
        if not reason or not reason.strip():
            raise InvalidStateError(
                "A rejection reason is required",
                details={"stage_number": stage_number}
            )
        now = now or utc_now()

        new_stages = StageTransitionEngine._copy_stages(stages)
        stage = StageTransitionEngine.find_stage(new_stages, stage_number)
        from_status = stage.status

        stage.status = StageStatus.REJECTED
        stage.rejected_at = now
        stage.rejection_reason = reason
        stage.is_current = False

        blocked = []
        for later in new_stages:
            if later.stage_number > stage_number:
                later.status = StageStatus.BLOCKED
                later.can_start = False
                later.is_current = False
                blocked.append(later.stage_number)

        validate_stages(new_stages)

        history_entry = WorkflowHistoryEntry(
            event=event,
            stage_number=stage_number,
            from_status=from_status,
            to_status=stage.status,
            actor=rejected_by,
            reason=reason,
            metadata={"legal_entity_id": stage.legal_entity_id, "blocked_stages": blocked},
        )

        return TransitionResult(
            event=event,
            stage_number=stage_number,
            stages=new_stages,
            workflow_status=WorkflowStatus.REJECTED,
            envelope_status=EnvelopeStatus.REJECTED,
            current_stage=stage_number,
            history_entry=history_entry,
        )
