"""
Envelope Hub - Sequential Workflow Service

Runs workflow operations against an envelope store:

1. Reads the envelope record
2. Repairs the stored stage array with WorkflowReader
3. Computes the transition with StageTransitionEngine (pure, validated)
4. Writes the result back in a single update

Nothing is written when any step before the write fails. There is no locking
and no retry: two transitions racing on the same envelope both succeed and
the later write wins. Callers that need more must re-read and decide.

Usage:
    store = MongoEnvelopeStore(db.envelopes)
    service = SequentialWorkflowService(store)

    await service.create_workflow(envelope_id, approvals)
    await service.start_workflow(envelope_id, started_by=user_id)
    await service.complete_stage(envelope_id, 1, completed_by=entity_user_id)
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from .envelope_store import EnvelopeStore
from .errors import InvalidStateError, PersistenceError, WorkflowError
from .stage_orderer import StageOrderer
from .stages import (
    RequiredApproval, Stage, WorkflowDescriptor, WorkflowStatus, EnvelopeStatus,
    WorkflowEvent, WorkflowHistoryEntry,
    stages_from_records, stages_to_records, validate_stages, derive_can_proceed,
)
from .workflow_builder import WorkflowBuilder
from .workflow_config import WORKFLOW_HISTORY_ENABLED
from .workflow_engine import StageTransitionEngine, TransitionResult
from .workflow_reader import WorkflowReader

logger = logging.getLogger(__name__)


# Workflow statuses a workflow can be (re)built or started from
_STARTABLE_STATUSES = (WorkflowStatus.NOT_STARTED, WorkflowStatus.DRAFT)


class SequentialWorkflowService:
    """Envelope-level workflow operations on top of an EnvelopeStore."""

    def __init__(self, store: EnvelopeStore, history_enabled: bool = WORKFLOW_HISTORY_ENABLED):
        """
        Args:
            store: Where envelope records are read from and written to
            history_enabled: Append a workflow_history entry on every write
        """
        self.store = store
        self.history_enabled = history_enabled

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _with_history(
        self,
        envelope: Dict[str, Any],
        updates: Dict[str, Any],
        entry: WorkflowHistoryEntry
    ) -> Dict[str, Any]:
        if self.history_enabled:
            history = list(envelope.get("workflow_history") or [])
            history.append(entry.to_dict())
            updates["workflow_history"] = history
        return updates

    async def _write(self, envelope_id: str, updates: Dict[str, Any], event: str) -> Dict[str, Any]:
        try:
            return await self.store.update_envelope(envelope_id, updates)
        except PersistenceError:
            logger.error(
                "Workflow write failed: envelope=%s, event=%s, store=%s",
                envelope_id, event, self.store.get_store_name()
            )
            raise

    @staticmethod
    def _stored_workflow_status(envelope: Dict[str, Any]) -> WorkflowStatus:
        stages = stages_from_records(envelope.get("workflow_stages"))
        return StageTransitionEngine.get_workflow_status(stages, envelope.get("workflow_status"))

    async def _transition(
        self,
        envelope_id: str,
        stage_number: int,
        event: WorkflowEvent,
        apply: Callable[..., TransitionResult],
        **kwargs
    ) -> TransitionResult:
        """Read, repair, transition and write one envelope."""
        envelope = await self.store.get_envelope(envelope_id)
        stored = stages_from_records(envelope.get("workflow_stages"))
        stages, _ = WorkflowReader.reconstruct(stored)

        try:
            result = apply(
                stages,
                stage_number,
                workflow_status=envelope.get("workflow_status"),
                **kwargs
            )
        except WorkflowError as e:
            logger.warning(
                "Invalid workflow transition: envelope=%s, stage=%s, event=%s, reason=%s",
                envelope_id, stage_number, event.value, e.message
            )
            raise

        updates = self._with_history(envelope, result.envelope_updates(), result.history_entry)
        await self._write(envelope_id, updates, event.value)

        logger.info(
            "Workflow transition: envelope=%s, stage=%s, %s -> %s (event=%s, actor=%s, workflow=%s)",
            envelope_id, stage_number, result.history_entry.from_status,
            result.history_entry.to_status, event.value, result.history_entry.actor,
            result.workflow_status.value
        )
        return result

    # -------------------------------------------------------------------------
    # Workflow lifecycle
    # -------------------------------------------------------------------------

    async def create_workflow(
        self,
        envelope_id: str,
        approvals: List[RequiredApproval],
        tracking_number: Optional[str] = None,
        created_by: str = "system"
    ) -> WorkflowDescriptor:
        """
        Order the approvals, build the draft stage array and store it.

        A draft workflow can be rebuilt; one that has been started cannot.
        """
        envelope = await self.store.get_envelope(envelope_id)
        current_status = self._stored_workflow_status(envelope)
        if current_status not in _STARTABLE_STATUSES:
            raise InvalidStateError(
                f"Workflow is already {current_status.value}",
                details={"envelope_id": envelope_id, "workflow_status": current_status.value}
            )

        tracking_number = tracking_number or envelope.get("tracking_number")
        descriptor = WorkflowBuilder.build(
            StageOrderer.order(approvals), envelope_id, tracking_number
        )
        validate_stages(descriptor.stages)

        entry = WorkflowHistoryEntry(
            event=WorkflowEvent.ON_CREATED,
            to_status=WorkflowStatus.DRAFT,
            actor=created_by,
            metadata={
                "total_stages": descriptor.total_stages,
                "legal_entity_ids": [s.legal_entity_id for s in descriptor.stages],
            },
        )
        updates = {
            "workflow_stages": stages_to_records(descriptor.stages),
            "workflow_status": descriptor.workflow_status.value,
            "current_stage": descriptor.current_stage,
            "total_stages": descriptor.total_stages,
            "tracking_number": tracking_number,
            "status": EnvelopeStatus.DRAFT.value,
        }
        await self._write(envelope_id, self._with_history(envelope, updates, entry), entry.event)

        logger.info("Workflow created: envelope=%s, stages=%s", envelope_id, descriptor.total_stages)
        return descriptor

    async def start_workflow(self, envelope_id: str, started_by: str = "system") -> WorkflowDescriptor:
        """Send a draft workflow to the legal entity of stage 1."""
        envelope = await self.store.get_envelope(envelope_id)
        current_status = self._stored_workflow_status(envelope)
        if current_status not in _STARTABLE_STATUSES:
            raise InvalidStateError(
                f"Workflow is already {current_status.value}",
                details={"envelope_id": envelope_id, "workflow_status": current_status.value}
            )

        stages, _ = WorkflowReader.reconstruct(stages_from_records(envelope.get("workflow_stages")))
        if not stages:
            raise InvalidStateError(
                "Workflow has no stages to start",
                details={"envelope_id": envelope_id}
            )
        validate_stages(stages)

        first_stage: Stage = stages[0]
        envelope_status = (
            EnvelopeStatus.PENDING_PAYMENT if first_stage.payment_required
            else EnvelopeStatus.PENDING_REVIEW
        )
        entry = WorkflowHistoryEntry(
            event=WorkflowEvent.ON_STARTED,
            stage_number=first_stage.stage_number,
            from_status=current_status,
            to_status=WorkflowStatus.IN_PROGRESS,
            actor=started_by,
            metadata={"legal_entity_id": first_stage.legal_entity_id},
        )
        updates = {
            "workflow_stages": stages_to_records(stages),
            "workflow_status": WorkflowStatus.IN_PROGRESS.value,
            "current_stage": first_stage.stage_number,
            "legal_entity_id": first_stage.legal_entity_id,
            "status": envelope_status.value,
        }
        await self._write(envelope_id, self._with_history(envelope, updates, entry), entry.event)

        logger.info(
            "Workflow started: envelope=%s, first legal entity=%s",
            envelope_id, first_stage.legal_entity_name
        )
        return WorkflowDescriptor(
            envelope_id=envelope_id,
            tracking_number=envelope.get("tracking_number"),
            workflow_status=WorkflowStatus.IN_PROGRESS,
            stages=stages,
            current_stage=first_stage.stage_number,
            can_proceed=derive_can_proceed(stages),
        )

    async def get_workflow_status(self, envelope_id: str) -> WorkflowDescriptor:
        """Corrected view of an envelope's workflow. Never writes."""
        envelope = await self.store.get_envelope(envelope_id)
        return WorkflowReader.read_envelope(envelope)

    async def get_workflow_summary(self, envelope_id: str) -> Dict[str, Any]:
        """
        Progress figures plus the reconstructed current_stage.

        The two can disagree while the current stage is awaiting payment:
        reconstruct() only recognises pending/in_progress stages and falls
        back to 1, while current_legal_entity_name follows the stored
        is_current/can_start flags. The envelope record's own current_stage
        is the number written by the last transition.
        """
        descriptor = await self.get_workflow_status(envelope_id)
        summary = WorkflowReader.summarize(descriptor.stages)
        summary["envelope_id"] = envelope_id
        summary["workflow_status"] = descriptor.workflow_status.value
        summary["current_stage"] = descriptor.current_stage
        return summary

    # -------------------------------------------------------------------------
    # Stage events
    # -------------------------------------------------------------------------

    async def complete_stage(
        self,
        envelope_id: str,
        stage_number: int,
        completed_by: str,
        notes: Optional[str] = None
    ) -> TransitionResult:
        return await self._transition(
            envelope_id, stage_number, WorkflowEvent.ON_STAGE_COMPLETED,
            StageTransitionEngine.complete_stage,
            completed_by=completed_by, notes=notes,
        )

    async def process_payment(
        self,
        envelope_id: str,
        stage_number: int,
        confirmation: Optional[Dict[str, Any]] = None,
        actor: str = "payment_provider"
    ) -> TransitionResult:
        return await self._transition(
            envelope_id, stage_number, WorkflowEvent.ON_PAYMENT_COMPLETED,
            StageTransitionEngine.process_payment,
            confirmation=confirmation, actor=actor,
        )

    async def confirm_payment(
        self,
        envelope_id: str,
        stage_number: int,
        confirmation: Optional[Dict[str, Any]] = None
    ) -> TransitionResult:
        """
        Entry point for the payment provider callback.

        The caller has already verified the provider's signature and extracted
        the envelope id and stage number from the payment metadata.
        """
        return await self.process_payment(
            envelope_id, stage_number, confirmation=confirmation, actor="payment_webhook"
        )

    async def reject_stage(
        self,
        envelope_id: str,
        stage_number: int,
        reason: str,
        rejected_by: str
    ) -> TransitionResult:
        return await self._transition(
            envelope_id, stage_number, WorkflowEvent.ON_STAGE_REJECTED,
            StageTransitionEngine.reject_stage,
            reason=reason, rejected_by=rejected_by,
        )
