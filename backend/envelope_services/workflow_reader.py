"""
Envelope Hub - Workflow Reader

Recomputes the current stage from a stored stage array instead of trusting the
stored is_current/can_start flags.

Those flags drift. The usual cause is a payment callback that marked a stage
`payment_completed` and then never activated the stage after it, which leaves
the envelope stuck with nobody able to act. Every read path goes through
`reconstruct()` so such an envelope is shown (and acted on) as if the missing
activation had happened. The reader never writes the corrected array back.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import StageValidationError
from .stages import (
    Stage, StageStatus, WorkflowDescriptor, WorkflowStatus,
    derive_can_proceed, stages_from_records,
)

logger = logging.getLogger(__name__)


# A stage in one of these statuses is the current stage
_CURRENT_STATUSES = (StageStatus.PENDING, StageStatus.IN_PROGRESS)


class WorkflowReader:

    @staticmethod
    def reconstruct(stored_stages: List[Stage]) -> Tuple[List[Stage], int]:
        """
        Correct the current-stage flags of a stored stage array.

        Single scan in stage order:
        - the first pending/in_progress stage becomes the only current stage,
          and the scan stops
        - a payment_completed stage with a successor makes that successor
          current (un-blocking it if needed) and the scan continues, so the
          last such stage seen wins

        Returns:
            (corrected_stages, current_stage_number); the number is 1 when no
            stage matches. The input list and its stages are not modified.
        """
        stages = sorted((s.copy() for s in stored_stages), key=lambda s: s.stage_number)
        by_number = {s.stage_number: s for s in stages}
        current_stage_number = 1

        for stage in stages:
            if stage.status in _CURRENT_STATUSES:
                current_stage_number = stage.stage_number
                for other in stages:
                    is_current = other.stage_number == current_stage_number
                    other.is_current = is_current
                    other.can_start = is_current or (
                        other.stage_number < current_stage_number
                        and other.status == StageStatus.COMPLETED
                    )
                break

            if stage.status == StageStatus.PAYMENT_COMPLETED:
                successor = by_number.get(stage.stage_number + 1)
                if successor is None:
                    continue
                # No break here: with several payment_completed stages in a row
                # the last one wins. Kept as-is; see DESIGN.md before changing.
                current_stage_number = successor.stage_number
                successor.is_current = True
                successor.can_start = True
                if successor.status == StageStatus.BLOCKED:
                    logger.debug(
                        "Un-blocking stage %s after paid stage %s",
                        successor.stage_number, stage.stage_number
                    )
                    successor.status = StageStatus.PENDING

        return stages, current_stage_number

    @staticmethod
    def read_envelope(envelope: Dict[str, Any]) -> WorkflowDescriptor:
        """Build the corrected workflow view of a stored envelope record."""
        stored = stages_from_records(envelope.get("workflow_stages"))
        stages, current_stage_number = WorkflowReader.reconstruct(stored)

        raw_status = envelope.get("workflow_status") or WorkflowStatus.NOT_STARTED.value
        try:
            workflow_status = WorkflowStatus(raw_status)
        except ValueError:
            raise StageValidationError(
                f"Unknown workflow status '{raw_status}'",
                details={"envelope_id": envelope.get("id")}
            )

        return WorkflowDescriptor(
            envelope_id=envelope.get("id"),
            tracking_number=envelope.get("tracking_number"),
            workflow_status=workflow_status,
            stages=stages,
            current_stage=current_stage_number,
            can_proceed=derive_can_proceed(stages),
        )

    @staticmethod
    def get_current_stage(stages: List[Stage]) -> Optional[Stage]:
        for stage in stages:
            if stage.is_current and stage.can_start:
                return stage
        return None

    @staticmethod
    def summarize(stages: List[Stage]) -> Dict[str, Any]:
        """Progress figures for dashboards and envelope cards."""
        total = len(stages)
        completed = sum(1 for s in stages if s.status == StageStatus.COMPLETED)
        total_fees = sum(s.payment_amount for s in stages if s.payment_required)
        outstanding_fees = sum(
            s.payment_amount for s in stages
            if s.payment_required and s.status not in (StageStatus.COMPLETED, StageStatus.PAYMENT_COMPLETED)
        )
        current = WorkflowReader.get_current_stage(stages)

        return {
            "total_stages": total,
            "completed_stages": completed,
            "progress_percent": round(completed / total * 100, 1) if total else 0.0,
            "total_fees": total_fees,
            "outstanding_fees": outstanding_fees,
            "current_legal_entity_name": current.legal_entity_name if current else None,
        }
