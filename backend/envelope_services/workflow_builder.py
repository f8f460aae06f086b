"""
Envelope Hub - Workflow Builder

Turns an ordered list of required approvals into the stage array stored on the
envelope. Only stage 1 is actionable; everything after it stays blocked until
the stage before it is completed.
"""

from typing import List, Optional

from .stages import (
    RequiredApproval, Stage, StageStatus, PaymentStatus,
    WorkflowDescriptor, WorkflowStatus,
)


def calculate_total_fees(approvals: List[RequiredApproval]) -> int:
    """Total fees in cents across all approvals (missing fee counts as 0)."""
    return sum(a.fee_cents or 0 for a in approvals)


class WorkflowBuilder:

    @staticmethod
    def build_stage(approval: RequiredApproval, index: int) -> Stage:
        """Build the stage for the approval at 0-based position `index`."""
        payment_required = approval.payment_required
        is_first = index == 0

        if not is_first:
            status = StageStatus.BLOCKED
        elif payment_required:
            status = StageStatus.PAYMENT_REQUIRED
        else:
            status = StageStatus.PENDING

        return Stage(
            stage_number=index + 1,
            approval_id=approval.id,
            legal_entity_id=approval.legal_entity_id,
            legal_entity_name=approval.legal_entity_name,
            status=status,
            is_current=is_first,
            can_start=is_first,
            payment_required=payment_required,
            payment_amount=approval.fee_cents or 0,
            payment_status=PaymentStatus.PENDING if payment_required else None,
        )

    @staticmethod
    def build(
        ordered_approvals: List[RequiredApproval],
        envelope_id: str,
        tracking_number: Optional[str] = None
    ) -> WorkflowDescriptor:
        """
        Build a draft workflow from approvals already in stage order.

        The result is a draft with can_proceed False: nothing is actionable
        until the workflow is explicitly started. An empty approval list gives
        a zero-stage workflow; whether such an envelope may be sent is up to
        the caller.
        """
        stages = [
            WorkflowBuilder.build_stage(approval, i)
            for i, approval in enumerate(ordered_approvals)
        ]

        return WorkflowDescriptor(
            envelope_id=envelope_id,
            tracking_number=tracking_number,
            workflow_status=WorkflowStatus.DRAFT,
            stages=stages,
            current_stage=1,
            can_proceed=False,
        )
