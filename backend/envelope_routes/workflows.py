"""
Envelope Hub - Workflows Router

Sequential workflow creation, stage transitions and payment confirmation.
"""

from fastapi import APIRouter, HTTPException
from typing import Optional, List
from pydantic import BaseModel, Field
import logging

from envelope_services import (
    SequentialWorkflowService, RequiredApproval, TransitionResult,
    WorkflowDescriptor, WorkflowError, NotFoundError, InvalidStateError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/workflows", tags=["workflows"])

# Workflow service - set by main app
workflow_service: Optional[SequentialWorkflowService] = None

def set_dependencies(service: SequentialWorkflowService):
    global workflow_service
    workflow_service = service


# ==================== MODELS ====================

class ApprovalItem(BaseModel):
    id: str
    name: str
    legal_entity_id: str
    legal_entity_name: str
    is_required: bool = True
    fee_cents: Optional[int] = Field(None, ge=0)
    description: Optional[str] = None


class CreateWorkflowRequest(BaseModel):
    approvals: List[ApprovalItem]
    tracking_number: Optional[str] = None
    created_by: str = "system"


class StartWorkflowRequest(BaseModel):
    started_by: str = "system"


class CompleteStageRequest(BaseModel):
    completed_by: str
    notes: Optional[str] = None


class RejectStageRequest(BaseModel):
    reason: str
    rejected_by: str


class StagePaymentRequest(BaseModel):
    payment_reference: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None


class PaymentConfirmation(StagePaymentRequest):
    """Body posted by the payment callback after signature verification."""
    envelope_id: str
    stage_number: int


# ==================== HELPERS ====================

def _http_error(e: WorkflowError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=409, detail=e.message)
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=502, detail=e.message)
    return HTTPException(status_code=400, detail=e.message)


def _transition_response(envelope_id: str, result: TransitionResult) -> dict:
    return {
        "success": True,
        "envelope_id": envelope_id,
        "stage_number": result.stage_number,
        "event": result.event.value,
        "workflow_status": result.workflow_status.value,
        "envelope_status": result.envelope_status.value,
        "current_stage": result.current_stage,
        "next_legal_entity_id": result.next_stage.legal_entity_id if result.next_stage else None,
        "stages": [s.to_dict() for s in result.stages],
    }


def _descriptor_response(descriptor: WorkflowDescriptor) -> dict:
    return descriptor.to_dict()


# ==================== PAYMENT CALLBACK ====================

@router.post("/payments/confirm")
async def confirm_payment(body: PaymentConfirmation):
    """
    Payment provider callback.

    The caller verifies the provider's signature before forwarding the
    envelope id and stage number taken from the payment metadata.
    """
    confirmation = body.model_dump(exclude_none=True, exclude={"envelope_id", "stage_number"})
    try:
        result = await workflow_service.confirm_payment(
            body.envelope_id, body.stage_number, confirmation=confirmation
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _transition_response(body.envelope_id, result)


# ==================== WORKFLOW LIFECYCLE ====================

@router.post("/{envelope_id}")
async def create_workflow(envelope_id: str, body: CreateWorkflowRequest):
    """Order the required approvals and store them as a draft workflow."""
    try:
        approvals = [RequiredApproval(**item.model_dump()) for item in body.approvals]
        descriptor = await workflow_service.create_workflow(
            envelope_id, approvals,
            tracking_number=body.tracking_number,
            created_by=body.created_by
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _descriptor_response(descriptor)


@router.post("/{envelope_id}/start")
async def start_workflow(envelope_id: str, body: Optional[StartWorkflowRequest] = None):
    """Send the envelope to the legal entity of stage 1."""
    started_by = body.started_by if body else "system"
    try:
        descriptor = await workflow_service.start_workflow(envelope_id, started_by=started_by)
    except WorkflowError as e:
        raise _http_error(e)
    return _descriptor_response(descriptor)


@router.get("/{envelope_id}")
async def get_workflow(envelope_id: str):
    """Get the workflow of an envelope with the current stage recomputed."""
    try:
        descriptor = await workflow_service.get_workflow_status(envelope_id)
    except WorkflowError as e:
        raise _http_error(e)
    return _descriptor_response(descriptor)


@router.get("/{envelope_id}/summary")
async def get_workflow_summary(envelope_id: str):
    """Progress and fee figures for an envelope."""
    try:
        return await workflow_service.get_workflow_summary(envelope_id)
    except WorkflowError as e:
        raise _http_error(e)


# ==================== STAGE ACTIONS ====================

@router.post("/{envelope_id}/stages/{stage_number}/complete")
async def complete_stage(envelope_id: str, stage_number: int, body: CompleteStageRequest):
    try:
        result = await workflow_service.complete_stage(
            envelope_id, stage_number, completed_by=body.completed_by, notes=body.notes
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _transition_response(envelope_id, result)


@router.post("/{envelope_id}/stages/{stage_number}/reject")
async def reject_stage(envelope_id: str, stage_number: int, body: RejectStageRequest):
    try:
        result = await workflow_service.reject_stage(
            envelope_id, stage_number, reason=body.reason, rejected_by=body.rejected_by
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _transition_response(envelope_id, result)


@router.post("/{envelope_id}/stages/{stage_number}/payment")
async def pay_stage(envelope_id: str, stage_number: int, body: Optional[StagePaymentRequest] = None):
    """Record the fee payment for the current stage; payment completes the stage."""
    confirmation = body.model_dump(exclude_none=True) if body else None
    try:
        result = await workflow_service.process_payment(
            envelope_id, stage_number, confirmation=confirmation
        )
    except WorkflowError as e:
        raise _http_error(e)
    return _transition_response(envelope_id, result)
