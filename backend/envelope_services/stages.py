"""
Envelope Hub - Workflow Stage Model

Status enums and records shared by the sequential workflow components.

Stages are persisted inside the envelope record as the `workflow_stages` array,
one dict per stage in the snake_case shape produced by `Stage.to_dict()`.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, List, Any, Iterable

from .errors import StageValidationError


# =============================================================================
# STATUS ENUMS
# =============================================================================

class StageStatus(str, Enum):
    """Status of a single approval stage."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_COMPLETED = "payment_completed"  # Written by older payment callbacks
    COMPLETED = "completed"
    REJECTED = "rejected"
    BLOCKED = "blocked"


class PaymentStatus(str, Enum):
    """Status of the fee attached to a stage. Only set when a fee exists."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    """Aggregate status of the whole stage sequence."""
    NOT_STARTED = "not_started"  # Envelope has no workflow_status yet
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"


class EnvelopeStatus(str, Enum):
    """Envelope-level status used for routing and inbox display."""
    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PENDING_REVIEW = "pending_review"
    APPROVED = "approved"
    REJECTED = "rejected"


class WorkflowEvent(str, Enum):
    """Events recorded in the envelope's workflow history."""
    ON_CREATED = "on_created"
    ON_STARTED = "on_started"
    ON_STAGE_COMPLETED = "on_stage_completed"
    ON_PAYMENT_COMPLETED = "on_payment_completed"
    ON_STAGE_REJECTED = "on_stage_rejected"


# Statuses a stage can be acted on in
ACTIVE_STATUSES = frozenset({
    StageStatus.PENDING,
    StageStatus.IN_PROGRESS,
    StageStatus.PAYMENT_REQUIRED,
})

TERMINAL_STATUSES = frozenset({
    StageStatus.COMPLETED,
    StageStatus.REJECTED,
})

TERMINAL_WORKFLOW_STATUSES = frozenset({
    WorkflowStatus.COMPLETED,
    WorkflowStatus.REJECTED,
})


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _coerce(enum_cls, value, field_name: str):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise StageValidationError(
            f"Unknown {field_name} '{value}'",
            details={"field": field_name, "value": value}
        )


# =============================================================================
# INPUT: REQUIRED APPROVALS
# =============================================================================

@dataclass
class RequiredApproval:
    """
    One approval/document an envelope needs, as listed by the procedure catalog.

    The catalog owns these records; the workflow only snapshots the approving
    party (legal entity) and fee into a Stage when the workflow is built.
    """
    id: str
    name: str
    legal_entity_id: str
    legal_entity_name: str
    is_required: bool = True
    fee_cents: Optional[int] = None
    description: Optional[str] = None

    def __post_init__(self):
        if self.fee_cents is not None and self.fee_cents < 0:
            raise StageValidationError(
                f"Approval {self.id} has a negative fee",
                details={"approval_id": self.id, "fee_cents": self.fee_cents}
            )

    @property
    def payment_required(self) -> bool:
        return bool(self.fee_cents) and self.fee_cents > 0


# =============================================================================
# STAGE
# =============================================================================

@dataclass
class Stage:
    """
    One approval step of the sequence, owned by one legal entity.

    Created once when the workflow is built and mutated by transitions after
    that; stages are never removed from an envelope.
    """
    stage_number: int
    approval_id: str
    legal_entity_id: str
    legal_entity_name: str
    status: StageStatus
    is_current: bool = False
    can_start: bool = False
    payment_required: bool = False
    payment_amount: int = 0  # cents
    payment_status: Optional[PaymentStatus] = None
    assigned_at: Optional[str] = None
    completed_at: Optional[str] = None
    rejected_at: Optional[str] = None
    rejection_reason: Optional[str] = None
    payment_completed_at: Optional[str] = None

    def __post_init__(self):
        self.status = _coerce(StageStatus, self.status, "status")
        self.payment_status = _coerce(PaymentStatus, self.payment_status, "payment_status")

    @property
    def is_active(self) -> bool:
        return self.is_current and self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def copy(self) -> "Stage":
        return replace(self)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted record shape, omitting unset optionals."""
        result = {
            "stage_number": self.stage_number,
            "approval_id": self.approval_id,
            "legal_entity_id": self.legal_entity_id,
            "legal_entity_name": self.legal_entity_name,
            "status": self.status.value,
            "is_current": self.is_current,
            "can_start": self.can_start,
            "payment_required": self.payment_required,
            "payment_amount": self.payment_amount,
        }
        if self.payment_status is not None:
            result["payment_status"] = self.payment_status.value

        optional_fields = [
            "assigned_at", "completed_at", "rejected_at",
            "rejection_reason", "payment_completed_at",
        ]
        for field_name in optional_fields:
            value = getattr(self, field_name)
            if value is not None:
                result[field_name] = value

        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Stage":
        """
        Build a Stage from a persisted record.

        Records written before the approval_id rename carry `document_id`.
        """
        try:
            return cls(
                stage_number=int(data["stage_number"]),
                approval_id=data.get("approval_id", data.get("document_id", "")),
                legal_entity_id=data.get("legal_entity_id", ""),
                legal_entity_name=data.get("legal_entity_name", ""),
                status=data["status"],
                is_current=bool(data.get("is_current", False)),
                can_start=bool(data.get("can_start", False)),
                payment_required=bool(data.get("payment_required", False)),
                payment_amount=int(data.get("payment_amount") or 0),
                payment_status=data.get("payment_status"),
                assigned_at=data.get("assigned_at"),
                completed_at=data.get("completed_at"),
                rejected_at=data.get("rejected_at"),
                rejection_reason=data.get("rejection_reason"),
                payment_completed_at=data.get("payment_completed_at"),
            )
        except KeyError as e:
            raise StageValidationError(
                f"Stage record is missing required field {e}",
                details={"record": data}
            ) from e
        except (TypeError, ValueError) as e:
            raise StageValidationError(
                f"Stage record is malformed: {e}",
                details={"record": data}
            ) from e


def stages_from_records(records: Optional[Iterable[Dict[str, Any]]]) -> List[Stage]:
    """Parse a persisted `workflow_stages` array, ordered by stage number."""
    stages = [Stage.from_dict(r) for r in (records or [])]
    return sorted(stages, key=lambda s: s.stage_number)


def stages_to_records(stages: Iterable[Stage]) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in stages]


def derive_can_proceed(stages: Iterable[Stage]) -> bool:
    """True iff some stage is both current and allowed to start."""
    return any(s.is_current and s.can_start for s in stages)


# =============================================================================
# WORKFLOW DESCRIPTOR
# =============================================================================

@dataclass
class WorkflowDescriptor:
    """The stage sequence of one envelope plus its aggregate status."""
    envelope_id: str
    tracking_number: Optional[str]
    workflow_status: WorkflowStatus
    stages: List[Stage] = field(default_factory=list)
    current_stage: int = 1
    can_proceed: bool = False

    @property
    def total_stages(self) -> int:
        return len(self.stages)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "envelope_id": self.envelope_id,
            "tracking_number": self.tracking_number,
            "current_stage": self.current_stage,
            "total_stages": self.total_stages,
            "workflow_status": self.workflow_status.value,
            "stages": stages_to_records(self.stages),
            "can_proceed": self.can_proceed,
        }


# =============================================================================
# WORKFLOW HISTORY ENTRY
# =============================================================================

class WorkflowHistoryEntry:
    """Represents a single entry in the envelope's workflow history."""

    def __init__(
        self,
        event: str,
        stage_number: Optional[int] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        actor: str = "system",
        reason: Optional[str] = None,
        metadata: Optional[Dict] = None
    ):
        self.timestamp = utc_now()
        self.event = event.value if isinstance(event, Enum) else event
        self.stage_number = stage_number
        self.from_status = from_status.value if isinstance(from_status, Enum) else from_status
        self.to_status = to_status.value if isinstance(to_status, Enum) else to_status
        self.actor = actor
        self.reason = reason
        self.metadata = metadata or {}

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp,
            "event": self.event,
            "stage_number": self.stage_number,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "reason": self.reason,
            "metadata": self.metadata
        }


# =============================================================================
# INVARIANT CHECKS
# =============================================================================

def validate_stages(stages: List[Stage]) -> None:
    """
    Check a stage array against the workflow invariants before it is written.

    Raises:
        StageValidationError: describing the first violation found
    """
    numbers = [s.stage_number for s in stages]
    if sorted(numbers) != list(range(1, len(stages) + 1)):
        raise StageValidationError(
            "Stage numbers must be contiguous from 1 with no duplicates",
            details={"stage_numbers": numbers}
        )

    active = [s.stage_number for s in stages if s.is_active]
    if len(active) > 1:
        raise StageValidationError(
            "More than one stage is active",
            details={"active_stages": active}
        )

    rejected_at = None
    for stage in sorted(stages, key=lambda s: s.stage_number):
        if rejected_at is not None and stage.status != StageStatus.BLOCKED:
            raise StageValidationError(
                f"Stage {stage.stage_number} follows rejected stage {rejected_at} but is not blocked",
                details={"stage_number": stage.stage_number, "status": stage.status.value}
            )
        if stage.status == StageStatus.REJECTED:
            if not stage.rejection_reason:
                raise StageValidationError(
                    f"Rejected stage {stage.stage_number} has no rejection reason",
                    details={"stage_number": stage.stage_number}
                )
            if rejected_at is None:
                rejected_at = stage.stage_number
        if stage.payment_amount < 0:
            raise StageValidationError(
                f"Stage {stage.stage_number} has a negative payment amount",
                details={"stage_number": stage.stage_number, "payment_amount": stage.payment_amount}
            )
        if stage.payment_status is not None and not stage.payment_required:
            raise StageValidationError(
                f"Stage {stage.stage_number} has a payment status but no fee",
                details={"stage_number": stage.stage_number}
            )
