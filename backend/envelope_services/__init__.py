"""
Envelope Hub - Sequential Workflow Services

Moves an envelope through its required approvals one legal entity at a time.

Components:
- StageOrderer: Orders required approvals into stage order
- WorkflowBuilder: Builds the draft stage array for an envelope
- StageTransitionEngine: Complete / pay / reject state machine (pure)
- WorkflowReader: Repairs drifted stage arrays on every read
- EnvelopeStore: Abstract envelope record store (MongoDB, in-memory)
- SequentialWorkflowService: Runs the above against a store
"""

from .errors import (
    WorkflowError, NotFoundError, InvalidStateError,
    StageValidationError, PersistenceError,
)
from .stages import (
    StageStatus, PaymentStatus, WorkflowStatus, EnvelopeStatus, WorkflowEvent,
    RequiredApproval, Stage, WorkflowDescriptor, WorkflowHistoryEntry,
    validate_stages,
)
from .stage_orderer import StageOrderer
from .workflow_builder import WorkflowBuilder, calculate_total_fees
from .workflow_engine import StageTransitionEngine, TransitionResult
from .workflow_reader import WorkflowReader
from .envelope_store import EnvelopeStore, InMemoryEnvelopeStore, MongoEnvelopeStore
from .workflow_service import SequentialWorkflowService

__all__ = [
    'WorkflowError', 'NotFoundError', 'InvalidStateError',
    'StageValidationError', 'PersistenceError',
    'StageStatus', 'PaymentStatus', 'WorkflowStatus', 'EnvelopeStatus', 'WorkflowEvent',
    'RequiredApproval', 'Stage', 'WorkflowDescriptor', 'WorkflowHistoryEntry',
    'validate_stages',
    'StageOrderer',
    'WorkflowBuilder', 'calculate_total_fees',
    'StageTransitionEngine', 'TransitionResult',
    'WorkflowReader',
    'EnvelopeStore', 'InMemoryEnvelopeStore', 'MongoEnvelopeStore',
    'SequentialWorkflowService',
]
