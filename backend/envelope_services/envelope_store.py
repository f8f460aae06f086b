"""
Envelope Hub - Envelope Stores

This module defines the abstraction over the document store that holds
envelope records, plus the MongoDB implementation used by the server and an
in-memory implementation for tests and local development.

The workflow only needs read-by-id and update-by-id. Each update replaces the
given top-level fields of one record atomically; there is no version check, so
of two concurrent read-modify-write cycles on the same envelope the last write
wins.
"""

import copy
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from .errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)


class EnvelopeStore(ABC):
    """
    Abstract base class for envelope record stores.

    Implementations raise NotFoundError for unknown ids and PersistenceError
    for any failure of the underlying store.
    """

    @abstractmethod
    async def get_envelope(self, envelope_id: str) -> Dict[str, Any]:
        """
        Fetch one envelope record.

        The record carries at least `workflow_stages`, `workflow_status`,
        `current_stage`, `status` and `legal_entity_id` once a workflow exists.
        """
        pass

    @abstractmethod
    async def update_envelope(self, envelope_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace the given top-level fields of one envelope.

        Returns:
            The updated envelope record
        """
        pass

    @abstractmethod
    def get_store_name(self) -> str:
        """Return a descriptive name for this store."""
        pass


class InMemoryEnvelopeStore(EnvelopeStore):
    """
    In-memory envelope store for testing.

    Records are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self, name: str = "in_memory"):
        self._name = name
        self._envelopes: Dict[str, Dict[str, Any]] = {}

    def add_envelope(self, envelope: Dict[str, Any]) -> None:
        """Add an envelope record; it must have an `id`."""
        self._envelopes[envelope["id"]] = copy.deepcopy(envelope)

    def add_envelopes(self, envelopes: List[Dict[str, Any]]) -> None:
        for envelope in envelopes:
            self.add_envelope(envelope)

    async def get_envelope(self, envelope_id: str) -> Dict[str, Any]:
        if envelope_id not in self._envelopes:
            raise NotFoundError(f"Envelope {envelope_id} not found", details={"envelope_id": envelope_id})
        return copy.deepcopy(self._envelopes[envelope_id])

    async def update_envelope(self, envelope_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        if envelope_id not in self._envelopes:
            raise NotFoundError(f"Envelope {envelope_id} not found", details={"envelope_id": envelope_id})
        self._envelopes[envelope_id].update(copy.deepcopy(fields))
        return copy.deepcopy(self._envelopes[envelope_id])

    def get_store_name(self) -> str:
        return self._name


class MongoEnvelopeStore(EnvelopeStore):
    """
    Envelope store backed by a motor (async MongoDB) collection.

    Envelopes are looked up by their `id` field, never by `_id`.
    """

    def __init__(self, collection):
        """
        Args:
            collection: AsyncIOMotorCollection holding the envelope records
        """
        self.collection = collection

    async def create_indexes(self) -> None:
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index("status")
        await self.collection.create_index("workflow_status")
        await self.collection.create_index("legal_entity_id")
        logger.info("Envelope indexes created on %s", self.get_store_name())

    async def get_envelope(self, envelope_id: str) -> Dict[str, Any]:
        try:
            envelope = await self.collection.find_one({"id": envelope_id}, {"_id": 0})
        except PyMongoError as e:
            logger.error("Failed to read envelope %s: %s", envelope_id, e)
            raise PersistenceError(
                f"Failed to read envelope {envelope_id}",
                details={"envelope_id": envelope_id, "error": str(e)}
            ) from e

        if envelope is None:
            raise NotFoundError(f"Envelope {envelope_id} not found", details={"envelope_id": envelope_id})
        return envelope

    async def update_envelope(self, envelope_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        update_fields = dict(fields)
        update_fields["updated_utc"] = datetime.now(timezone.utc).isoformat()

        try:
            updated: Optional[Dict[str, Any]] = await self.collection.find_one_and_update(
                {"id": envelope_id},
                {"$set": update_fields},
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error("Failed to update envelope %s: %s", envelope_id, e)
            raise PersistenceError(
                f"Failed to update envelope {envelope_id}",
                details={"envelope_id": envelope_id, "error": str(e)}
            ) from e

        if updated is None:
            raise NotFoundError(f"Envelope {envelope_id} not found", details={"envelope_id": envelope_id})
        return updated

    def get_store_name(self) -> str:
        return f"mongo:{getattr(self.collection, 'name', 'envelopes')}"
