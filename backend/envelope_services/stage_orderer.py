"""
Envelope Hub - Stage Ordering

Puts an envelope's required approvals into the order the legal entities review
them. The order is a keyword heuristic standing in for the real regulatory
dependencies between approvals:

- Central Bank approvals go first (FX allocation is needed before anything else)
- Customs approvals go last (clearance closes the shipment)
- Everything else keeps the order it was listed in

This is not a dependency-graph solve. Approvals that depend on each other in
any other way must already be listed in the right order by the catalog.
"""

from typing import List

from .stages import RequiredApproval


FIRST_KEYWORD = "Central Bank"
LAST_KEYWORD = "Customs"

# Sort buckets
_FIRST = 0
_MIDDLE = 1
_LAST = 2


class StageOrderer:
    """Deterministic, stable ordering of required approvals into stages."""

    @staticmethod
    def get_bucket(approval: RequiredApproval) -> int:
        """
        Bucket an approval by its legal entity name.

        The bank check runs first, so an entity matching both keywords is
        ordered as a bank.
        """
        name = approval.legal_entity_name or ""
        if FIRST_KEYWORD in name:
            return _FIRST
        if LAST_KEYWORD in name:
            return _LAST
        return _MIDDLE

    @staticmethod
    def order(approvals: List[RequiredApproval]) -> List[RequiredApproval]:
        """
        Return the approvals in stage order.

        sorted() is stable, so approvals in the same bucket keep their input
        order and ordering an ordered list returns it unchanged.
        """
        return sorted(approvals, key=StageOrderer.get_bucket)
