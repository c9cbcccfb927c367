"""Mandate store. Every mandate write goes through here.

In-memory store is always maintained. If a repository (DB) is available,
mandates are also persisted.  Writes are guarded by an optimistic revision
counter: a save that was computed from a stale copy is rejected.
"""

import logging
from typing import Optional

from agentpay.exceptions import MandateConflictError
from agentpay.types import Mandate, MandateStatus

logger = logging.getLogger(__name__)


class MandateLedger:
    """Keyed mandate store with optimistic concurrency."""

    def __init__(self, repository=None):
        """
        Args:
            repository: Optional MandateRepository for persistence.
                        Can be None for in-memory only mode.
        """
        self._memory_store: dict[str, Mandate] = {}
        self._repository = repository

    async def get(self, mandate_id: str) -> Optional[Mandate]:
        """Return the current mandate, reading through to the repository on a miss."""
        mandate = self._memory_store.get(mandate_id)
        if mandate is None and self._repository is not None:
            mandate = await self._repository.get_mandate(mandate_id)
            if mandate is not None:
                self._memory_store[mandate_id] = mandate
        return mandate

    async def save(self, mandate: Mandate, expected_revision: Optional[int] = None) -> Mandate:
        """Store a new revision of ``mandate``.

        Args:
            mandate: The updated mandate (its ``revision`` is the one it was read at)
            expected_revision: Revision the caller read; defaults to ``mandate.revision``

        Returns:
            The stored copy, with ``revision`` incremented

        Raises:
            MandateConflictError: another writer stored a newer revision first
        """
        expected = mandate.revision if expected_revision is None else expected_revision
        current = await self.get(mandate.mandate_id)
        if current is not None and current.revision != expected:
            raise MandateConflictError(
                f"Mandate '{mandate.mandate_id}' was modified concurrently "
                f"(expected revision {expected}, found {current.revision})",
                mandate_id=mandate.mandate_id,
                expected=expected,
                actual=current.revision,
            )

        stored = mandate.model_copy(update={"revision": expected + 1})
        # Repository first: a failed write must leave the previous revision visible.
        if self._repository is not None:
            if current is None:
                await self._repository.create_mandate(stored)
            else:
                await self._repository.update_mandate(stored)
        self._memory_store[stored.mandate_id] = stored
        logger.debug(
            "[Ledger] Saved %s revision %d (%s)", stored.mandate_id, stored.revision, stored.status.value
        )
        return stored

    async def get_chain(self, chain_id: str) -> list[Mandate]:
        """Every mandate in a chain, ordered by sequence number."""
        return sorted(
            (m for m in self._memory_store.values() if m.chain.chain_id == chain_id),
            key=lambda m: m.chain.sequence_number,
        )

    async def list_by_status(self, status: MandateStatus) -> list[Mandate]:
        return [m for m in self._memory_store.values() if m.status == status]

    async def list_by_tenant(self, tenant_id: str, limit: int = 100, offset: int = 0) -> list[Mandate]:
        """Paginated mandate history for a tenant, oldest first."""
        tenant_mandates = sorted(
            (m for m in self._memory_store.values() if m.tenant_id == tenant_id),
            key=lambda m: m.created_at,
        )
        return tenant_mandates[offset: offset + limit]
