"""MandateLedger: revisions, optimistic conflicts, read-through, queries."""

import pytest

from agentpay.core.ledger import MandateLedger
from agentpay.core.mandates import MandateChain
from agentpay.db.memory import InMemoryMandateRepository
from agentpay.exceptions import MandateConflictError
from agentpay.types import MandateStatus

from conftest import payment_content


@pytest.mark.asyncio
async def test_save_increments_revision():
    ledger = MandateLedger()
    chain = MandateChain(store=ledger)
    mandate = await chain.create(payment_content(), creator_id="user-1")
    assert mandate.revision == 1

    stored = await ledger.save(mandate.model_copy(update={"status_reason": "note"}))
    assert stored.revision == 2
    assert (await ledger.get(mandate.mandate_id)).status_reason == "note"


@pytest.mark.asyncio
async def test_stale_write_is_rejected():
    ledger = MandateLedger()
    mandate = await MandateChain(store=ledger).create(payment_content(), creator_id="user-1")

    await ledger.save(mandate.model_copy(update={"status_reason": "first"}))
    with pytest.raises(MandateConflictError) as exc_info:
        await ledger.save(mandate.model_copy(update={"status_reason": "second"}))
    assert exc_info.value.expected == 1
    assert exc_info.value.actual == 2
    assert (await ledger.get(mandate.mandate_id)).status_reason == "first"


@pytest.mark.asyncio
async def test_repository_write_through_and_read_through():
    repo = InMemoryMandateRepository()
    mandate = await MandateChain(store=MandateLedger(repo)).create(payment_content(), creator_id="user-1")
    assert await repo.get_mandate(mandate.mandate_id) == mandate

    fresh = MandateLedger(repo)
    assert (await fresh.get(mandate.mandate_id)).mandate_id == mandate.mandate_id


@pytest.mark.asyncio
async def test_queries():
    ledger = MandateLedger()
    chain = MandateChain(store=ledger)
    first = await chain.create(payment_content(), creator_id="u", tenant_id="t1")
    second = await chain.create(payment_content(), creator_id="u", tenant_id="t1",
                                previous_mandate_id=first.mandate_id)
    await chain.create(payment_content(), creator_id="u", tenant_id="t2")
    await chain.authorize(first.mandate_id, "system")

    assert [m.mandate_id for m in await ledger.get_chain(first.chain.chain_id)] == [
        first.mandate_id, second.mandate_id,
    ]
    assert [m.mandate_id for m in await ledger.list_by_status(MandateStatus.APPROVED)] == [first.mandate_id]
    assert len(await ledger.list_by_tenant("t1")) == 2
    assert len(await ledger.list_by_tenant("t1", limit=1, offset=1)) == 1
    assert await ledger.list_by_tenant("nobody") == []


class FlakyRepository(InMemoryMandateRepository):
    """Stores everything except the EXECUTED transition."""

    async def update_mandate(self, mandate):
        if mandate.status == MandateStatus.EXECUTED:
            raise ConnectionError("database unavailable")
        await super().update_mandate(mandate)


@pytest.mark.asyncio
async def test_failed_repository_write_keeps_previous_revision():
    ledger = MandateLedger(repository=FlakyRepository())
    chain = MandateChain(store=ledger)
    mandate = await chain.create(payment_content(), creator_id="user-1")
    await chain.authorize(mandate.mandate_id, "system")

    with pytest.raises(ConnectionError):
        await chain.execute(mandate.mandate_id, "user-1")

    current = await ledger.get(mandate.mandate_id)
    assert current.status == MandateStatus.APPROVED
    assert current.revision == 2
    assert current.execution.executed_at is None
