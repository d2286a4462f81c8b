from __future__ import annotations

from uuid import uuid4

import pytest

from webhook_service.core.exceptions import NotFoundError
from webhook_service.domain.dto import SubscriptionCreateDTO
from webhook_service.domain.enums import DeliveryStatus

from tests.conftest import TEST_SECRET, make_event


@pytest.mark.asyncio
async def test_history_status_filter_and_statistics(container, receiver):
    receiver.statuses = [503]
    subscription = await container.registry.create(
        SubscriptionCreateDTO(url=receiver.url, event_types=["*"], secret=TEST_SECRET)
    )
    failing, succeeding = make_event(), make_event()
    await container.dispatcher.dispatch(failing)
    await container.worker_pool.run_once()
    await container.dispatcher.dispatch(succeeding)
    await container.worker_pool.run_once()

    history, total = await container.ledger.get_history(subscription.id)
    assert total == 3
    pending, pending_total = await container.ledger.get_history(subscription.id, status=DeliveryStatus.PENDING)
    assert pending_total == 1
    assert pending[0].event_id == failing.event_id
    assert pending[0].attempt_number == 2

    page, page_total = await container.ledger.get_history(subscription.id, limit=1, offset=1)
    assert len(page) == 1 and page_total == 3

    stats = await container.ledger.get_statistics(subscription.id)
    assert (stats.total_attempts, stats.pending, stats.succeeded, stats.failed, stats.exhausted) == (3, 1, 1, 1, 0)
    assert stats.success_rate == pytest.approx(0.5)
    assert stats.last_success_at is not None


@pytest.mark.asyncio
async def test_status_of_unknown_pair(container):
    subscription = await container.registry.create(
        SubscriptionCreateDTO(url="http://127.0.0.1:9/hook", event_types=["*"], secret=TEST_SECRET)
    )
    with pytest.raises(NotFoundError):
        await container.ledger.get_status(uuid4(), subscription.id)


@pytest.mark.asyncio
async def test_history_of_unknown_subscription(container):
    with pytest.raises(NotFoundError):
        await container.ledger.get_history(uuid4())
    with pytest.raises(NotFoundError):
        await container.ledger.get_statistics(uuid4())
