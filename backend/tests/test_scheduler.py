"""
Tests for the background jobs wiring.
"""
from unittest.mock import AsyncMock, patch

from storefront.models.catalog import GrantData, InventoryPayload
from tests.conftest import make_user


class TestBackgroundJobs:
    async def test_jobs_registered(self, container):
        container.schedule_jobs()

        queue_job = container.jobs.get_job("pending_delivery_queue")
        sweep_job = container.jobs.get_job("expire_pending_transactions")

        assert queue_job is not None
        assert sweep_job is not None
        assert queue_job.trigger.interval.total_seconds() == container.settings.pending_queue_interval_seconds
        assert container.jobs.running is False

    async def test_rescheduling_replaces_jobs(self, container):
        container.schedule_jobs()
        container.schedule_jobs()

        assert container.jobs.get_job("pending_delivery_queue") is not None

    async def test_queue_job_delivers_backlog(self, container, ledger):
        user_id = await make_user(container)
        grant = await ledger.create_grant(user_id, "item", GrantData(payload=InventoryPayload(type="item")))

        await container._run_pending_queue()

        assert (await ledger.get_grant(grant.id)).status == "delivered"

    async def test_job_failure_is_contained(self, container):
        with patch.object(container.checkout, "expire_stale_transactions", AsyncMock(side_effect=RuntimeError("db locked"))):
            await container._run_expiry_sweep()
