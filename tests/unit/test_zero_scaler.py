"""Unit tests for scale-to-zero activation."""

import asyncio

import pytest

from tests.helpers import make_spec, wait_for


@pytest.fixture
def idle_api(substrate, deploy, spec):
    """Deploy the default spec with replicas that stay pending until made ready."""
    substrate.auto_ready = False

    async def _deploy():
        return await deploy(spec)
    return _deploy


class TestScaleToZeroActivator:
    """Test cold-start triggering."""

    @pytest.mark.asyncio
    async def test_triggers_one_scale_up(self, activator, pool_manager, idle_api):
        spec = await idle_api()

        triggered = await activator.ensure_capacity(spec.name)

        assert triggered is True
        assert pool_manager.active_count(spec.name) == 1
        assert activator.in_cold_start(spec.name)

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_cold_start(self, activator, pool_manager, idle_api):
        spec = await idle_api()

        results = await asyncio.gather(*(activator.ensure_capacity(spec.name) for _ in range(5)))

        assert results == [True] * 5
        assert pool_manager.active_count(spec.name) == 1
        assert activator.get_stats()["in_progress"][spec.name]["waiters"] == 5

    @pytest.mark.asyncio
    async def test_repeated_calls_add_no_replicas(self, activator, pool_manager, substrate, deploy):
        substrate.auto_ready = False
        spec = await deploy(make_spec(min_replicas=0, max_replicas=4))

        await activator.ensure_capacity(spec.name)
        await activator.ensure_capacity(spec.name)

        assert pool_manager.active_count(spec.name) == 1

    @pytest.mark.asyncio
    async def test_no_trigger_with_ready_replica(self, activator, substrate, deploy, spec):
        await deploy(spec, ready=1)

        assert await activator.ensure_capacity(spec.name) is False
        assert len(substrate.created) == 1
        assert not activator.in_cold_start(spec.name)

    @pytest.mark.asyncio
    async def test_blocked_by_backoff(self, activator, backoff, pool_manager, idle_api):
        spec = await idle_api()
        backoff.record_failure(spec.name, "replica failed")

        assert await activator.ensure_capacity(spec.name) is False
        assert pool_manager.active_count(spec.name) == 0

    @pytest.mark.asyncio
    async def test_completes_when_replica_ready(self, activator, substrate, idle_api):
        spec = await idle_api()
        await activator.ensure_capacity(spec.name)
        await wait_for(lambda: len(substrate.created) == 1)

        substrate.make_ready()
        await wait_for(lambda: not activator.in_cold_start(spec.name))

        stats = activator.get_stats()
        assert stats["total_cold_starts"] == 1
        assert stats["last_cold_start_time"] >= 0

    @pytest.mark.asyncio
    async def test_new_attempt_after_failed_cold_start(self, activator, pool_manager, substrate, idle_api):
        spec = await idle_api()
        await activator.ensure_capacity(spec.name)
        await wait_for(lambda: len(substrate.created) == 1)

        substrate.fail(substrate.created[0])
        await wait_for(lambda: pool_manager.active_count(spec.name) == 0)

        assert activator.in_cold_start(spec.name)
        assert await activator.ensure_capacity(spec.name) is True
        assert pool_manager.active_count(spec.name) == 1

    def test_forget(self, activator):
        activator.forget("never-deployed")

        assert not activator.in_cold_start("never-deployed")
