"""Unit tests for request admission and routing."""

import asyncio

import pytest

from autoserve.core.exceptions import (
    APINotFoundError, AdmissionRejected, ColdStartTimeout, InferenceError,
    RequestTimeout, ServiceUnavailableError
)
from tests.helpers import make_spec, wait_for


def _in_flight(pool_manager, name):
    return {r.replica_id: r.in_flight for r in pool_manager.list_ready(name)}


class TestFastPath:
    """Test requests that find a free slot immediately."""

    @pytest.mark.asyncio
    async def test_route_to_ready_replica(self, router, pool_manager, deploy, spec):
        await deploy(spec, ready=1)

        result = await router.route(spec.name, {"x": 1})

        assert result["echo"] == {"x": 1}
        assert set(_in_flight(pool_manager, spec.name).values()) == {0}
        assert router.get_stats(spec.name)["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_records_samples(self, router, aggregator, deploy, spec):
        await deploy(spec, ready=1)

        await router.route(spec.name, {})

        assert aggregator.get_stats()[spec.name]["samples"] == 2

    @pytest.mark.asyncio
    async def test_unknown_api(self, router):
        with pytest.raises(APINotFoundError):
            await router.route("missing", {})

    @pytest.mark.asyncio
    async def test_inference_error_releases_slot(self, router, pool_manager, deploy, spec):
        await deploy(spec, ready=1)

        with pytest.raises(InferenceError):
            await router.route(spec.name, {"fail": True})

        assert set(_in_flight(pool_manager, spec.name).values()) == {0}
        assert router.get_stats(spec.name)["failed"] == 1


class TestQueueing:
    """Test the bounded FIFO queue."""

    @pytest.mark.asyncio
    async def test_waits_when_replica_is_full(self, router, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1), ready=1)
        substrate.hold()

        first = asyncio.create_task(router.route(spec.name, {"n": 1}))
        await wait_for(lambda: sum(len(h.requests) for h in substrate.handles.values()) == 1)
        second = asyncio.create_task(router.route(spec.name, {"n": 2}))
        await wait_for(lambda: router.queue_depth(spec.name) == 1)

        substrate.resume()
        results = await asyncio.gather(first, second)

        assert [r["echo"]["n"] for r in results] == [1, 2]
        assert router.queue_depth(spec.name) == 0

    @pytest.mark.asyncio
    async def test_admits_in_arrival_order(self, router, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1), ready=1)
        substrate.hold()

        tasks = [asyncio.create_task(router.route(spec.name, {"n": 0}))]
        await wait_for(lambda: sum(len(h.requests) for h in substrate.handles.values()) == 1)
        for n in range(1, 4):
            tasks.append(asyncio.create_task(router.route(spec.name, {"n": n})))
            await wait_for(lambda: router.queue_depth(spec.name) == n)

        substrate.resume()
        await asyncio.gather(*tasks)

        handle = next(iter(substrate.handles.values()))
        assert [p["n"] for p in handle.requests] == [0, 1, 2, 3]

    @pytest.mark.asyncio
    async def test_rejects_when_queue_full(self, router, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1, max_queue_size=1), ready=1)
        substrate.hold()

        first = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: sum(len(h.requests) for h in substrate.handles.values()) == 1)
        second = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: router.queue_depth(spec.name) == 1)

        with pytest.raises(AdmissionRejected) as exc_info:
            await router.route(spec.name, {})

        assert exc_info.value.status_code == 503
        assert exc_info.value.retry_after is not None
        assert router.get_stats(spec.name)["rejected"] == 1

        substrate.resume()
        await asyncio.gather(first, second)

    @pytest.mark.asyncio
    async def test_queue_wait_timeout(self, router, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1, max_queue_wait=0.05), ready=1)
        substrate.hold()

        first = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: sum(len(h.requests) for h in substrate.handles.values()) == 1)

        with pytest.raises(RequestTimeout) as exc_info:
            await router.route(spec.name, {})

        assert not isinstance(exc_info.value, ColdStartTimeout)
        assert router.queue_depth(spec.name) == 0
        assert router.get_stats(spec.name)["timed_out"] == 1

        substrate.resume()
        await first

    @pytest.mark.asyncio
    async def test_cancelled_request_leaves_queue(self, router, pool_manager, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1), ready=1)
        substrate.hold()

        first = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: sum(len(h.requests) for h in substrate.handles.values()) == 1)
        second = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: router.queue_depth(spec.name) == 1)

        second.cancel()
        with pytest.raises(asyncio.CancelledError):
            await second

        assert router.queue_depth(spec.name) == 0
        substrate.resume()
        await first
        assert set(_in_flight(pool_manager, spec.name).values()) == {0}

    @pytest.mark.asyncio
    async def test_close_api_fails_waiters(self, router, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1), ready=1)
        substrate.hold()

        first = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: sum(len(h.requests) for h in substrate.handles.values()) == 1)
        second = asyncio.create_task(router.route(spec.name, {}))
        await wait_for(lambda: router.queue_depth(spec.name) == 1)

        assert router.close_api(spec.name, "API undeployed") == 1

        with pytest.raises(ServiceUnavailableError):
            await second
        substrate.resume()
        await first


class TestConcurrencyCap:
    """Test that no replica ever exceeds the target concurrency."""

    @pytest.mark.asyncio
    async def test_exact_cap_under_burst(self, router, pool_manager, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=2), ready=2)
        substrate.hold()

        tasks = [asyncio.create_task(router.route(spec.name, {"n": n})) for n in range(10)]
        await wait_for(lambda: router.queue_depth(spec.name) == 6)

        assert list(_in_flight(pool_manager, spec.name).values()) == [2, 2]

        substrate.resume()
        results = await asyncio.gather(*tasks)

        assert sorted(r["echo"]["n"] for r in results) == list(range(10))
        assert set(_in_flight(pool_manager, spec.name).values()) == {0}

    @pytest.mark.asyncio
    async def test_new_replica_takes_queued_requests(self, router, pool_manager, substrate, deploy):
        spec = await deploy(make_spec(target_replica_concurrency=1), ready=1)
        substrate.hold()

        tasks = [asyncio.create_task(router.route(spec.name, {})) for _ in range(2)]
        await wait_for(lambda: router.queue_depth(spec.name) == 1)

        await pool_manager.scale_to(spec.name, 2)

        await wait_for(lambda: router.queue_depth(spec.name) == 0)
        assert list(_in_flight(pool_manager, spec.name).values()) == [1, 1]
        substrate.resume()
        await asyncio.gather(*tasks)


class TestColdStart:
    """Test requests for an API with no replicas."""

    @pytest.mark.asyncio
    async def test_cold_start_then_dispatch(self, router, pool_manager, substrate, deploy, spec):
        substrate.auto_ready = False
        await deploy(spec)

        task = asyncio.create_task(router.route(spec.name, {"x": 1}))
        await wait_for(lambda: len(substrate.created) == 1)
        assert router.queue_depth(spec.name) == 1

        substrate.make_ready()
        result = await task

        assert result["echo"] == {"x": 1}
        assert pool_manager.active_count(spec.name) == 1

    @pytest.mark.asyncio
    async def test_cold_start_timeout(self, router, pool_manager, substrate, deploy):
        substrate.auto_ready = False
        spec = await deploy(make_spec(cold_start_timeout=0.05))

        with pytest.raises(ColdStartTimeout) as exc_info:
            await router.route(spec.name, {})

        assert exc_info.value.error_code == "COLD_START_TIMEOUT"
        assert exc_info.value.status_code == 503
        assert router.get_stats(spec.name)["cold_start_timeout"] == 1
        assert pool_manager.active_count(spec.name) == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_cold_start(self, router, pool_manager, substrate, deploy, spec):
        substrate.auto_ready = False
        await deploy(spec)

        tasks = [asyncio.create_task(router.route(spec.name, {"n": n})) for n in range(5)]
        await wait_for(lambda: router.queue_depth(spec.name) == 5)

        assert pool_manager.active_count(spec.name) == 1
        substrate.make_ready()
        results = await asyncio.gather(*tasks)

        assert len(results) == 5
        assert len(substrate.created) == 1
