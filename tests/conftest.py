"""Test configuration and fixtures."""

import pytest

from autoserve.autoscaling.metrics import MetricsAggregator
from autoserve.autoscaling.pool_manager import ReplicaPoolManager
from autoserve.autoscaling.router import RequestRouter
from autoserve.autoscaling.zero_scaler import ScaleToZeroActivator
from autoserve.core.config import MetricsConfig, ReplicaConfig
from autoserve.reliability.retry import BackoffPolicy, BackoffTracker

from tests.helpers import FakeClock, FakeSubstrate, make_spec, wait_for


@pytest.fixture
def fake_clock():
    """Manually advanced clock."""
    return FakeClock()


@pytest.fixture
def substrate():
    """In-memory substrate with replicas healthy on first check."""
    return FakeSubstrate()


@pytest.fixture
def replica_config():
    return ReplicaConfig(health_check_interval=0.01)


@pytest.fixture
def pool_manager(substrate, replica_config):
    """Pool manager over the fake substrate."""
    return ReplicaPoolManager(substrate, replica_config)


@pytest.fixture
def aggregator():
    return MetricsAggregator(MetricsConfig(window_seconds=60.0, prune_interval=60.0))


@pytest.fixture
def backoff():
    return BackoffTracker(BackoffPolicy(base_delay=1.0, max_delay=8.0, jitter=False))


@pytest.fixture
def activator(pool_manager, backoff):
    return ScaleToZeroActivator(pool_manager, backoff=backoff)


@pytest.fixture
def router(pool_manager, aggregator, activator):
    return RequestRouter(pool_manager, aggregator, activator)


@pytest.fixture
def spec():
    return make_spec()


@pytest.fixture
def deploy(pool_manager, aggregator, router):
    """Register an API with every component, optionally waiting for ready replicas."""
    async def _deploy(api_spec, ready: int = 0):
        aggregator.register_api(api_spec.name)
        pool_manager.create_pool(api_spec)
        router.open_api(api_spec.name)
        if ready:
            await pool_manager.scale_to(api_spec.name, ready)
            await wait_for(lambda: len(pool_manager.list_ready(api_spec.name)) == ready)
        return api_spec
    return _deploy
