"""
Pytest configuration and fixtures for kuberedis tests.

Provides:
- Configuration fixtures
- Pod sets and canned CLUSTER NODES replies
- A scripted pod command runner
- Integration test markers and CLI options
"""

import pytest
from unittest.mock import MagicMock
from types import SimpleNamespace

from kuberedis import KubeRedisConfig, PodRef

from fakes import FakeRunner, node_id


# ============================================================================
# Pytest Hooks for Integration Tests
# ============================================================================

def pytest_addoption(parser):
    """Add custom command line options for pytest."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run integration tests (requires a Kubernetes cluster running Redis)",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: mark test as integration test (requires a live cluster)"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running (e.g., failover tests)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless --run-integration is provided."""
    if config.getoption("--run-integration"):
        return

    skip_integration = pytest.mark.skip(reason="need --run-integration option to run")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_integration)


# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def default_config() -> KubeRedisConfig:
    """Create a default configuration."""
    return KubeRedisConfig()


@pytest.fixture
def fast_config() -> KubeRedisConfig:
    """Configuration with zero delays so retry paths run instantly."""
    return KubeRedisConfig(
        namespace="redis",
        retry_attempts=2,
        retry_base_delay=0.0,
        liveness_retries=2,
        poll_interval=0.0,
        poll_max_attempts=3,
    )


@pytest.fixture
def auth_config() -> KubeRedisConfig:
    """Configuration with passwords for both Redis and Sentinel."""
    return KubeRedisConfig(
        namespace="redis",
        container="redis",
        password="s3cret",
        sentinel_container="sentinel",
        sentinel_password="sentinel-pw",
        retry_base_delay=0.0,
    )


# ============================================================================
# Topology Fixtures
# ============================================================================

@pytest.fixture
def pods():
    """Six Redis pods, redis-0 .. redis-5, at 10.0.0.10 .. 10.0.0.15."""
    return [
        PodRef(
            name=f"redis-{i}",
            namespace="redis",
            container="redis",
            ip=f"10.0.0.{10 + i}",
            host=f"node-{'abc'[i % 3]}",
        )
        for i in range(6)
    ]


@pytest.fixture
def ids():
    """Node IDs by role: three masters then their replicas."""
    return SimpleNamespace(
        m0=node_id("a"), m1=node_id("b"), m2=node_id("c"),
        r0=node_id("d"), r1=node_id("e"), r2=node_id("f"),
    )


@pytest.fixture
def three_masters_reply(ids) -> str:
    """CLUSTER NODES from redis-0: three masters, each a third of the slots."""
    return (
        f"{ids.m0} 10.0.0.10:6379@16379 myself,master - 0 0 1 connected 0-5460\n"
        f"{ids.m1} 10.0.0.11:6379@16379 master - 0 1700000000000 2 connected 5461-10922\n"
        f"{ids.m2} 10.0.0.12:6379@16379 master - 0 1700000000000 3 connected 10923-16383\n"
    )


@pytest.fixture
def six_nodes_reply(ids, three_masters_reply) -> str:
    """CLUSTER NODES from redis-0: three masters plus one replica each."""
    return three_masters_reply + (
        f"{ids.r0} 10.0.0.13:6379@16379 slave {ids.m0} 0 1700000000000 1 connected\n"
        f"{ids.r1} 10.0.0.14:6379@16379 slave {ids.m1} 0 1700000000000 2 connected\n"
        f"{ids.r2} 10.0.0.15:6379@16379 slave {ids.m2} 0 1700000000000 3 connected\n"
    )


# ============================================================================
# Runner Fixtures
# ============================================================================

@pytest.fixture
def fake_runner() -> FakeRunner:
    """Create a scripted pod command runner."""
    return FakeRunner()


@pytest.fixture
def ws_response() -> MagicMock:
    """Mock exec websocket that finished with exit status 0."""
    resp = MagicMock()
    resp.is_open.return_value = False
    resp.read_stdout.return_value = "PONG\n"
    resp.read_stderr.return_value = ""
    resp.returncode = 0
    return resp


@pytest.fixture
def core_api() -> MagicMock:
    """Mock CoreV1Api whose pods are Running with a single 'redis' container."""
    api = MagicMock()
    api.read_namespaced_pod.return_value = SimpleNamespace(
        metadata=SimpleNamespace(name="redis-0", namespace="redis"),
        status=SimpleNamespace(phase="Running", pod_ip="10.0.0.10"),
        spec=SimpleNamespace(
            containers=[SimpleNamespace(name="redis"), SimpleNamespace(name="exporter")],
            node_name="node-a",
        ),
    )
    return api


# ============================================================================
# Logger Fixtures
# ============================================================================

@pytest.fixture
def mock_logger() -> MagicMock:
    """Create a mock logger for testing log output."""
    logger = MagicMock()
    logger.info = MagicMock()
    logger.warning = MagicMock()
    logger.error = MagicMock()
    logger.debug = MagicMock()
    return logger
