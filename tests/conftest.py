"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for site_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from siteagent.config import Config, SiteControllerConfig, TemporalConfig  # noqa: E402
from siteagent.metrics import SiteAgentMetrics  # noqa: E402

SITE_ID = "6f1c2e4a-8b3d-4c5e-9f7a-1b2c3d4e5f60"


class SleepRecorder:
    """Replacement for asyncio.sleep that returns immediately and records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fast_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def metrics() -> SiteAgentMetrics:
    return SiteAgentMetrics()


@pytest.fixture
def site_controller_config() -> SiteControllerConfig:
    return SiteControllerConfig(address="localhost:50051", secure=False, codec="json")


@pytest.fixture
def temporal_config() -> TemporalConfig:
    return TemporalConfig(
        host="localhost",
        publish_namespace="cloud",
        subscribe_namespace=SITE_ID,
        publish_queue="cloud-queue",
        subscribe_queue="site-queue",
    )


@pytest.fixture
def agent_config(site_controller_config: SiteControllerConfig, temporal_config: TemporalConfig) -> Config:
    return Config(
        site_id=SITE_ID,
        site_controller=site_controller_config,
        temporal=temporal_config,
        metrics_port=0,
    )
