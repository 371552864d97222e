"""
Pytest fixtures for promoter tests.
"""
import pytest
from typing import AsyncGenerator, Any, Dict
from datetime import datetime

from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport

# Import the app
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from promoter.main import app
from promoter.schemas.promotion import PromotionContext
from promoter.services.health_engine import HealthEngine
from promoter.services.promotion_engine import PromotionEngine
from promoter.services.step_registry import StepRunnerRegistry


# ============ Fixtures ============

# Default test data
MOCK_PROJECT = "demo"
MOCK_STAGE = "test"
MOCK_PROMOTION = "test.01j2kz8r5v.abc1234"


@pytest.fixture
def promotion_context(tmp_path) -> PromotionContext:
    """Context of a fresh promotion of stage demo:test."""
    return PromotionContext(
        work_dir=str(tmp_path),
        project=MOCK_PROJECT,
        stage=MOCK_STAGE,
        promotion=MOCK_PROMOTION,
    )


@pytest.fixture
def registry() -> StepRunnerRegistry:
    """Empty step runner registry."""
    return StepRunnerRegistry()


@pytest.fixture
def fake_cluster():
    """In-memory cluster client."""
    from tests.testkit import FakeClusterClient
    return FakeClusterClient()


@pytest.fixture
def test_app(registry: StepRunnerRegistry, fake_cluster) -> FastAPI:
    """The FastAPI app with engines backed by the in-memory cluster."""
    app.state.promotion_engine = PromotionEngine(
        registry, kargo_client=fake_cluster, argocd_client=fake_cluster
    )
    app.state.health_engine = HealthEngine(
        registry, kargo_client=fake_cluster, argocd_client=fake_cluster
    )

    yield app

    # Clean up engines after test
    app.state.promotion_engine = None
    app.state.health_engine = None


@pytest.fixture
async def async_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client for async tests."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def fixed_datetime():
    """Return a fixed datetime for deterministic tests."""
    return datetime(2024, 1, 15, 10, 0, 0)


# ============ Testkit Fixtures ============


@pytest.fixture
def argocd_factory():
    """Argo CD resource factory for generating test data."""
    from tests.testkit import ArgoCDResourceFactory
    return ArgoCDResourceFactory


@pytest.fixture
def kargo_factory():
    """Kargo Freight and Warehouse factory for generating test data."""
    from tests.testkit import KargoResourceFactory
    return KargoResourceFactory


@pytest.fixture
def kube_factory():
    """Core Kubernetes resource factory for generating test data."""
    from tests.testkit import KubeResourceFactory
    return KubeResourceFactory


@pytest.fixture
def kube_http_mock():
    """
    Kubernetes HTTP mock fixture for mocking API server calls.

    Usage:
        def test_something(kube_http_mock):
            with kube_http_mock("https://kube.example.com") as mock:
                mock.mock_get_application(app)
                # Make API calls - they will be mocked
    """
    from tests.testkit import KubeHttpMock
    return KubeHttpMock


@pytest.fixture
def no_health_cooldown(monkeypatch):
    """Disable the wait after a sync operation finishes."""
    from promoter.core.config import settings
    monkeypatch.setattr(settings, "HEALTH_COOLDOWN_SECONDS", 0.0)
