import os
import tempfile
from typing import AsyncGenerator

# Settings are read at import time
os.environ.setdefault("STATE_BACKEND", "memory")
os.environ.setdefault("PIPELINE_EXECUTION_MODE", "inline")
os.environ.setdefault("PROVIDER_SIMULATION", "true")
os.environ.setdefault("SIMULATED_LATENCY_MS", "0")
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.mkdtemp(), 'analysis_test.db')}"
)

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from src.engines.analysis.circuit_breaker import CircuitBreakerRegistry, InMemoryBreakerStore
from src.engines.analysis.orchestrator import OrchestratorConfig, PipelineOrchestrator
from src.engines.analysis.providers import ProviderClient
from src.pipeline.stages import DEFAULT_STAGE_DEFINITIONS
from tests.fakes import FakeClock, no_sleep


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return CircuitBreakerRegistry(
        InMemoryBreakerStore(),
        failure_threshold=3,
        window_ms=60_000,
        cooldown_ms=30_000,
        max_cooldown_ms=120_000,
        clock=clock,
    )


@pytest.fixture
def make_orchestrator(registry):
    def build(client: ProviderClient, **overrides) -> PipelineOrchestrator:
        config = OrchestratorConfig(
            stage_definitions=overrides.pop("stage_definitions", DEFAULT_STAGE_DEFINITIONS),
            provider_client=client,
            breaker_registry=overrides.pop("breaker_registry", registry),
            sleep=overrides.pop("sleep", no_sleep),
            jitter=overrides.pop("jitter", lambda: 0.0),
            **overrides,
        )
        return PipelineOrchestrator(config)

    return build


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from src.main import app

    # Trigger lifespan events (startup/shutdown)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
