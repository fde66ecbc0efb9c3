"""
Pytest configuration and fixtures for the test suite.
"""
import os
import sys
from typing import Dict, Optional, Sequence

import pytest
import pytest_asyncio

# Add src directory to path for imports, and the repo root for tests.fixtures
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from gemini_relay.circuit_breaker import CircuitBreaker
from gemini_relay.controller import ResilientStreamController
from gemini_relay.failure_logger import configure_failure_logger
from gemini_relay.key_pool import KeyPool
from gemini_relay.model_catalog import ModelCatalog
from gemini_relay.state import ServiceState
from gemini_relay.stream_executor import StreamRequestExecutor

from tests.fixtures.upstream import KEY_A, KEY_B, KEY_C, FakeGemini, mock_client


@pytest.fixture(autouse=True)
def failure_log_dir(tmp_path):
    """Keep failures.log out of the working tree."""
    logs_dir = tmp_path / "logs"
    configure_failure_logger(logs_dir)
    yield logs_dir
    configure_failure_logger(None)


@pytest.fixture
def fake_gemini():
    return FakeGemini()


@pytest_asyncio.fixture
async def http_client(fake_gemini):
    client = mock_client(fake_gemini.handler)
    yield client
    await client.aclose()


@pytest.fixture
def make_controller(http_client):
    """Builds a controller over the fake upstream with zero retry delays."""

    def _make(
        regular: Sequence[str] = (KEY_A, KEY_B, KEY_C),
        premium: Sequence[str] = (),
        models: Optional[Dict[str, str]] = None,
        default_model: str = "gemini-1.5-flash-latest",
        breaker: Optional[CircuitBreaker] = None,
    ) -> ResilientStreamController:
        state = ServiceState(
            key_pool=KeyPool(regular=list(regular), premium=list(premium)),
            circuit_breaker=breaker or CircuitBreaker(),
        )
        catalog = ModelCatalog(
            models if models is not None else {default_model: ""},
            default_model=default_model,
        )
        executor = StreamRequestExecutor(
            http_client, base_url="https://fake.test/v1beta", retry_delays=(0, 0, 0)
        )
        return ResilientStreamController(state, catalog, executor)

    return _make
