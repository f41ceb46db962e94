"""
Pytest configuration and fixtures for feyscan tests.
"""

import sys
from dataclasses import replace
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))
sys.path.insert(0, str(TESTS_DIR))

from feyscan.config import AppConfig  # noqa: E402
from feyscan.gateway import AccessGateway, RateLimitState  # noqa: E402
from feyscan.storage import Storage  # noqa: E402

from fakes import FakeChain, FakeRPC  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )


@pytest.fixture
def cfg(tmp_path):
    """Config with every delay zeroed so tests never sleep on pacing."""
    return AppConfig(
        cheap_rpc_url="http://cheap.invalid",
        backoff_base_ms=0,
        backoff_cap_ms=0,
        chunk_delay_ms=0,
        chunk_delay_ms_catch_up=0,
        probe_delay_ms=0,
        probe_delay_ms_catch_up=0,
        inter_token_delay_ms=0,
        inter_token_delay_ms_catch_up=0,
        attempt_timeout_sec=2.0,
        call_timeout_sec=5.0,
        startup_retry_sec=0.01,
        sqlite_path=str(tmp_path / "feyscan.db"),
    )


@pytest.fixture
def make_cfg(cfg):
    def _make(**overrides):
        return replace(cfg, **overrides)

    return _make


@pytest.fixture
def storage(cfg):
    s = Storage(cfg.sqlite_path)
    yield s
    s.close()


@pytest.fixture
def cheap_rpc():
    return FakeRPC("cheap")


@pytest.fixture
def expensive_rpc():
    return FakeRPC("expensive")


@pytest.fixture
def rate_state():
    return RateLimitState()


@pytest.fixture
def gateway(cfg, cheap_rpc, rate_state):
    return AccessGateway(cfg, cheap_rpc, rate_state=rate_state)


@pytest.fixture
def chain(cheap_rpc):
    c = FakeChain(head=10_000)
    c.install(cheap_rpc)
    return c
