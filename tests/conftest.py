"""
Global test configuration and fixtures.
"""

import pytest

from headjack.config import BotConfig
from headjack.core.persistence import MemoryStateStore
from headjack.core.session import Session
from headjack.core.state import SessionStateTracker

from tests.factories import BOT_USER
from tests.fakes import FakeProtocolClient


@pytest.fixture
def fake_client() -> FakeProtocolClient:
    return FakeProtocolClient()


@pytest.fixture
def session() -> Session:
    return Session(user_id=BOT_USER, device_id="BOTDEVICE")


@pytest.fixture
def tracker(session: Session) -> SessionStateTracker:
    return SessionStateTracker(session)


@pytest.fixture
def memory_store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def bot_config() -> BotConfig:
    """Fast retry curve, every sender allowed and no backlog skipping, isolated from the environment."""
    return BotConfig.model_construct(
        allow_list=r".*",
        initial_backoff=0.01,
        max_backoff=0.05,
        backoff_jitter=0.0,
        skip_initial_backlog=False,
    )
