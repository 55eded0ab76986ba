"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for support imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from stackweave.providers.memory import InMemoryProvider  # noqa: E402
from stackweave.state.manager import StateStore  # noqa: E402

FIXTURES_DIR = tests_path / "fixtures"


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def state_store(state_dir: Path) -> StateStore:
    return StateStore(str(state_dir), "app")


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()
