import os
import sys

import pytest_asyncio

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Ensure placeholder secrets do not trigger validators during tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")

from core.db_manager import DatabaseManager  # noqa: E402


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(str(tmp_path / "inkwell.db"))
    await manager.init_schema()
    return manager
