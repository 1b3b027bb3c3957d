import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _fresh_user_store(monkeypatch):
    """Give every test its own in-memory user store and a clean environment."""
    from src.personality.infrastructure import user_store

    monkeypatch.delenv("PERSONALITY_USER_STORE_IMPL", raising=False)
    store = user_store.InMemoryUserStore()
    monkeypatch.setattr(user_store, "_store", store, raising=False)
    return store
