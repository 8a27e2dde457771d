from unittest.mock import AsyncMock, Mock

import pytest

from shopchat.models import CoordinatorState
from shopchat.services.catalog_service import Catalog
from shopchat.services.history_service import InMemoryHistoryStore
from tests.fakes import ScriptedProvider

CATALOG_ROWS = [
    ["name", "price", "unit", "group"],
    ["ฉาก 2x2 หนา 1.2 มิล", "135", "เส้น", "ฉาก"],
    ["ฉาก 1.5x1.5 หนา 1 มิล", "95", "เส้น", "ฉาก"],
    ["ฉากริมสังกะสี 3 เมตร", "", "เส้น", "ฉากริมสังกะสี"],
    ["แผ่นฝ้ายิปซัม 9 มิล", "145", "แผ่น", "แผ่นฝ้า"],
    ["ไม้ฝา ตราช้าง #1", "60", "แผ่น", "ไม้ฝา"],
]


@pytest.fixture
def state():
    return CoordinatorState()


@pytest.fixture
def catalog():
    return Catalog.from_rows(CATALOG_ROWS)


@pytest.fixture
def history():
    return InMemoryHistoryStore(max_messages=10)


@pytest.fixture
def channel():
    """Mock LINE channel."""
    mock = Mock()
    mock.send_text = AsyncMock(return_value=True)
    mock.reply = AsyncMock(return_value=True)
    mock.push = AsyncMock(return_value=True)
    mock.aclose = AsyncMock()
    mock.remember_reply_token = Mock()
    return mock


@pytest.fixture
def provider():
    return ScriptedProvider()
