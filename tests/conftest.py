"""
Shared fixtures for the escrow and payout core test suite.

Key Components:
1. A throwaway SQLite database, rebuilt for every test that asks for it
2. In-memory chain gateway and wallet registry doubles
3. Principals for each order role and a payout provider double
"""

import os
import sys
import tempfile

# Environment must be in place before config is imported anywhere
_TEST_DIR = tempfile.mkdtemp(prefix="escrow_core_tests_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/escrow_core_test.db"
os.environ["KEY_ENCRYPTION_SECRET"] = "test-master-secret-that-is-long-enough-000"
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["DISPUTE_ON_CHAIN"] = "false"
for _name in ("RPC_URL", "OPERATOR_SECRET", "FACTORY_ADDRESS", "TOKEN_ADDRESS",
              "RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET", "RAZORPAY_ACCOUNT_NUMBER", "RAZORPAY_WEBHOOK_SECRET"):
    os.environ.pop(_name, None)

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from database import async_engine
from models import Base
from services.circuit_breaker import circuit_breakers
from tests.fixtures import ADMIN_ID, BUYER_ID, SELLER_ID, STRANGER_ID, FakeChainGateway, FakeWalletRegistry
from utils.auth import Principal

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@pytest_asyncio.fixture
async def clean_database():
    """Fresh schema for one test"""
    async with async_engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)
        await connection.run_sync(Base.metadata.create_all)
    yield
    async with async_engine.begin() as connection:
        await connection.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    for breaker in circuit_breakers.values():
        breaker.reset()
    yield


@pytest.fixture
def fake_wallets():
    return FakeWalletRegistry()


@pytest.fixture
def fake_gateway(fake_wallets):
    return FakeChainGateway(fake_wallets)


@pytest.fixture
def buyer():
    return Principal(user_id=BUYER_ID, role="buyer")


@pytest.fixture
def seller():
    return Principal(user_id=SELLER_ID, role="seller")


@pytest.fixture
def admin():
    return Principal(user_id=ADMIN_ID, role="admin")


@pytest.fixture
def stranger():
    return Principal(user_id=STRANGER_ID, role="buyer")


@pytest.fixture
def mock_provider():
    """Payout provider double; unavailable until a test says otherwise"""
    provider = MagicMock()
    provider.is_available.return_value = False
    provider.create_contact = AsyncMock(return_value="cont_test_1")
    provider.create_fund_account = AsyncMock(return_value="fa_test_1")
    provider.create_payout = AsyncMock(
        return_value={"id": "pout_test_1", "status": "processing", "utr": None, "failure_reason": None}
    )
    provider.fetch_payout = AsyncMock(
        return_value={"id": "pout_test_1", "status": "processed", "utr": "UTR123456", "failure_reason": None}
    )
    return provider
