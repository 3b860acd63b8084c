import asyncio

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from vnpay_service.config import Settings
from vnpay_service.db import init_db
from vnpay_service.models import Order, OrderItem
from vnpay_service.services.signing import canonical_query, sign

TEST_SECRET = "TESTSECRETKEY1234567890"
TEST_TMN_CODE = "TESTTMN1"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        env="development",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'payments.db'}",
        service_api_key="test-api-key",
        vnpay_tmn_code=TEST_TMN_CODE,
        vnpay_hash_secret=TEST_SECRET,
        vnpay_return_url="https://shop.example.test/vnpay-return",
        asset_root=str(tmp_path / "storage"),
        frontend_base_url="https://shop.example.test",
    )


def _factory(settings):
    # NullPool: every session opens its own connection on whichever loop runs it
    engine = create_async_engine(settings.database_url, poolclass=NullPool)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session_factory(settings):
    engine, factory = _factory(settings)
    await init_db(engine)
    yield factory
    await engine.dispose()


@pytest.fixture
def sync_session_factory(settings):
    """Same database for the TestClient tests, which drive their own event loop."""
    engine, factory = _factory(settings)
    asyncio.run(init_db(engine))
    return factory


async def add_order(factory, order_id="abc123", amount=10.0, anonymous_id=None, item_paths=()):
    async with factory() as session:
        session.add(Order(id=order_id, amount=amount, anonymous_id=anonymous_id))
        for custom, mockup in item_paths:
            session.add(OrderItem(order_id=order_id, custom_design_url=custom, mockup_design_url=mockup))
        await session.commit()


@pytest.fixture
def seed_order():
    return add_order


@pytest.fixture
def callback_params():
    """Build a VNPay return payload signed with the test secret."""

    def make(txn_ref, amount_minor, response_code="00", transaction_status="00", secret=TEST_SECRET, **extra):
        params = {
            "vnp_Amount": str(amount_minor),
            "vnp_BankCode": "NCB",
            "vnp_BankTranNo": "VNP14012345",
            "vnp_CardType": "ATM",
            "vnp_OrderInfo": "Thanh toan don hang abc123",
            "vnp_PayDate": "20240101150000",
            "vnp_ResponseCode": response_code,
            "vnp_TmnCode": TEST_TMN_CODE,
            "vnp_TransactionNo": "14012345",
            "vnp_TransactionStatus": transaction_status,
            "vnp_TxnRef": txn_ref,
        }
        params.update(extra)
        params["vnp_SecureHash"] = sign(secret, canonical_query(params))
        return params

    return make
