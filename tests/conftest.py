"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite database per test; the race-condition
suite additionally needs TEST_DATABASE_URL pointing at PostgreSQL.
"""
import hashlib
import itertools
import os
import tempfile
from datetime import datetime
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

# Must be set before the application reads its cached settings.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.mkdtemp(), 'ngo_payments_app.db')}",
)
os.environ.setdefault("APP_ENV", "test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from zoneinfo import ZoneInfo

from ngo_payments.config import Settings
from ngo_payments.core.checksum import CHECK_MAC_FIELD, CheckMacValue
from ngo_payments.core.order_lines import EmergencyLine, OrderKind, OrderLine, SupplyLine
from ngo_payments.core.order_service import OrderService
from ngo_payments.core.reconciliation import ReconciliationEngine
from ngo_payments.database.models import Base, EmergencyNeed, Order, Supply
from ngo_payments.integrations.callback_handler import CallbackHandler
from ngo_payments.integrations.ecpay_client import EcpayClient

RETURN_URL = "https://ngo.example.org/webhooks/ecpay"
CLIENT_BACK_URL = "https://ngo.example.org/orders/done"

# Medical package: supplies 14, 15, 18, 19
MEDICAL_PACKAGE = [
    SupplyLine(supply_id=14, quantity=2, unit_price=80),
    SupplyLine(supply_id=15, quantity=2, unit_price=60),
    SupplyLine(supply_id=18, quantity=2, unit_price=150),
    SupplyLine(supply_id=19, quantity=5, unit_price=25),
]

_trade_seq = itertools.count(1)


def pytest_configure(config: pytest.Config) -> None:
    for marker, description in (
        ("unit", "fast tests without external services"),
        ("integration", "tests that go through the HTTP API"),
        ("race", "concurrency tests that need PostgreSQL"),
    ):
        config.addinivalue_line("markers", f"{marker}: {description}")


def next_trade_no() -> str:
    """Unique 17-character trade number for a test order, distinct from generated ones."""
    return f"NGO20250727{next(_trade_seq):06d}"


def sign_callback(checksum: CheckMacValue, payload: Dict[str, str]) -> Dict[str, str]:
    """Sign a callback the way ECPay does: over every posted field, empty ones included."""
    canonical = checksum.canonicalize(payload, drop_empty=False)
    signed = dict(payload)
    signed[CHECK_MAC_FIELD] = hashlib.sha256(canonical.encode("ascii")).hexdigest().upper()
    return signed


def callback_payload(
    trade_no: str,
    amount: int,
    rtn_code: str = "1",
    gateway_trade_no: str = "2507271430521234",
) -> Dict[str, str]:
    """Unsigned ECPay ReturnURL form body."""
    return {
        "MerchantID": "3002607",
        "MerchantTradeNo": trade_no,
        "StoreID": "",
        "RtnCode": rtn_code,
        "RtnMsg": "Succeeded" if rtn_code == "1" else "Failed",
        "TradeNo": gateway_trade_no,
        "TradeAmt": str(amount),
        "PaymentDate": "2025/07/27 14:31:10",
        "PaymentType": "Credit_CreditCard",
        "PaymentTypeChargeFee": "15",
        "TradeDate": "2025/07/27 14:30:52",
        "SimulatePaid": "0",
        "CustomField1": "",
    }


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings (ECPay staging merchant)."""
    return Settings(
        ecpay_merchant_id="3002607",
        ecpay_hash_key="pwFHCqoQZGmho4w6",
        ecpay_hash_iv="EkRm7iFT261dpevs",
        public_base_url="https://ngo.example.org",
        app_name="ngo-payments-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest.fixture
def checksum(test_settings: Settings) -> CheckMacValue:
    return CheckMacValue(test_settings.ecpay_hash_key, test_settings.ecpay_hash_iv)


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock pinned to 2025/07/27 14:30:52 Taipei time."""
    return lambda: datetime(2025, 7, 27, 14, 30, 52, tzinfo=ZoneInfo("Asia/Taipei"))


@pytest.fixture
def ecpay_client(
    test_settings: Settings, checksum: CheckMacValue, fixed_clock: Callable[[], datetime]
) -> EcpayClient:
    return EcpayClient(settings=test_settings, checksum=checksum, clock=fixed_clock)


@pytest.fixture
def reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine()


@pytest.fixture
def callback_handler(
    checksum: CheckMacValue, reconciliation_engine: ReconciliationEngine
) -> CallbackHandler:
    return CallbackHandler(checksum=checksum, reconciliation_engine=reconciliation_engine)


@pytest.fixture
def order_service() -> OrderService:
    return OrderService()


@pytest_asyncio.fixture
async def session_factory(tmp_path: Any) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Fresh SQLite database with seeded supplies and an emergency need."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ngo_payments.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    async with factory() as session:
        session.add_all(
            [
                Supply(id=14, name="Bandages", stock=10),
                Supply(id=15, name="Gauze", stock=10),
                Supply(id=18, name="First aid kit", stock=10),
                Supply(id=19, name="Face masks", stock=10),
                EmergencyNeed(
                    id=1,
                    case_id=42,
                    supply_name="Wheelchair cushion",
                    requested_quantity=10,
                    collected_quantity=8,
                ),
            ]
        )
        await session.commit()

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def make_order(
    test_db: AsyncSession, order_service: OrderService
) -> Callable[..., Any]:
    """Factory for committed pending orders."""

    async def _make(
        lines: Optional[List[OrderLine]] = None,
        kind: OrderKind = OrderKind.PACKAGE,
        trade_no: Optional[str] = None,
    ) -> Order:
        return await order_service.create_order(
            test_db,
            kind=kind,
            lines=lines or MEDICAL_PACKAGE,
            user_id=7,
            trade_no=trade_no or next_trade_no(),
        )

    return _make


@pytest_asyncio.fixture
async def emergency_order(make_order: Callable[..., Any]) -> Order:
    """Pending order donating 2 units to emergency need 1 (8/10 collected)."""
    return await make_order(
        lines=[EmergencyLine(emergency_need_id=1, quantity=2, unit_price=500)],
        kind=OrderKind.EMERGENCY,
    )


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client bound to the test database."""
    from ngo_payments.api.main import app
    from ngo_payments.database.connection import get_db

    async def override_get_db() -> AsyncGenerator[AsyncSession, Any]:
        async with session_factory() as session:
            try:
                yield session
            finally:
                await session.rollback()

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
