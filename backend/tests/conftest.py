"""Pytest configuration and fixtures for Ordinal Launchpad backend tests"""
from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.main import app
from app.api.deps import get_chain
from app.config import Settings, get_settings
from app.models.collection import Collection, LaunchStatus, SupplyItem
from app.models.database import Base, get_db
from app.models.phase import MintPhase, Whitelist, WhitelistEntry
from app.services.actor import Actor
from app.services.chain_client import TxStatus

ADMIN_WALLET = "bc1qadmin0000000000000000000000000000000000"
WALLET_A = "bc1qwalleta000000000000000000000000000000000"
WALLET_B = "bc1qwalletb000000000000000000000000000000000"


class FakeChain:
    """In-memory stand-in for MempoolClient"""

    def __init__(self):
        self.transactions: Dict[str, TxStatus] = {}
        self.unreachable = set()
        self.lookups = []
        self.fee_rate: Optional[float] = 25.0

    def confirm(self, txid: str, confirmations: int = 1, block_height: int = 850000):
        self.transactions[txid] = TxStatus(
            txid=txid,
            exists=True,
            confirmed=True,
            confirmations=confirmations,
            block_height=block_height,
            fee_rate=10.0,
        )

    def in_mempool(self, txid: str, fee_rate: float = 2.0):
        self.transactions[txid] = TxStatus(txid=txid, exists=True, confirmed=False, fee_rate=fee_rate)

    async def check_transaction(self, txid: str) -> Optional[TxStatus]:
        self.lookups.append(txid)
        if txid in self.unreachable:
            return None
        return self.transactions.get(txid, TxStatus.not_found(txid))

    async def get_recommended_fee_rate(self) -> Optional[float]:
        return self.fee_rate


@pytest.fixture
def settings() -> Settings:
    """Settings with a known admin wallet and no pacing between chain lookups"""
    return Settings(
        admin_wallets=[ADMIN_WALLET],
        reconciliation_delay_seconds=0,
        scheduler_enabled=False,
        mint_credit_cost=0,
    )


@pytest.fixture
def admin() -> Actor:
    return Actor.admin(ADMIN_WALLET)


@pytest.fixture
def system() -> Actor:
    return Actor.system("test")


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path):
    """
    File-backed SQLite database per test.

    A file (not :memory:) so that several connections see the same data in
    the concurrency tests. The busy timeout lets them queue on the write lock.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'launchpad.db'}",
        echo=False,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test"""
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, settings, fake_chain) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client. Each request gets its own session, as in production."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_chain():
        return fake_chain

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_chain] = override_get_chain

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Wallet-Address": ADMIN_WALLET}


@pytest.fixture
def make_launch(db_session):
    """
    Factory for a collection with generated supply and one phase.

    Returns (collection, phase). By default the collection is active and the
    phase is open and active, started an hour ago.
    """

    async def _make(
        supply: int = 10,
        cap_supply: Optional[int] = None,
        max_per_wallet: Optional[int] = None,
        phase_allocation: Optional[int] = None,
        whitelist: Optional[Dict[str, int]] = None,
        whitelist_only: bool = False,
        active: bool = True,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        mint_price_sats: int = 5000,
    ):
        now = datetime.utcnow()
        collection = Collection(
            name="Test Collection",
            total_supply=supply,
            cap_supply=cap_supply,
            is_locked=active,
            launch_status=LaunchStatus.ACTIVE.value if active else LaunchStatus.SCHEDULED.value,
        )
        db_session.add(collection)
        await db_session.flush()
        db_session.add_all([
            SupplyItem(collection_id=collection.id, item_number=i + 1) for i in range(supply)
        ])

        whitelist_id = None
        if whitelist is not None:
            wl = Whitelist(collection_id=collection.id, name="Allowlist")
            db_session.add(wl)
            await db_session.flush()
            whitelist_id = wl.id
            db_session.add_all([
                WhitelistEntry(whitelist_id=wl.id, wallet_address=wallet, allocation=allocation)
                for wallet, allocation in whitelist.items()
            ])

        phase = MintPhase(
            collection_id=collection.id,
            phase_name="Whitelist" if whitelist_only else "Public",
            phase_order=0,
            start_time=start_time or now - timedelta(hours=1),
            end_time=end_time,
            is_active=active,
            mint_price_sats=mint_price_sats,
            max_per_wallet=max_per_wallet,
            phase_allocation=phase_allocation,
            whitelist_only=whitelist_only,
            whitelist_id=whitelist_id,
        )
        db_session.add(phase)
        await db_session.commit()
        return collection, phase

    return _make
