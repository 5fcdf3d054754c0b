"""
Pytest fixtures for backend testing.
Provides a SQLite-backed session, an in-memory JSON-RPC ledger and
pre-wired provenance services.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterator
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from agrichain.core.config import Settings, get_settings
from agrichain.db.models import Base
from agrichain.modules.ledger.rpc import LedgerRpcClient, LedgerRpcConfig
from agrichain.modules.ledger.service import LedgerAnchorService
from agrichain.modules.ledger.signing import TransactionSigner
from agrichain.modules.provenance.attachments import AttachmentStorage
from agrichain.modules.provenance.service import ProvenanceCoordinator
from agrichain.modules.provenance.store import RecordStore
from tests.tools.fake_ledger import PRIVATE_KEY, RPC_URL, FakeChain


@pytest.fixture(autouse=True)
def ledger_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Point cached settings at test-friendly ledger and upload values."""
    monkeypatch.setenv("LEDGER_PRIVATE_KEY", PRIVATE_KEY)
    monkeypatch.setenv("LEDGER_RPC_URL", RPC_URL)
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        ledger_rpc_url=RPC_URL,
        ledger_private_key=PRIVATE_KEY,
        ledger_expected_chain_id=80002,
        ledger_confirmation_timeout=1.0,
        ledger_poll_interval=0.01,
        ledger_history_scan_blocks=20,
        upload_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def fake_chain() -> FakeChain:
    return FakeChain()


@pytest_asyncio.fixture
async def ledger_service(
    fake_chain: FakeChain, settings: Settings
) -> AsyncGenerator[LedgerAnchorService, None]:
    rpc = LedgerRpcClient(LedgerRpcConfig(rpc_url=RPC_URL), transport=fake_chain.transport())
    service = LedgerAnchorService(
        rpc,
        network_name=settings.ledger_network_name,
        signer=TransactionSigner(settings.ledger_private_key),
        expected_chain_id=settings.ledger_expected_chain_id,
        confirmation_timeout=settings.ledger_confirmation_timeout,
        poll_interval=settings.ledger_poll_interval,
        history_scan_blocks=settings.ledger_history_scan_blocks,
    )
    yield service
    await service.close()


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with working SAVEPOINT support."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'agrichain.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        # Let SQLAlchemy emit BEGIN itself so nested transactions work
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    factory = async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)
    async with factory() as session:
        yield session


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False, autoflush=False)


@pytest.fixture
def record_store(db_session: AsyncSession, settings: Settings) -> RecordStore:
    return RecordStore(db_session, settings=settings)


@pytest.fixture
def attachment_storage(settings: Settings) -> AttachmentStorage:
    return AttachmentStorage(settings.upload_dir)


@pytest.fixture
def coordinator(
    record_store: RecordStore,
    ledger_service: LedgerAnchorService,
    attachment_storage: AttachmentStorage,
    settings: Settings,
) -> ProvenanceCoordinator:
    return ProvenanceCoordinator(
        record_store,
        ledger_service,
        attachment_storage=attachment_storage,
        settings=settings,
    )
