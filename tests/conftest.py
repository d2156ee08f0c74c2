from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import orderflow.persistence.pg as pg
from orderflow.core.config import get_settings
from orderflow.payments.gateway import FakePaymentGateway
from orderflow.persistence.models import Base
from orderflow.persistence.order_repository import sql_repository_scope
from orderflow.services.orders import OrderService


class RecordingNotifier:
    backend = "recording"

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def notify(self, event_kind: str, snapshot: dict) -> None:
        self.events.append((event_kind, snapshot))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.payment_backend = "fake"
    settings.notifier_backend = "log"

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(configure_test_engine):
    yield
    with pg.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def service(configure_test_engine, gateway, notifier) -> OrderService:
    return OrderService(
        repository_scope=sql_repository_scope,
        gateway=gateway,
        notifier=notifier,
        settings=get_settings(),
    )


@pytest.fixture()
def client(service):
    from orderflow.main import app

    app.state.order_service = service
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.state.order_service = None
