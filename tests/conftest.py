from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


@pytest.fixture
def session_local(tmp_path, monkeypatch) -> Generator[sessionmaker, None, None]:
    import src.models.db as db_module
    from src.models import tables  # noqa: F401
    from src.models.db import Base

    db_file = tmp_path / "test.db"
    test_url = f"sqlite:///{db_file}"
    engine = create_engine(test_url, connect_args={"check_same_thread": False}, future=True)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    monkeypatch.setattr(db_module, "engine", engine, raising=False)
    monkeypatch.setattr(db_module, "SessionLocal", TestingSessionLocal, raising=False)

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    yield TestingSessionLocal

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_ctx(session_local) -> Generator[dict, None, None]:
    from src.api.routes import get_gateway_client, get_token_store
    from src.app import app
    from src.storage.repository import SqlTokenStore
    from tests.fakes import ScriptedGateway

    store = SqlTokenStore(session_local)
    gateway = ScriptedGateway()
    app.dependency_overrides[get_token_store] = lambda: store
    app.dependency_overrides[get_gateway_client] = lambda: gateway

    with TestClient(app) as client:
        yield {
            "client": client,
            "session_local": session_local,
            "store": store,
            "gateway": gateway,
        }

    app.dependency_overrides.clear()
