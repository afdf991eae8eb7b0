import pytest
from fastapi.testclient import TestClient

from stockhold.db import get_db
from stockhold.main import app
from stockhold.tests.factories import ORGANIZATION_ID, USER_ID, create_session, create_session_factory


@pytest.fixture()
def db():
    session = create_session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def session_factory():
    return create_session_factory()


@pytest.fixture()
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    headers = {"X-Organization-Id": str(ORGANIZATION_ID), "X-User-Id": str(USER_ID)}
    with TestClient(app, headers=headers) as test_client:
        yield test_client
    app.dependency_overrides.pop(get_db, None)
