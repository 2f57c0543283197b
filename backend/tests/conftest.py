# backend/tests/conftest.py

import os
import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment before anything from `engage` is imported;
# Settings() is instantiated at import time.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"), override=True)

from engage.main import app  # noqa: E402
from engage.services.db_service import db_service  # noqa: E402
from engage.services.jwt_service import jwt_service  # noqa: E402


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    TestClient with the database kept out of the way: no index creation on
    startup and no security-event writes from the auth dependencies.
    """
    mocker.patch.object(db_service, "create_indexes", new_callable=AsyncMock)
    mocker.patch.object(db_service, "log_security_event", new_callable=AsyncMock)

    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers():
    token = jwt_service.create_access_token(data={"sub": "admin", "type": "access", "tenant_id": "store_test"})
    return {"Authorization": f"Bearer {token}"}
