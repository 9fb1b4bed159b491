import pytest
from fastapi.testclient import TestClient

from releaf.api import create_app
from releaf.auth import create_access_token
from releaf.models import Role
from releaf.storage import InMemoryStorage


@pytest.fixture
def client():
    return TestClient(create_app(InMemoryStorage()))


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token(1, Role.ADMIN)}"}


@pytest.fixture
def member_headers():
    return {"Authorization": f"Bearer {create_access_token(2, Role.MEMBER)}"}


@pytest.fixture
def other_member_headers():
    return {"Authorization": f"Bearer {create_access_token(3, Role.MEMBER)}"}
