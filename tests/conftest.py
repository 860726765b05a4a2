"""
Pytest fixtures: a DataStore on a throwaway database and a Flask test client.
"""
import pytest

from juicebox import create_app
from juicebox.datastore import DataStore


@pytest.fixture
def datastore(tmp_path):
    """DataStore backed by a fresh SQLite file."""
    store = DataStore.from_path(tmp_path / "data", timeout=5.0, max_workers=4)
    yield store
    store.close()


@pytest.fixture
def albert(datastore):
    return datastore.create_user("albert", "bertie99", name="Al Bert", location="Sidney, Australia")


@pytest.fixture
def sandra(datastore):
    return datastore.create_user("sandra", "2sandy4me", name="Just Sandra", location="Ain't tellin'")


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test-secret-key",
        "DATA_DIR": str(tmp_path / "api-data"),
    })
    yield app
    app.extensions["datastore"].close()


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client


@pytest.fixture
def register(client):
    """Register (and log in) a user through the API."""
    def _register(username, password="secret-pass", **extra):
        response = client.post("/api/users/register", json={"username": username, "password": password, **extra})
        assert response.status_code == 201, response.get_json()
        return response.get_json()["user"]
    return _register
