import pytest

from fakes import FakeConnection, Link


@pytest.fixture
def link():
    return Link()


@pytest.fixture(autouse=True)
def reset_connection_names():
    FakeConnection.created = 0
    yield
