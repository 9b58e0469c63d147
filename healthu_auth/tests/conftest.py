import httpx
import pytest

from healthu_auth.tests.support import FakeIdP, make_settings


@pytest.fixture
def fake_idp():
    return FakeIdP()


@pytest.fixture
def idp_http_client(fake_idp):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_idp.handler))


@pytest.fixture
def mock_settings():
    """Application settings pointing at the fake IdP"""
    return make_settings()
