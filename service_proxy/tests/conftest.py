"""
Shared fixtures for proxy service tests.
"""

import pytest
from fastapi.testclient import TestClient

from shared.test_helpers import UpstreamStub, make_test_config
from service_proxy.app.main import ProxyService
from service_proxy.app.upstream import RequestResolver, UpstreamHosts


@pytest.fixture
def upstream():
    """Scripted upstream shared by the HTTP client under test."""
    return UpstreamStub()


@pytest.fixture
def config():
    return make_test_config()


@pytest.fixture
def hosts(config):
    return UpstreamHosts.from_config(config)


@pytest.fixture
def resolver(hosts):
    return RequestResolver(hosts, api_key="secret-key")


@pytest.fixture
def service(config, upstream):
    return ProxyService(config=config, client=upstream.client())


@pytest.fixture
def client(service):
    with TestClient(service.app) as test_client:
        yield test_client
