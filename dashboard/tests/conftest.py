"""
Pytest fixtures for the web service tests.
"""
import pytest
from fastapi.testclient import TestClient

from dashboard.app import create_app


@pytest.fixture
def app(app_settings, fake_supabase):
    return create_app(app_settings, transport=fake_supabase.transport())


@pytest.fixture
def client(app):
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client


@pytest.fixture
def components(app):
    return app.state.components
