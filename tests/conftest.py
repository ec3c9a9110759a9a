import pytest

from tracking_api.app import create_app


@pytest.fixture
def data_file(tmp_path):
    return tmp_path / 'data' / 'visitors.json'


@pytest.fixture
def app(data_file):
    return create_app({'TESTING': True, 'VISITOR_DATA_FILE': str(data_file)})


@pytest.fixture
def client(app):
    return app.test_client()
