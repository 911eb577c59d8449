# tests/conftest.py
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import logging
import yaml
import pytest
import pytest_asyncio
from infra.http_client import HttpClient
from wallet.services.endpoints import make_endpoints_from_cfg

BASE = "https://127.0.0.1:28183"

@pytest.fixture
def test_cfg():
    def load_cfg():
        with open(Path(__file__).resolve().parents[1] / "config.yaml", "r", encoding="utf-8") as f:
            return yaml.safe_load(f)
    cfg = load_cfg()
    # placeholders are left unresolved here; pin them for the tests
    cfg["jmwalletd"]["wallet_name"] = "test"
    cfg["jmwalletd"]["token"] = "test-token"
    cfg["jmwalletd"]["base_url"] = BASE
    return cfg


@pytest.fixture
def endpoints(test_cfg):
    return make_endpoints_from_cfg(test_cfg)


@pytest_asyncio.fixture
async def http_client(test_cfg):
    """
    HttpClient inside its async context manager; the session is closed after the test.
    """
    logger = logging.getLogger("HttpClientTest")
    async with HttpClient(test_cfg, logger=logger) as client:
        yield client
