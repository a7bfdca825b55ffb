import pytest
import pytest_asyncio
from factories import DESCRIPTION_URL
from factories import MOCK_API_KEY
from factories import REGISTRY_HOST
from factories import FakeRegistry
from fastapi.testclient import TestClient
from pytest_httpx import HTTPXMock

from notifications.enrichment import ManifestEnricher
from notifications.webhook import create_application
from regtools.images import RegistryClient
from utils.config import Config
from vision.describe import DescriptionClient


@pytest.fixture
def config() -> Config:
    """Provides a Config pointing at the mocked registry and description service."""
    return Config(
        registry_address=REGISTRY_HOST,
        description_api_key=MOCK_API_KEY,
        description_url=DESCRIPTION_URL,
    )


@pytest.fixture
def fake_registry(httpx_mock: HTTPXMock) -> FakeRegistry:
    """Provides an in-memory registry answering on the mocked registry host."""
    return FakeRegistry(httpx_mock)


@pytest_asyncio.fixture
async def registry_client():
    """Provides a RegistryClient against the mocked registry host."""
    async with RegistryClient(REGISTRY_HOST) as client:
        yield client


@pytest_asyncio.fixture
async def describer():
    """Provides a DescriptionClient against the mocked description service."""
    async with DescriptionClient(MOCK_API_KEY, url=DESCRIPTION_URL) as client:
        yield client


@pytest.fixture
def enricher(registry_client: RegistryClient, describer: DescriptionClient) -> ManifestEnricher:
    return ManifestEnricher(registry_client, describer)


@pytest.fixture
def client(config: Config) -> TestClient:
    """Provides a TestClient for the webhook, without the start-up registry ping."""
    return TestClient(create_application(config, check_registry=False))
