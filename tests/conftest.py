"""
Shared fixtures for the site agent orchestrator test suite.
"""
import sys
import os
import pytest
import pytest_asyncio

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Set env vars before any imports that read them
os.environ.setdefault("DO_API_TOKEN", "test-token")
os.environ.setdefault("DO_API_BASE", "https://api.test/v2")
os.environ.setdefault("FIRECRAWL_API_BASE", "https://firecrawl.test/v1")

from fake_platform import API_BASE, FIRECRAWL_BASE, FakePlatform  # noqa: E402


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays without waiting."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def make_settings(**overrides):
    from siteagent.config.settings import Settings
    values = dict(
        DO_API_TOKEN="test-token",
        DO_API_BASE=API_BASE,
        DO_REGION="tor1",
        DO_PROJECT_ID="proj-1",
        FIRECRAWL_API_KEY="fc-test",
        FIRECRAWL_API_BASE=FIRECRAWL_BASE,
        FIRECRAWL_POLL_INTERVAL=0,
        DATABASE_READY_TIMEOUT=5,
        DATABASE_READY_POLL_INTERVAL=0,
        ATTACH_MAX_ATTEMPTS=3,
        ATTACH_RETRY_DELAY=0,
        CREATE_RETRY_INITIAL_DELAY=0,
        CREATE_RETRY_MAX_DELAY=0,
        POLL_RETRY_INITIAL_DELAY=0,
        POLL_RETRY_MAX_DELAY=0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings():
    """Settings pointing at the fake platform, with every wait set to zero."""
    return make_settings()


@pytest.fixture
def platform():
    """Fresh fake platform (empty account)."""
    return FakePlatform()


@pytest.fixture
def sleep():
    return SleepRecorder()


@pytest_asyncio.fixture
async def gradient(test_settings, platform, sleep):
    """GradientClient wired to the fake platform."""
    from siteagent.gradient.client import GradientClient
    client = GradientClient(test_settings, transport=platform.transport, sleep=sleep)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def kb_service(gradient, test_settings, platform, sleep):
    from siteagent.knowledge_base.service import KnowledgeBaseService
    service = KnowledgeBaseService(gradient, test_settings, transport=platform.transport, sleep=sleep)
    yield service
    await service.close()


@pytest.fixture
def provisioner(gradient, kb_service, test_settings):
    from siteagent.agent_service.provisioner import IdempotentProvisioner
    return IdempotentProvisioner(gradient, kb_service, test_settings)


@pytest_asyncio.fixture
async def scraper(test_settings, platform, sleep):
    from siteagent.scraper.firecrawl_client import FirecrawlClient
    client = FirecrawlClient(test_settings, transport=platform.transport, sleep=sleep)
    yield client
    await client.close()


@pytest.fixture
def monitor(gradient, kb_service, scraper, test_settings):
    from siteagent.quality.monitor import ContentQualityMonitor
    return ContentQualityMonitor(gradient, kb_service, scraper, test_settings)


@pytest.fixture
def reconciler(gradient, provisioner, kb_service, monitor, test_settings, sleep):
    from siteagent.agent_service.repair import AttachmentReconciler
    return AttachmentReconciler(
        gradient, provisioner, kb_service, test_settings, enricher=monitor.enrich, sleep=sleep,
    )


@pytest_asyncio.fixture
async def orchestrator(test_settings, platform, sleep):
    """Fresh SiteAgentOrchestrator against the fake platform."""
    from siteagent.orchestrator.orchestrator import SiteAgentOrchestrator
    orch = SiteAgentOrchestrator(test_settings, transport=platform.transport, sleep=sleep)
    yield orch
    await orch.close()
