"""
Tests for the content quality monitor — classification heuristic, agent
check, verdict caching and the Firecrawl fallback cycle.
Run: pytest tests/test_quality.py -v
"""
import pytest

from conftest import make_settings
from fake_platform import GOOD_ANSWER, LOGIN_WALL_ANSWER
from siteagent.cache.verdict_cache import QualityVerdict, VerdictCache
from siteagent.knowledge_base.service import Readiness
from siteagent.quality.monitor import ContentQualityMonitor, QualityState, classify_response
from siteagent.scraper.firecrawl_client import FirecrawlClient

AGENT = "Assistant - example.com"
READY = Readiness(ready=True, has_content=True)
EMPTY = Readiness(ready=True, has_content=False)


class TestClassifyResponse:

    def test_two_auth_keywords_is_low_quality(self):
        verdict = classify_response("Please sign in with your password to see this page content today.")
        assert verdict.is_low_quality is True
        assert set(verdict.matched_keywords) >= {"sign in", "password"}

    def test_substantive_answer_is_ok(self):
        verdict = classify_response(GOOD_ANSWER)
        assert len(GOOD_ANSWER) >= 50
        assert verdict.is_low_quality is False
        assert verdict.matched_keywords == []

    def test_short_answer_is_low_quality(self):
        verdict = classify_response("I don't know.")
        assert verdict.is_low_quality is True
        assert "too short" in verdict.reason

    def test_single_keyword_in_long_answer_is_ok(self):
        text = "Customers can log in to track orders. " + GOOD_ANSWER
        assert classify_response(text).is_low_quality is False

    def test_keywords_match_whole_words(self):
        # "login" inside "bloginfo" is not the keyword
        text = "Our catalogue lists bloginfo widgets and many other artisan products for sale worldwide."
        assert classify_response(text).matched_keywords == []

    def test_thresholds_are_tunable(self):
        text = "Please sign in. " + GOOD_ANSWER
        assert classify_response(text, min_keyword_matches=1).is_low_quality is True
        assert classify_response("short", min_response_length=3).is_low_quality is False


class TestVerdictCache:

    def test_set_get_invalidate(self):
        cache = VerdictCache()
        cache.set("kb-1", QualityVerdict(is_low_quality=True, reason="x"))
        assert "kb-1" in cache
        assert cache.get("kb-1").is_low_quality is True
        cache.invalidate("kb-1")
        assert cache.get("kb-1") is None
        assert len(cache) == 0


class TestCheckQuality:

    @pytest.mark.asyncio
    async def test_check_uses_agent_endpoint(self, monitor, platform):
        agent = platform.add_agent(AGENT)
        verdict = await monitor.check_quality(agent["uuid"], agent["deployment"]["url"])
        assert verdict.is_low_quality is False
        assert platform.count("POST", "/api/v1/chat/completions") == 1

    @pytest.mark.asyncio
    async def test_check_key_is_reused(self, monitor, platform):
        agent = platform.add_agent(AGENT)
        await monitor.check_quality(agent["uuid"], agent["deployment"]["url"])
        await monitor.check_quality(agent["uuid"], agent["deployment"]["url"])
        assert len(platform.api_keys[agent["uuid"]]) == 1
        assert platform.api_keys[agent["uuid"]][0]["name"] == "quality-check"

    @pytest.mark.asyncio
    async def test_restarted_monitor_reports_earlier_check_keys(
        self, monitor, gradient, kb_service, scraper, test_settings, platform, caplog,
    ):
        agent = platform.add_agent(AGENT)
        await monitor.check_quality(agent["uuid"], agent["deployment"]["url"])

        restarted = ContentQualityMonitor(gradient, kb_service, scraper, test_settings)
        with caplog.at_level("WARNING", logger="siteagent.quality.monitor"):
            await restarted.check_quality(agent["uuid"], agent["deployment"]["url"])

        assert len(platform.api_keys[agent["uuid"]]) == 2
        assert "1 earlier check keys" in caplog.text

    @pytest.mark.asyncio
    async def test_login_wall_answer_is_low(self, monitor, platform):
        agent = platform.add_agent(AGENT)
        platform.answers[agent["uuid"]] = LOGIN_WALL_ANSWER
        verdict = await monitor.check_quality(agent["uuid"], agent["deployment"]["url"])
        assert verdict.is_low_quality is True


class TestQualityCycle:

    @pytest.mark.asyncio
    async def test_ok_verdict_is_cached(self, monitor, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT)
        endpoint = agent["deployment"]["url"]

        state = monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com")
        assert state == QualityState.CHECKING
        await monitor.drain()

        assert monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com") == QualityState.OK
        assert monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com") == QualityState.OK
        assert platform.count("POST", "/api/v1/chat/completions") == 1

    @pytest.mark.asyncio
    async def test_low_quality_triggers_fallback_then_one_recheck(self, monitor, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT)
        endpoint = agent["deployment"]["url"]
        platform.answers[agent["uuid"]] = LOGIN_WALL_ANSWER

        monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com")
        await monitor.drain()

        # fallback ran: document uploaded, re-indexed, verdict cleared for a re-check
        assert platform.count("POST", "/scrape") == 1
        assert len(platform.data_sources[kb["uuid"]]) == 1
        assert platform.count("POST", "/gen-ai/indexing_jobs") == 1
        assert monitor.cache.get(kb["uuid"]) is None

        platform.answers[agent["uuid"]] = GOOD_ANSWER
        assert monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com") == QualityState.CHECKING
        await monitor.drain()
        assert monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com") == QualityState.OK

    @pytest.mark.asyncio
    async def test_fallback_runs_only_once(self, monitor, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT)
        endpoint = agent["deployment"]["url"]
        platform.answers[agent["uuid"]] = LOGIN_WALL_ANSWER

        monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com")
        await monitor.drain()
        monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com")
        await monitor.drain()

        state = monitor.observe(agent["uuid"], kb["uuid"], endpoint, READY, "https://example.com")
        assert state == QualityState.FALLBACK_DONE
        assert platform.count("POST", "/scrape") == 1

    @pytest.mark.asyncio
    async def test_empty_index_triggers_fallback_without_check(self, monitor, platform):
        kb = platform.add_knowledge_base("example-com-crawl", indexed_items=0)
        agent = platform.add_agent(AGENT)

        state = monitor.observe(agent["uuid"], kb["uuid"], agent["deployment"]["url"], EMPTY, "https://example.com")
        assert state == QualityState.FALLBACK_RUNNING
        assert monitor.is_busy(kb["uuid"])
        await monitor.drain()

        assert platform.count("POST", "/api/v1/chat/completions") == 0
        assert platform.count("POST", "/scrape") == 1
        assert not monitor.is_busy(kb["uuid"])

    @pytest.mark.asyncio
    async def test_failed_check_caches_ok(self, monitor, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT)
        platform.chat_error = 401

        monitor.observe(agent["uuid"], kb["uuid"], agent["deployment"]["url"], READY, "https://example.com")
        await monitor.drain()

        verdict = monitor.cache.get(kb["uuid"])
        assert verdict.is_low_quality is False
        assert "failed" in verdict.reason

    @pytest.mark.asyncio
    async def test_failed_scrape_still_clears_busy_state(self, monitor, platform):
        kb = platform.add_knowledge_base("example-com-crawl", indexed_items=0)
        agent = platform.add_agent(AGENT)
        platform.scrape_success = False

        monitor.observe(agent["uuid"], kb["uuid"], agent["deployment"]["url"], EMPTY, "https://example.com")
        await monitor.drain()

        assert not monitor.is_busy(kb["uuid"])
        assert platform.data_sources[kb["uuid"]] == []

    @pytest.mark.asyncio
    async def test_not_ready_is_not_checked(self, monitor, platform):
        state = monitor.observe("agent-x", "kb-x", "https://x.agents.test", Readiness(ready=False), "https://example.com")
        assert state == QualityState.NOT_CHECKED


class TestFallbackDisabled:

    @pytest.mark.asyncio
    async def test_no_firecrawl_key_disables_cycle(self, gradient, kb_service, platform):
        settings = make_settings(FIRECRAWL_API_KEY=None)
        scraper = FirecrawlClient(settings, transport=platform.transport)
        monitor = ContentQualityMonitor(gradient, kb_service, scraper, settings)

        assert monitor.enabled is False
        assert monitor.observe("a", "kb", "https://a.agents.test", EMPTY, "https://example.com") == QualityState.DISABLED
        assert await monitor.enrich("kb", "https://example.com") is False
        result = await scraper.scrape_url("https://example.com")
        assert result.success is False
        assert platform.count("POST", "/scrape") == 0
        await scraper.close()


class TestFirecrawlClient:

    @pytest.mark.asyncio
    async def test_scrape(self, scraper):
        result = await scraper.scrape_url("https://example.com")
        assert result.success is True
        assert result.markdown.startswith("# Example Corp")
        assert result.title == "Example Corp"

    @pytest.mark.asyncio
    async def test_crawl_joins_pages(self, scraper):
        result = await scraper.crawl_site("https://example.com", max_pages=5)
        assert result.success is True
        assert result.pages == 2
        assert "# https://example.com/about" in result.markdown
        assert "\n\n---\n\n" in result.markdown

    @pytest.mark.asyncio
    async def test_crawl_mode_fallback(self, gradient, kb_service, platform):
        settings = make_settings(FALLBACK_MODE="crawl")
        scraper = FirecrawlClient(settings, transport=platform.transport)
        monitor = ContentQualityMonitor(gradient, kb_service, scraper, settings)
        kb = platform.add_knowledge_base("example-com-crawl")

        assert await monitor.enrich(kb["uuid"], "https://example.com") is True
        assert platform.count("POST", "/crawl") == 1
        await scraper.close()
