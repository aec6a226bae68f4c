"""
End-to-end tests for SiteAgentOrchestrator against the fake platform.
Run: pytest tests/test_orchestrator.py -v
"""
import asyncio

import httpx
import pytest

from conftest import make_settings
from fake_platform import LOGIN_WALL_ANSWER
from siteagent.errors import InvalidUrlError, ResourceNotFoundError
from siteagent.gradient.errors import GradientAPIError
from siteagent.orchestrator.orchestrator import SiteAgentOrchestrator
from siteagent.quality.monitor import QualityState
from siteagent.status.projection import LifecycleStatus

AGENT = "Assistant - example.com"


class TestCreateOrReuse:

    @pytest.mark.asyncio
    async def test_new_site_is_provisioned(self, orchestrator, platform):
        result = await orchestrator.create_or_reuse("https://www.example.com/")

        assert result.is_existing is False
        assert result.status == LifecycleStatus.INDEXING
        assert result.access_key.startswith("sk-")
        assert result.endpoint == f"https://{result.agent_id}.agents.test"
        kb = platform.kbs_named("example-com-crawl")[0]
        assert result.knowledge_base_id == kb["uuid"]
        assert platform.agents[result.agent_id]["_kb_ids"] == [kb["uuid"]]
        assert kb["last_indexing_job"] is not None

    @pytest.mark.asyncio
    async def test_concurrent_submissions_share_one_workflow(self, orchestrator, platform):
        first, second = await asyncio.gather(
            orchestrator.create_or_reuse("example.com"),
            orchestrator.create_or_reuse("https://www.example.com"),
        )
        assert first.agent_id == second.agent_id
        assert len(platform.kbs_named("example-com-crawl")) == 1
        assert len(platform.agents_named(AGENT)) == 1
        assert not orchestrator.lock.in_flight("example.com")

    @pytest.mark.asyncio
    async def test_second_submission_reuses(self, orchestrator, platform):
        first = await orchestrator.create_or_reuse("example.com")
        second = await orchestrator.create_or_reuse("example.com/")

        assert second.is_existing is True
        assert second.agent_id == first.agent_id
        assert second.knowledge_base_id == first.knowledge_base_id
        assert second.access_key and second.access_key != first.access_key
        assert platform.count("POST", "/gen-ai/agents") - platform.count("POST", "/gen-ai/agents/") == 1

    @pytest.mark.asyncio
    async def test_reuse_with_zero_attachments_repairs(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[])

        result = await orchestrator.create_or_reuse("example.com")

        assert result.is_existing is True
        assert result.agent_id == agent["uuid"]
        assert result.knowledge_base_id == kb["uuid"]
        assert result.status == LifecycleStatus.READY
        assert "attached" in result.message

    @pytest.mark.asyncio
    async def test_agent_failure_rolls_back_fresh_kb(self, orchestrator, platform):
        platform.agent_create_error = (422, "invalid_argument", "model not available")

        with pytest.raises(GradientAPIError):
            await orchestrator.create_or_reuse("example.com")

        assert platform.kbs_named("example-com-crawl") == []
        assert not orchestrator.lock.in_flight("example.com")

    @pytest.mark.asyncio
    async def test_agent_failure_keeps_reused_kb(self, orchestrator, platform):
        platform.add_knowledge_base("example-com-crawl")
        platform.agent_create_error = (422, "invalid_argument", "model not available")

        with pytest.raises(GradientAPIError):
            await orchestrator.create_or_reuse("example.com")

        assert len(platform.kbs_named("example-com-crawl")) == 1

    @pytest.mark.asyncio
    async def test_rollback_failure_does_not_mask_error(self, orchestrator, platform):
        platform.agent_create_error = (422, "invalid_argument", "model not available")
        platform.delete_error = (500, "server_error", "delete broke")

        with pytest.raises(GradientAPIError) as exc_info:
            await orchestrator.create_or_reuse("example.com")
        assert "model not available" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_invalid_url_makes_no_remote_call(self, orchestrator, platform):
        with pytest.raises(InvalidUrlError):
            await orchestrator.create_or_reuse("not a url")
        assert platform.calls == []

    @pytest.mark.asyncio
    async def test_failed_workflow_can_be_retried(self, orchestrator, platform):
        platform.agent_create_error = (422, "invalid_argument", "model not available")
        with pytest.raises(GradientAPIError):
            await orchestrator.create_or_reuse("example.com")

        platform.agent_create_error = None
        result = await orchestrator.create_or_reuse("example.com")
        assert result.is_existing is False
        assert len(platform.agents_named(AGENT)) == 1

    @pytest.mark.asyncio
    async def test_public_visibility(self, platform, sleep):
        orch = SiteAgentOrchestrator(make_settings(AGENT_PUBLIC=True), transport=platform.transport, sleep=sleep)
        result = await orch.create_or_reuse("example.com")
        assert platform.agents[result.agent_id]["deployment"]["visibility"] == "VISIBILITY_PUBLIC"
        await orch.close()

    @pytest.mark.asyncio
    async def test_transient_failures_are_absorbed(self, orchestrator, platform, sleep):
        platform.fail_transport("GET", "/gen-ai/agents")
        platform.script("POST", "/gen-ai/knowledge_bases", httpx.Response(429, headers={"Retry-After": "3"}))

        result = await orchestrator.create_or_reuse("example.com")

        assert result.agent_id
        assert 3.0 in sleep.delays
        assert len(platform.kbs_named("example-com-crawl")) == 1


class TestPollStatus:

    @pytest.mark.asyncio
    async def test_running_index_reports_indexing(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl", index_status="INDEX_JOB_STATUS_RUNNING")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])

        status = await orchestrator.poll_status(agent["uuid"], kb["uuid"])
        assert status.status == LifecycleStatus.INDEXING
        assert status.kb_status == "INDEX_JOB_STATUS_RUNNING"

    @pytest.mark.asyncio
    async def test_ready_after_quality_check(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])

        first = await orchestrator.poll_status(agent["uuid"], kb["uuid"], "https://example.com")
        assert first.status == LifecycleStatus.INDEXING
        assert first.quality == QualityState.CHECKING
        await orchestrator.monitor.drain()

        second = await orchestrator.poll_status(agent["uuid"], kb["uuid"], "https://example.com")
        assert second.status == LifecycleStatus.READY
        assert second.endpoint == agent["deployment"]["url"]

    @pytest.mark.asyncio
    async def test_status_is_never_cached(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])
        await orchestrator.poll_status(agent["uuid"], kb["uuid"])
        await orchestrator.monitor.drain()
        assert (await orchestrator.poll_status(agent["uuid"], kb["uuid"])).status == LifecycleStatus.READY

        platform.set_index_status(kb["uuid"], "INDEX_JOB_STATUS_RUNNING")
        assert (await orchestrator.poll_status(agent["uuid"], kb["uuid"])).status == LifecycleStatus.INDEXING

        platform.set_index_status(kb["uuid"], "INDEX_JOB_STATUS_FAILED")
        assert (await orchestrator.poll_status(agent["uuid"], kb["uuid"])).status == LifecycleStatus.ERROR

    @pytest.mark.asyncio
    async def test_no_endpoint_is_creating(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]], endpoint=False)
        status = await orchestrator.poll_status(agent["uuid"], kb["uuid"])
        assert status.status == LifecycleStatus.CREATING

    @pytest.mark.asyncio
    async def test_empty_index_runs_fallback(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl", indexed_items=0)
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])

        status = await orchestrator.poll_status(agent["uuid"], kb["uuid"], "https://example.com")
        assert status.status == LifecycleStatus.INDEXING
        assert status.quality == QualityState.FALLBACK_RUNNING
        await orchestrator.monitor.drain()

        assert len(platform.data_sources[kb["uuid"]]) == 1
        assert platform.uploads

    @pytest.mark.asyncio
    async def test_login_wall_content_is_rescraped(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])
        platform.answers[agent["uuid"]] = LOGIN_WALL_ANSWER

        await orchestrator.poll_status(agent["uuid"], kb["uuid"])
        await orchestrator.monitor.drain()

        assert platform.count("POST", "/scrape") == 1
        # re-index started by the fallback is visible on the next poll
        platform.set_index_status(kb["uuid"], "INDEX_JOB_STATUS_RUNNING")
        assert (await orchestrator.poll_status(agent["uuid"], kb["uuid"])).status == LifecycleStatus.INDEXING


class TestRepairAndReindex:

    @pytest.mark.asyncio
    async def test_repair_attaches_orphan(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[])

        result = await orchestrator.repair(agent["uuid"])

        assert result.attached == ["example-com-crawl"]
        assert platform.agents[agent["uuid"]]["_kb_ids"] == [kb["uuid"]]

    @pytest.mark.asyncio
    async def test_reindex_attached(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])

        result = await orchestrator.reindex(agent["uuid"])

        assert [e.kb_id for e in result.results] == [kb["uuid"]]
        assert result.results[0].started is True

    @pytest.mark.asyncio
    async def test_reindex_orphans_and_conflicts(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[])
        platform.indexing_running.add(kb["uuid"])

        result = await orchestrator.reindex(agent["uuid"])

        assert result.results[0].started is False
        assert result.results[0].message == "Indexing already running"

    @pytest.mark.asyncio
    async def test_reindex_without_kb(self, orchestrator, platform):
        agent = platform.add_agent(AGENT, kb_ids=[])
        with pytest.raises(ResourceNotFoundError):
            await orchestrator.reindex(agent["uuid"])


class TestPartialProgress:

    @pytest.mark.asyncio
    async def test_repair_and_create_for_same_site_are_serialized(self, orchestrator, platform):
        agent = platform.add_agent(AGENT, kb_ids=[])

        created, repaired = await asyncio.gather(
            orchestrator.create_or_reuse("example.com"),
            orchestrator.repair(agent["uuid"]),
        )

        kbs = platform.kbs_named("example-com-crawl")
        assert len(kbs) == 1
        assert platform.agents[agent["uuid"]]["_kb_ids"] == [kbs[0]["uuid"]]
        assert created.knowledge_base_id == kbs[0]["uuid"]
        assert repaired.created == []
        assert repaired.already_attached == ["example-com-crawl"]
        assert orchestrator.lock.get_stats()["waited"] == 1
        assert not orchestrator.lock.in_flight("example.com")

    @pytest.mark.asyncio
    async def test_indexing_failure_after_agent_exists_is_best_effort(self, orchestrator, platform):
        platform.script(
            "POST", "/gen-ai/indexing_jobs",
            *[httpx.Response(500, json={"id": "server_error", "message": "boom"}) for _ in range(4)],
        )

        result = await orchestrator.create_or_reuse("example.com")

        assert result.status == LifecycleStatus.CREATING
        assert "indexing could not be started" in result.message
        assert result.agent_id in platform.agents
        kb = platform.knowledge_bases[result.knowledge_base_id]
        assert kb["last_indexing_job"] is None

        # the next access starts the indexing that failed
        again = await orchestrator.create_or_reuse("example.com")
        assert again.is_existing is True
        assert kb["last_indexing_job"] is not None
        assert again.status == LifecycleStatus.READY

    @pytest.mark.asyncio
    async def test_transport_failure_on_indexing_is_best_effort(self, orchestrator, platform):
        platform.fail_transport("POST", "/gen-ai/indexing_jobs", times=4)

        result = await orchestrator.create_or_reuse("example.com")

        assert result.status == LifecycleStatus.CREATING
        assert len(platform.agents_named(AGENT)) == 1

    @pytest.mark.asyncio
    async def test_reuse_reads_full_agent(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])
        # list rows without deployment or attached knowledge bases
        platform.script("GET", "/gen-ai/agents", httpx.Response(200, json={
            "agents": [{"uuid": agent["uuid"], "name": AGENT}], "links": {},
        }))

        result = await orchestrator.create_or_reuse("example.com")

        assert result.is_existing is True
        assert result.endpoint == agent["deployment"]["url"]
        assert result.knowledge_base_id == kb["uuid"]
        assert platform.count("POST", f"/gen-ai/agents/{agent['uuid']}/knowledge_bases") == 0


class TestAgentManagement:

    @pytest.mark.asyncio
    async def test_list_agents_only_deployed(self, orchestrator, platform):
        crawl = platform.add_knowledge_base("example-com-crawl")
        uploads = platform.add_knowledge_base("example-com-uploads", index_status="INDEX_JOB_STATUS_RUNNING")
        agent = platform.add_agent(AGENT, kb_ids=[crawl["uuid"], uploads["uuid"]])
        platform.add_agent("Assistant - pending.org", endpoint=False)

        agents = await orchestrator.list_agents()

        assert [a.uuid for a in agents] == [agent["uuid"]]
        summary = agents[0]
        assert summary.domain == "example.com"
        assert [(k.type, k.status) for k in summary.knowledge_bases] == [("crawl", "indexed"), ("uploads", "indexing")]
        assert summary.status == "creating"

    @pytest.mark.asyncio
    async def test_detail_repairs_unattached_agent(self, orchestrator, platform):
        kb = platform.add_knowledge_base("example-com-crawl")
        other = platform.add_knowledge_base("example-com-notes")
        agent = platform.add_agent(AGENT, kb_ids=[])

        detail = await orchestrator.get_agent_detail(agent["uuid"])

        assert detail.repair.attached == ["example-com-crawl"]
        assert [k.uuid for k in detail.knowledge_bases] == [kb["uuid"]]
        assert detail.status == "active"
        assert detail.access_key is None
        assert other["uuid"] not in platform.agents[agent["uuid"]]["_kb_ids"]

    @pytest.mark.asyncio
    async def test_detail_custom_kb_type_and_access_key(self, orchestrator, platform):
        kb = platform.add_knowledge_base("handbook", index_status="INDEX_JOB_STATUS_FAILED")
        agent = platform.add_agent(AGENT, kb_ids=[kb["uuid"]])

        detail = await orchestrator.get_agent_detail(agent["uuid"], include_access_key=True)

        assert detail.repair is None
        assert detail.knowledge_bases[0].type == "custom"
        assert detail.knowledge_bases[0].status == "error"
        assert detail.status == "error"
        assert detail.access_key.startswith("sk-")
        assert platform.count("GET", f"/gen-ai/agents/{agent['uuid']}/api_keys") == 1

    @pytest.mark.asyncio
    async def test_update_instruction_and_visibility(self, orchestrator, platform):
        agent = platform.add_agent(AGENT)

        detail = await orchestrator.update_agent(agent["uuid"], instruction="Only answer billing questions.")
        assert detail.instruction == "Only answer billing questions."
        assert platform.agents[agent["uuid"]]["instruction"] == "Only answer billing questions."
        assert platform.count("PUT", f"/gen-ai/agents/{agent['uuid']}/deployment_visibility") == 0

        detail = await orchestrator.update_agent(agent["uuid"], public=True)
        assert detail.visibility == "VISIBILITY_PUBLIC"

    @pytest.mark.asyncio
    async def test_update_requires_a_change(self, orchestrator, platform):
        agent = platform.add_agent(AGENT)
        with pytest.raises(ValueError):
            await orchestrator.update_agent(agent["uuid"])
        with pytest.raises(ValueError):
            await orchestrator.update_agent(agent["uuid"], instruction="  ")
        assert platform.mutations() == []
