"""Tests for SessionEntryPoint admission and lane assembly."""

from unittest.mock import AsyncMock

import pytest

from agentrun.config import RuntimeConfig
from agentrun.credits.meter import InMemoryCreditLedger
from agentrun.errors import (
    InsufficientCreditsError,
    MalformedRequestError,
    TargetNotFoundError,
    UnauthenticatedError,
)
from agentrun.llm.mock import ScriptedLLMProvider, StreamScript
from agentrun.runner.tool_registry import ToolRegistry
from agentrun.runtime.event_channel import RunEventType
from agentrun.schemas.run import Identity, Lane, RunStatus
from agentrun.sessions.catalog import AgentDefinition, InMemoryAgentCatalog, WorkflowDefinition
from agentrun.sessions.entry_point import SessionEntryPoint
from agentrun.storage.run_recorder import InMemoryRunRecorder

USER = Identity(user_id="u1")
GUEST = Identity.guest()


def _base_tools() -> ToolRegistry:
    def web_search(query: str) -> dict:
        return {"results": [query]}

    def fetch_url(url: str) -> str:
        return f"<html>{url}</html>"

    return ToolRegistry.from_table({"web_search": web_search, "fetch_url": fetch_url})


def _catalog() -> InMemoryAgentCatalog:
    return InMemoryAgentCatalog(
        agents=[
            AgentDefinition(id="a1", owner_id="u1", name="Draft Agent"),
            AgentDefinition(
                id="a2",
                owner_id="u1",
                name="News Bot",
                instruction_prompt="Summarise the news.",
                enabled_tools=["web_search"],
                deploy_slug="news",
                is_deployed=True,
            ),
            AgentDefinition(
                id="a3",
                owner_id="u1",
                name="Empty Bot",
                deploy_slug="empty",
                is_deployed=True,
            ),
            AgentDefinition(id="a4", owner_id="u2", name="Someone Else's"),
        ],
        workflows=[
            WorkflowDefinition(
                id="wf1",
                owner_id="u1",
                slug="w_daily",
                name="Daily Digest",
                instruction_prompt="Write a digest.",
            ),
            WorkflowDefinition(id="wf2", owner_id="u1", slug="w_blank", name="Blank"),
        ],
    )


def make_entry_point(scripts=None, balances=None, **kwargs) -> SessionEntryPoint:
    balances = {"u1": 100} if balances is None else balances
    return SessionEntryPoint(
        llm=ScriptedLLMProvider(scripts or [StreamScript(text="Done.")]),
        catalog=kwargs.pop("catalog", None) or _catalog(),
        ledger=InMemoryCreditLedger(balances),
        tools=_base_tools(),
        config=RuntimeConfig(api_key=None, api_base=None),
        **kwargs,
    )


class TestBuilderLane:
    @pytest.mark.asyncio
    async def test_requires_authentication(self):
        with pytest.raises(UnauthenticatedError):
            await make_entry_point().open_builder(GUEST, {"messages": [], "agentId": "a1"})

    @pytest.mark.asyncio
    async def test_credits_checked_before_body(self):
        ep = make_entry_point(balances={"u1": 0})
        with pytest.raises(InsufficientCreditsError):
            await ep.open_builder(USER, {"bogus": True})

    @pytest.mark.asyncio
    async def test_missing_fields(self):
        with pytest.raises(MalformedRequestError, match="messages and agentId required"):
            await make_entry_point().open_builder(USER, {"messages": [{"role": "user", "content": "hi"}]})

    @pytest.mark.asyncio
    async def test_empty_turns_rejected(self):
        with pytest.raises(MalformedRequestError):
            await make_entry_point().open_builder(
                USER, {"messages": [{"role": "user", "content": " "}], "agentId": "a1"}
            )

    @pytest.mark.asyncio
    async def test_agent_owned_by_someone_else(self):
        with pytest.raises(TargetNotFoundError, match="Agent not found"):
            await make_entry_point().open_builder(
                USER, {"messages": [{"role": "user", "content": "hi"}], "agentId": "a4"}
            )

    @pytest.mark.asyncio
    async def test_lane_config(self):
        prepared = await make_entry_point().open_builder(
            USER,
            {"messages": [{"role": "user", "content": "Build a news bot"}], "agentId": "a1", "sessionId": "chat-9"},
        )
        cfg = prepared.driver.lane_config
        assert cfg.lane == Lane.BUILDER
        assert cfg.max_steps == 10
        assert cfg.tools.get_registered_names() == ["save_instructions"]
        assert cfg.display_name == "Agent Builder"
        assert cfg.session_id == "chat-9"
        assert cfg.target_id == "a1"
        assert cfg.run_input == {"message_count": 1, "last_message_preview": "Build a news bot"}
        assert "Draft Agent" in cfg.system_prompt

    @pytest.mark.asyncio
    async def test_save_instructions_updates_catalog(self):
        catalog = _catalog()
        scripts = [
            StreamScript(
                text="Saving now.",
                tool_calls=[
                    {
                        "name": "save_instructions",
                        "id": "c1",
                        "input": {
                            "agent_name": "Haiku Writer",
                            "description": "Writes haiku",
                            "category": "content_creation",
                            "instruction_prompt": "You write haiku about the given topic.",
                            "input_fields": [{"name": "topic", "label": "Topic"}],
                        },
                    }
                ],
            ),
            StreamScript(text=" Your agent is ready."),
        ]
        ep = make_entry_point(scripts, catalog=catalog)
        prepared = await ep.open_builder(
            USER, {"messages": [{"role": "user", "content": "haiku bot"}], "agentId": "a1"}
        )

        run = await prepared.run()

        assert run.status == RunStatus.COMPLETED
        agent = await catalog.get_agent("a1")
        assert agent.name == "Haiku Writer"
        assert agent.status == "ready"
        assert agent.instruction_prompt == "You write haiku about the given topic."
        assert agent.input_fields[0].name == "topic"
        tool_events = [e.data for e in prepared.channel.history if e.type == RunEventType.TOOL]
        assert tool_events[-1]["output"]["agent"]["status"] == "ready"


class TestAssistantLane:
    @pytest.mark.asyncio
    async def test_no_credits(self):
        with pytest.raises(InsufficientCreditsError):
            await make_entry_point(balances={}).open_assistant(USER, {"messages": []})

    @pytest.mark.asyncio
    async def test_messages_required(self):
        with pytest.raises(MalformedRequestError, match="messages array required"):
            await make_entry_point().open_assistant(USER, {"messages": "hi"})

    @pytest.mark.asyncio
    async def test_non_object_body(self):
        with pytest.raises(MalformedRequestError):
            await make_entry_point().open_assistant(GUEST, ["not", "an", "object"])

    @pytest.mark.asyncio
    async def test_guest_gets_base_tools_only(self):
        prepared = await make_entry_point().open_assistant(
            GUEST, {"messages": [{"role": "user", "content": "hi"}]}
        )
        cfg = prepared.driver.lane_config
        assert cfg.max_steps == 50
        assert cfg.tools.get_registered_names() == ["web_search", "fetch_url"]
        assert "trial AI assistant" in cfg.system_prompt

    @pytest.mark.asyncio
    async def test_user_gets_list_workflows(self):
        ep = make_entry_point(
            [StreamScript(tool_calls=[{"name": "list_workflows", "id": "c1"}]), StreamScript(text="You have two.")]
        )
        prepared = await ep.open_assistant(USER, {"messages": [{"role": "user", "content": "my workflows?"}]})
        assert "list_workflows" in prepared.driver.lane_config.tools.get_registered_names()
        # The base table is not modified
        assert not ep.tools.has_tool("list_workflows")

        await prepared.run()

        completed = [
            e.data for e in prepared.channel.history
            if e.type == RunEventType.TOOL and e.data["status"] == "completed"
        ]
        assert completed[0]["output"]["count"] == 2
        assert {w["slug"] for w in completed[0]["output"]["workflows"]} == {"w_daily", "w_blank"}


class TestPublicLane:
    @pytest.mark.asyncio
    async def test_unknown_slug(self):
        with pytest.raises(TargetNotFoundError):
            await make_entry_point().open_public("nope", {"input": {}})

    @pytest.mark.asyncio
    async def test_agent_without_instructions(self):
        with pytest.raises(MalformedRequestError, match="Agent has no instructions"):
            await make_entry_point().open_public("empty", {"input": {}})

    @pytest.mark.asyncio
    async def test_input_must_be_object(self):
        with pytest.raises(MalformedRequestError, match="input must be an object"):
            await make_entry_point().open_public("news", {"input": "cats"})

    @pytest.mark.asyncio
    async def test_lane_config(self):
        prepared = await make_entry_point().open_public("news", {"input": {"topic": "AI"}})
        cfg = prepared.driver.lane_config
        assert cfg.lane == Lane.PUBLIC_EXECUTE
        assert cfg.identity.is_guest
        assert cfg.max_steps == 25
        assert cfg.tools.get_registered_names() == ["web_search"]
        assert cfg.messages == [{"role": "user", "content": "**topic**: AI"}]
        assert cfg.run_input == {"topic": "AI"}
        assert cfg.display_name == "News Bot"
        assert cfg.system_prompt.startswith("Summarise the news.")

    @pytest.mark.asyncio
    async def test_never_charged(self):
        meter = AsyncMock()
        ep = make_entry_point(meter=meter)
        prepared = await ep.open_public("news", {"input": {}})

        run = await prepared.run()

        assert run.status == RunStatus.COMPLETED
        assert run.user_id is None
        meter.charge.assert_not_called()


class TestWorkflowLane:
    @pytest.mark.asyncio
    async def test_requires_authentication(self):
        with pytest.raises(UnauthenticatedError):
            await make_entry_point().open_workflow(GUEST, "wf1", {})

    @pytest.mark.asyncio
    async def test_no_credits(self):
        with pytest.raises(InsufficientCreditsError):
            await make_entry_point(balances={"u1": 0}).open_workflow(USER, "wf1", {})

    @pytest.mark.asyncio
    async def test_other_users_workflow_not_found(self):
        ep = make_entry_point(balances={"u1": 5, "u2": 5})
        with pytest.raises(TargetNotFoundError, match="Workflow not found"):
            await ep.open_workflow(Identity(user_id="u2"), "wf1", {})

    @pytest.mark.asyncio
    async def test_workflow_without_instructions(self):
        with pytest.raises(MalformedRequestError, match="Workflow has no instructions"):
            await make_entry_point().open_workflow(USER, "wf2", {})

    @pytest.mark.asyncio
    async def test_lookup_by_slug_and_default_input(self):
        prepared = await make_entry_point().open_workflow(USER, "w_daily", {"input": "ignored"})
        cfg = prepared.driver.lane_config
        assert cfg.lane == Lane.WORKFLOW
        assert cfg.target_id == "wf1"
        assert cfg.max_steps == 50
        assert cfg.run_input == {}
        assert cfg.messages == [{"role": "user", "content": "Please begin."}]

    @pytest.mark.asyncio
    async def test_run_is_charged_and_recorded(self):
        recorder = InMemoryRunRecorder()
        ep = make_entry_point(recorder=recorder)
        prepared = await ep.open_workflow(USER, "wf1", {"input": {"task": "today"}})

        run = await prepared.run()

        assert run.status == RunStatus.COMPLETED
        assert run.credits_used == 1
        assert await ep.ledger.get_balance("u1") == 99
        stored = await recorder.get(prepared.run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.lane == Lane.WORKFLOW
        assert stored.input == {"task": "today"}
