"""
Session Entry Point - admission and lane assembly for every route.

Each ``open_*`` method validates one request, raises an AdmissionError
before anything streams, and otherwise returns a PreparedRun: a StepDriver
wired to a fresh EventChannel and CancellationToken. The four lanes differ
only in the LaneConfig they build.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from agentrun.config import RuntimeConfig
from agentrun.credits.meter import CreditLedger, CreditMeter, LedgerCreditMeter
from agentrun.errors import MalformedRequestError, TargetNotFoundError, UnauthenticatedError
from agentrun.llm.provider import LLMProvider, Tool
from agentrun.runner.tool_registry import ToolRegistry
from agentrun.runtime.budget import CreditGate
from agentrun.runtime.cancellation import CancellationToken
from agentrun.runtime.event_channel import EventChannel
from agentrun.runtime.step_driver import StepDriver
from agentrun.schemas.run import Identity, Lane, Run
from agentrun.sessions.catalog import AgentCatalog, InputField
from agentrun.sessions.lanes import (
    LaneConfig,
    build_assistant_prompt,
    build_builder_prompt,
    build_execution_prompt,
    format_user_input,
    normalize_prior_turns,
)
from agentrun.storage.run_recorder import RunRecorder

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200

SAVE_INSTRUCTIONS_TOOL = Tool(
    name="save_instructions",
    description=(
        "Save the complete agent instructions. Call this once you understand what "
        "the user needs. This makes the agent runnable."
    ),
    parameters={
        "type": "object",
        "properties": {
            "agent_name": {"type": "string", "description": "Clear, descriptive name"},
            "description": {"type": "string", "description": "One sentence: what the agent does"},
            "category": {
                "type": "string",
                "enum": [
                    "customer_support",
                    "content_creation",
                    "data_analysis",
                    "task_automation",
                    "personal_assistant",
                    "research_agent",
                    "general",
                ],
            },
            "instruction_prompt": {
                "type": "string",
                "description": "Full system prompt for the executor: role, inputs, outputs, edge cases",
            },
            "input_fields": {
                "type": "array",
                "description": "Fields the user fills before running the agent",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "label": {"type": "string"},
                        "type": {"type": "string", "enum": ["text", "number", "url", "textarea"]},
                        "placeholder": {"type": "string"},
                        "required": {"type": "boolean"},
                    },
                    "required": ["name"],
                },
            },
        },
        "required": ["agent_name", "description", "category", "instruction_prompt"],
    },
)


@dataclass
class PreparedRun:
    """An admitted request, ready to stream."""

    driver: StepDriver
    channel: EventChannel
    token: CancellationToken

    @property
    def run_id(self) -> str:
        return self.driver.run_id

    @property
    def session_id(self) -> str:
        return self.driver.lane_config.session_id

    async def run(self) -> Run:
        return await self.driver.run()

    def cancel(self, reason: str = "client disconnected") -> None:
        self.token.cancel(reason)


class SessionEntryPoint:
    """
    Builds one StepDriver per admitted request.

    Args:
        llm: Model capability shared by all lanes
        catalog: Agent and workflow lookup
        ledger: Credit accounts, used for admission and charging
        tools: Base capability table; lanes take subsets of it
        recorder: Run store (optional)
        config: Runtime configuration (budgets, timeouts)
        meter: Credit meter; defaults to a LedgerCreditMeter over ``ledger``
    """

    def __init__(
        self,
        llm: LLMProvider,
        catalog: AgentCatalog,
        ledger: CreditLedger,
        tools: ToolRegistry | None = None,
        recorder: RunRecorder | None = None,
        config: RuntimeConfig | None = None,
        meter: CreditMeter | None = None,
    ):
        self.llm = llm
        self.catalog = catalog
        self.ledger = ledger
        self.config = config or RuntimeConfig()
        self.tools = tools or ToolRegistry(default_timeout=self.config.tool_timeout_seconds)
        self.recorder = recorder
        self.meter = meter or LedgerCreditMeter(ledger)
        self.gate = CreditGate(ledger)

    # ------------------------------------------------------------------
    # Lanes
    # ------------------------------------------------------------------

    async def open_builder(self, identity: Identity, body: Any) -> PreparedRun:
        """Builder lane: converse about one agent and save its instructions."""
        self._require_authenticated(identity)
        await self.gate.require_admission(identity)

        body = self._require_object(body)
        messages = body.get("messages")
        agent_id = body.get("agentId")
        if not isinstance(messages, list) or not messages or not isinstance(agent_id, str):
            raise MalformedRequestError("messages and agentId required")
        turns = self._require_turns(messages)

        agent = await self.catalog.get_agent(agent_id)
        if agent is None or agent.owner_id != identity.user_id:
            raise TargetNotFoundError("Agent not found")

        max_steps = self.config.max_steps_for(Lane.BUILDER)
        prompt = build_builder_prompt(
            body.get("agentName") or agent.name,
            body.get("agentCategory") or agent.category,
            agent.instruction_prompt,
        )
        registry = ToolRegistry(default_timeout=self.config.tool_timeout_seconds)
        self._register_save_instructions(registry, agent.id)
        lane_config = LaneConfig(
            lane=Lane.BUILDER,
            system_prompt=prompt,
            tools=registry,
            max_steps=max_steps,
            identity=identity,
            session_id=self._session_id(body),
            display_name="Agent Builder",
            target_id=agent.id,
            messages=turns,
            run_input=self._conversation_input(turns),
        )
        return self._prepare(lane_config)

    async def open_assistant(self, identity: Identity, body: Any) -> PreparedRun:
        """Assistant lane: personal assistant chat, guests allowed."""
        await self.gate.require_admission(identity)

        body = self._require_object(body)
        messages = body.get("messages")
        if not isinstance(messages, list) or not messages:
            raise MalformedRequestError("messages array required")
        turns = self._require_turns(messages)

        max_steps = self.config.max_steps_for(Lane.ASSISTANT)
        registry = self.tools.subset(self.tools.get_registered_names())
        if not identity.is_guest:
            registry.register_function(
                self._list_workflows_tool(),
                name="list_workflows",
                description=(
                    "List the user's saved workflows, to check whether one already "
                    "does a similar task."
                ),
            )
        lane_config = LaneConfig(
            lane=Lane.ASSISTANT,
            system_prompt=build_assistant_prompt(identity, max_steps),
            tools=registry,
            max_steps=max_steps,
            identity=identity,
            session_id=self._session_id(body),
            display_name="Assistant",
            messages=turns,
            run_input=self._conversation_input(turns),
        )
        return self._prepare(lane_config)

    async def open_public(self, slug: str, body: Any) -> PreparedRun:
        """Public lane: run a deployed agent anonymously. Never charged."""
        agent = await self.catalog.get_deployed_agent(slug)
        if agent is None:
            raise TargetNotFoundError("Agent not found or not deployed")
        if not agent.instruction_prompt:
            raise MalformedRequestError("Agent has no instructions")

        body = self._require_object(body)
        input_map = body.get("input")
        if not isinstance(input_map, dict):
            raise MalformedRequestError("input must be an object")

        max_steps = self.config.max_steps_for(Lane.PUBLIC_EXECUTE)
        lane_config = LaneConfig(
            lane=Lane.PUBLIC_EXECUTE,
            system_prompt=build_execution_prompt(agent.instruction_prompt, max_steps),
            tools=self._enabled_tools(agent.enabled_tools),
            max_steps=max_steps,
            identity=Identity.guest(),
            session_id=str(uuid.uuid4()),
            display_name=agent.name,
            target_id=agent.id,
            messages=[{"role": "user", "content": format_user_input(input_map)}],
            run_input=input_map,
        )
        return self._prepare(lane_config)

    async def open_workflow(self, identity: Identity, workflow_id: str, body: Any) -> PreparedRun:
        """Workflow lane: run one of the caller's saved workflows."""
        self._require_authenticated(identity)
        await self.gate.require_admission(identity)

        body = self._require_object(body)
        input_map = body.get("input")
        if not isinstance(input_map, dict):
            input_map = {}

        workflow = await self.catalog.get_workflow(workflow_id, identity.user_id)
        if workflow is None:
            raise TargetNotFoundError("Workflow not found")
        if not workflow.instruction_prompt:
            raise MalformedRequestError("Workflow has no instructions")

        max_steps = self.config.max_steps_for(Lane.WORKFLOW)
        lane_config = LaneConfig(
            lane=Lane.WORKFLOW,
            system_prompt=build_execution_prompt(workflow.instruction_prompt, max_steps),
            tools=self._enabled_tools(workflow.enabled_tools),
            max_steps=max_steps,
            identity=identity,
            session_id=str(uuid.uuid4()),
            display_name=workflow.name or "Workflow",
            target_id=workflow.id,
            messages=[{"role": "user", "content": format_user_input(input_map)}],
            run_input=input_map,
        )
        return self._prepare(lane_config)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _prepare(self, lane_config: LaneConfig) -> PreparedRun:
        channel = EventChannel()
        token = CancellationToken()
        driver = StepDriver(
            lane_config,
            self.llm,
            channel,
            meter=self.meter,
            recorder=self.recorder,
            token=token,
            config=self.config,
        )
        logger.info(
            "Admitted %s run %s",
            lane_config.lane.value,
            driver.run_id,
            extra={"event": "run_admitted"},
        )
        return PreparedRun(driver=driver, channel=channel, token=token)

    @staticmethod
    def _require_authenticated(identity: Identity) -> None:
        if identity.is_guest:
            raise UnauthenticatedError()

    @staticmethod
    def _require_object(body: Any) -> dict[str, Any]:
        if not isinstance(body, dict):
            raise MalformedRequestError("Request body must be a JSON object")
        return body

    @staticmethod
    def _require_turns(messages: list[Any]) -> list[dict[str, str]]:
        turns = normalize_prior_turns(messages)
        if not turns:
            raise MalformedRequestError("messages must contain at least one non-empty turn")
        return turns

    @staticmethod
    def _session_id(body: dict[str, Any]) -> str:
        session_id = body.get("sessionId")
        if isinstance(session_id, str) and session_id:
            return session_id
        return str(uuid.uuid4())

    @staticmethod
    def _conversation_input(turns: list[dict[str, str]]) -> dict[str, Any]:
        last_user = next((t["content"] for t in reversed(turns) if t["role"] == "user"), "")
        return {
            "message_count": len(turns),
            "last_message_preview": last_user[:PREVIEW_CHARS],
        }

    def _enabled_tools(self, enabled: list[str] | None) -> ToolRegistry:
        if enabled is None:
            return self.tools.subset(self.tools.get_registered_names())
        return self.tools.subset(enabled)

    def _register_save_instructions(self, registry: ToolRegistry, agent_id: str) -> None:
        catalog = self.catalog

        async def save_instructions(inputs: dict) -> dict:
            fields = [InputField.model_validate(f) for f in inputs.get("input_fields") or []]
            agent = await catalog.save_agent_instructions(
                agent_id,
                name=inputs["agent_name"],
                description=inputs.get("description", ""),
                category=inputs.get("category", "general"),
                instruction_prompt=inputs["instruction_prompt"],
                input_fields=fields,
            )
            return {
                "success": True,
                "agent": agent.model_dump(mode="json", include={"id", "name", "category", "status"}),
            }

        registry.register("save_instructions", SAVE_INSTRUCTIONS_TOOL, save_instructions)

    def _list_workflows_tool(self):
        catalog = self.catalog

        async def list_workflows(user_id: str) -> dict:
            workflows = await catalog.list_workflows(user_id)
            return {
                "workflows": [
                    w.model_dump(mode="json", include={"id", "slug", "name", "description"})
                    for w in workflows
                ],
                "count": len(workflows),
            }

        return list_workflows
