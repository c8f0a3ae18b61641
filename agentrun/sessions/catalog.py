"""
Target lookup for the entry points.

Agents are found by id (builder) or by deploy slug (public execution);
workflows by id or by their ``w_`` slug, scoped to the owning user.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

WORKFLOW_SLUG_PREFIX = "w_"


class InputField(BaseModel):
    """A form field the user fills before running an agent or workflow."""

    name: str
    label: str = ""
    type: str = "text"  # text, number, url, textarea
    placeholder: str | None = None
    required: bool = False


class AgentDefinition(BaseModel):
    id: str
    owner_id: str
    name: str = "New Agent"
    description: str = ""
    category: str = "general"
    instruction_prompt: str | None = None
    # None enables every capability in the base tool table
    enabled_tools: list[str] | None = None
    input_fields: list[InputField] = Field(default_factory=list)
    deploy_slug: str | None = None
    is_deployed: bool = False
    status: str = "draft"
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class WorkflowDefinition(BaseModel):
    id: str
    owner_id: str
    slug: str | None = None
    name: str = ""
    description: str = ""
    instruction_prompt: str | None = None
    enabled_tools: list[str] | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class AgentCatalog(Protocol):
    async def get_agent(self, agent_id: str) -> AgentDefinition | None: ...

    async def get_deployed_agent(self, slug: str) -> AgentDefinition | None: ...

    async def get_workflow(self, id_or_slug: str, user_id: str) -> WorkflowDefinition | None: ...

    async def list_workflows(self, user_id: str, limit: int = 50) -> list[WorkflowDefinition]: ...

    async def save_agent_instructions(self, agent_id: str, **fields: Any) -> AgentDefinition: ...


class InMemoryAgentCatalog:
    """Dict-backed catalog used by the CLI server and tests."""

    def __init__(
        self,
        agents: list[AgentDefinition] | None = None,
        workflows: list[WorkflowDefinition] | None = None,
    ):
        self._agents: dict[str, AgentDefinition] = {a.id: a for a in agents or []}
        self._workflows: dict[str, WorkflowDefinition] = {w.id: w for w in workflows or []}
        self._lock = asyncio.Lock()

    def add_agent(self, agent: AgentDefinition) -> None:
        self._agents[agent.id] = agent

    def add_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow

    async def get_agent(self, agent_id: str) -> AgentDefinition | None:
        return self._agents.get(agent_id)

    async def get_deployed_agent(self, slug: str) -> AgentDefinition | None:
        for agent in self._agents.values():
            if agent.is_deployed and agent.deploy_slug == slug:
                return agent
        return None

    async def get_workflow(self, id_or_slug: str, user_id: str) -> WorkflowDefinition | None:
        if id_or_slug.startswith(WORKFLOW_SLUG_PREFIX):
            matches = [w for w in self._workflows.values() if w.slug == id_or_slug]
        else:
            matches = [w for w in [self._workflows.get(id_or_slug)] if w is not None]
        for workflow in matches:
            if workflow.owner_id == user_id:
                return workflow
        return None

    async def list_workflows(self, user_id: str, limit: int = 50) -> list[WorkflowDefinition]:
        owned = [w for w in self._workflows.values() if w.owner_id == user_id]
        owned.sort(key=lambda w: w.updated_at, reverse=True)
        return owned[:limit]

    async def save_agent_instructions(self, agent_id: str, **fields: Any) -> AgentDefinition:
        """Update an agent's saved configuration.

        Raises:
            KeyError: unknown agent id
        """
        async with self._lock:
            agent = self._agents[agent_id]
            updated = agent.model_copy(
                update={**fields, "status": "ready", "updated_at": datetime.now(UTC)}
            )
            self._agents[agent_id] = updated
        return updated
