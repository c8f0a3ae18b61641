"""
Lane configuration: everything that differs between the four entry points.

The StepDriver is lane-agnostic. A ``LaneConfig`` carries the system prompt,
the tool table, the step budget and the caller identity as plain data.
"""

from dataclasses import dataclass, field
from typing import Any

from agentrun.runner.tool_registry import ToolRegistry
from agentrun.schemas.run import Identity, Lane

# Keys whose value is used verbatim when it is the only input field
VERBATIM_INPUT_KEYS = frozenset({"task", "message", "input", "query", "prompt", "default"})

EMPTY_INPUT_MESSAGE = "Please begin."


@dataclass
class LaneConfig:
    """Per-run configuration handed to the StepDriver."""

    lane: Lane
    system_prompt: str
    tools: ToolRegistry
    max_steps: int
    identity: Identity
    session_id: str
    display_name: str = "Assistant"
    target_id: str | None = None
    # Conversation so far, as {role, content} dicts; the new user message
    # is already the last entry.
    messages: list[dict[str, Any]] = field(default_factory=list)
    # Stored as Run.input
    run_input: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

BUILDER_PROMPT = """You are an AI agent builder. You help users create AI agents by writing the instructions that power them.

## What you do
You have one tool: `save_instructions`. Once you understand what the user needs, call it once to write and save the full agent configuration.

## Current agent
Name: {agent_name}
Category: {agent_category}
Status: {status}

## Rules
1. Every response must include text. Never send a tool call without a message.
2. Keep it short: 1-3 sentences unless you are confirming what you built.
3. Ask at most 2 clarifying questions before building.
4. Do not present plans for approval. Understand the need, then call `save_instructions`.
5. Call `save_instructions` once with complete, high-quality instructions.

{mode}

## Tone
Friendly, direct and professional."""

BUILDER_MODE_NEW = """## How to build
First learn what the agent should do, which inputs it needs at run time and what it should produce.
Then call `save_instructions`. The `instruction_prompt` is a detailed system prompt for an AI executor covering role, behaviour, inputs, output format and edge cases. Keep `input_fields` minimal (1-3 fields).
After it succeeds, confirm what was built in 2-3 sentences and offer adjustments."""

BUILDER_MODE_EXISTING = """## The agent is already built
The agent "{agent_name}" already has saved instructions. Answer questions about it, explain how to run it, and call `save_instructions` again only when the user asks for changes.

Saved instructions:
{instructions}"""

ASSISTANT_PROMPT = """You are the user's AI assistant. Your job is to perform the tasks they ask for, not just answer questions.

## Behaviour
- Do the task first. Use your tools to actually do the work and deliver the result.
- Before a task that sounds repeatable, use `list_workflows` to check whether the user already saved one that does it.
- Briefly say what you are doing so the user can follow along.
- Focus on the current request. If several tasks are given, handle the main one first.
- Finish with a short outcome: what you did and the result, or why you could not complete it.
- If something fails, say so and try one alternative. Do not loop or repeat the same action."""

GUEST_PROMPT = """You are a trial AI assistant. The user is not signed in.

## Behaviour
- Help with the request using your tools. Keep responses focused and useful.
- Saved workflows and connected accounts are not available. If a tool fails because it needs an account, say so briefly.
- After your final answer add exactly one short line inviting the user to create a free account to save conversations and unlock more tools.
- Do not repeat the sign-up line."""

EXECUTION_FOOTER = """

---

## Execution Behaviour

You are running as a live AI agent. You have a maximum of {max_steps} tool-call steps. Follow these rules:

1. **Use tools proactively.** When you need current information, search first and then read the full sources.
2. **Be transparent.** Narrate each step as you work.
3. **Handle failures gracefully.** If a tool fails, explain it and try an alternative. Never silently skip required information.
4. **Write partial results early.** For large requests, write compiled results as you go instead of waiting until all data is gathered.
5. **Never spend every step on tool calls.** Reserve the last few steps for writing your final output.
6. **Do not loop or repeat.** If you notice yourself repeating an action, stop and output your current results.
7. **End with a status line.** Your last sentence must be one of:
   - ✅ Task completed successfully.
   - ⚠️ Partial completion: [what is missing].
   - ❌ Task failed: [why]."""


def build_execution_prompt(instructions: str, max_steps: int) -> str:
    """Saved instructions followed by the execution-behaviour rules."""
    return instructions + EXECUTION_FOOTER.format(max_steps=max_steps)


def build_builder_prompt(
    agent_name: str,
    agent_category: str,
    existing_instructions: str | None,
) -> str:
    if existing_instructions:
        status = "Instructions already saved. The agent is built and ready."
        mode = BUILDER_MODE_EXISTING.format(
            agent_name=agent_name, instructions=existing_instructions
        )
    else:
        status = "Not yet built."
        mode = BUILDER_MODE_NEW
    return BUILDER_PROMPT.format(
        agent_name=agent_name,
        agent_category=agent_category,
        status=status,
        mode=mode,
    )


def build_assistant_prompt(identity: Identity, max_steps: int) -> str:
    if identity.is_guest:
        return GUEST_PROMPT
    return build_execution_prompt(ASSISTANT_PROMPT, max_steps)


# ---------------------------------------------------------------------------
# Input shaping
# ---------------------------------------------------------------------------


def format_user_input(input_map: dict[str, Any] | None) -> str:
    """Turn a free-form input map into the user message.

    Empty values are dropped. No entries gives a generic opener, a single
    ``task``/``message``/``query``-style entry is used verbatim, anything
    else becomes ``**key**: value`` lines.
    """
    entries = [
        (key, value)
        for key, value in (input_map or {}).items()
        if value is not None and not (isinstance(value, str) and not value.strip())
    ]
    if not entries:
        return EMPTY_INPUT_MESSAGE
    if len(entries) == 1:
        key, value = entries[0]
        if key in VERBATIM_INPUT_KEYS:
            return str(value)
    return "\n".join(f"**{key}**: {value}" for key, value in entries)


def _turn_text(turn: dict[str, Any]) -> str:
    content = turn.get("content")
    if isinstance(content, str):
        return content
    parts = turn.get("parts")
    if isinstance(content, list) and parts is None:
        parts = content
    if isinstance(parts, list):
        return "".join(
            str(part.get("text", ""))
            for part in parts
            if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def normalize_prior_turns(turns: list[Any] | None) -> list[dict[str, str]]:
    """Reduce client-side turns to ``{"role": "user"|"assistant", "content": str}``.

    Turns may carry ``content`` as a string or ``parts`` as a list of
    ``{"type": "text", "text": ...}`` items. Empty turns are dropped.
    """
    normalized = []
    for turn in turns or []:
        if not isinstance(turn, dict):
            continue
        text = _turn_text(turn)
        if not text.strip():
            continue
        role = "user" if turn.get("role") == "user" else "assistant"
        normalized.append({"role": role, "content": text})
    return normalized
