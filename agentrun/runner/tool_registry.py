"""Tool registration and invocation for agent runs.

The registry is the Tool Capability Adapter: a lane hands the StepDriver
one registry holding exactly the capabilities that lane may use, and the
driver calls :meth:`ToolRegistry.invoke`, which never raises.
"""

import asyncio
import contextvars
import inspect
import json
import logging
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from agentrun.errors import ToolNotFoundError, ToolTimeoutError
from agentrun.llm.provider import Tool, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_TOOL_TIMEOUT_SECONDS = 60.0

# Bare annotations with a JSON schema counterpart; anything else is "string"
_JSON_TYPES: dict[Any, str] = {
    int: "integer",
    float: "number",
    bool: "boolean",
    dict: "object",
    list: "array",
}

# Per-run context overrides. Each asyncio task (and thus each concurrent
# run) gets its own copy, so there are no races between runs.
_execution_context: contextvars.ContextVar[dict[str, Any] | None] = contextvars.ContextVar(
    "_execution_context", default=None
)


@dataclass
class ToolOutcome:
    """Result of one invocation. Failures are data, not exceptions."""

    success: bool
    output: Any = None
    error: str | None = None
    latency_ms: int = 0

    def to_payload(self) -> dict[str, Any]:
        """Shape sent to the client and fed back to the model."""
        if self.success:
            return {"success": True, "output": self.output}
        return {"success": False, "error": self.error}

    def to_content(self) -> str:
        return json.dumps(self.to_payload(), default=str)


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    tool: Tool
    executor: Callable[[dict], Any]
    context_params: frozenset[str] = field(default_factory=frozenset)


class ToolRegistry:
    """
    Lane-specific capability table.

    Executors take the argument dict and may be sync or async. Sync
    executors run in a worker thread so a slow tool never blocks other runs.
    """

    # Runtime-owned values injected into tool calls. Stripped from the
    # model-facing schema (the model doesn't know these values).
    CONTEXT_PARAMS = frozenset({"session_id", "run_id", "user_id"})

    def __init__(self, default_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS):
        self._tools: dict[str, RegisteredTool] = {}
        self._session_context: dict[str, Any] = {}
        self.default_timeout = default_timeout

    @classmethod
    def from_table(
        cls,
        table: Mapping[str, Callable[..., Any]],
        default_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
    ) -> "ToolRegistry":
        """Build a registry from a plain ``name -> callable`` table."""
        registry = cls(default_timeout=default_timeout)
        for name, func in table.items():
            registry.register_function(func, name=name)
        return registry

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
        context_params: Iterable[str] = (),
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition
            executor: Function that takes the input dict and returns a result
            context_params: Runtime context keys the executor accepts
        """
        self._tools[name] = RegisteredTool(
            tool=tool,
            executor=executor,
            context_params=frozenset(context_params) & self.CONTEXT_PARAMS,
        )

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
    ) -> None:
        """
        Register a function as a tool, generating the Tool definition from its signature.

        Args:
            func: Function to register (sync or async)
            name: Tool name (defaults to function name)
            description: Tool description (defaults to docstring)
        """
        metadata = getattr(func, "_tool_metadata", {})
        tool_name = name or metadata.get("name") or func.__name__
        tool_desc = (
            description or metadata.get("description") or func.__doc__ or f"Execute {tool_name}"
        )

        sig = inspect.signature(func)
        properties: dict[str, Any] = {}
        required: list[str] = []
        context_params: list[str] = []

        for param_name, param in sig.parameters.items():
            if param_name in ("self", "cls"):
                continue
            if param.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
                continue
            if param_name in self.CONTEXT_PARAMS:
                context_params.append(param_name)
                continue

            properties[param_name] = {"type": _JSON_TYPES.get(param.annotation, "string")}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc.strip(),
            parameters={
                "type": "object",
                "properties": properties,
                "required": required,
            },
        )

        if inspect.iscoroutinefunction(func):

            async def executor(inputs: dict) -> Any:
                return await func(**inputs)

        else:

            def executor(inputs: dict) -> Any:
                return func(**inputs)

        self.register(tool_name, tool, executor, context_params=context_params)

    def get_tools(self) -> dict[str, Tool]:
        """Get all registered Tool objects."""
        return {name: rt.tool for name, rt in self._tools.items()}

    def list_tools(self) -> list[Tool]:
        """Model-facing tool list in registration order."""
        return [rt.tool for rt in self._tools.values()]

    def get_registered_names(self) -> list[str]:
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """A new registry holding only *names* (unknown names are ignored)."""
        registry = ToolRegistry(default_timeout=self.default_timeout)
        registry._session_context = dict(self._session_context)
        for name in names:
            if name in self._tools:
                registry._tools[name] = self._tools[name]
        return registry

    def set_session_context(self, **context: Any) -> None:
        """Set context to auto-inject into every call made through this registry."""
        self._session_context.update(context)

    @staticmethod
    def set_execution_context(**context: Any) -> contextvars.Token:
        """Set per-run context overrides (concurrency-safe via contextvars).

        Values set here take precedence over session context. Returns a token
        for :meth:`reset_execution_context`.
        """
        current = _execution_context.get() or {}
        return _execution_context.set({**current, **context})

    @staticmethod
    def reset_execution_context(token: contextvars.Token) -> None:
        _execution_context.reset(token)

    def _merged_inputs(self, registered: RegisteredTool, args: dict[str, Any]) -> dict[str, Any]:
        if not registered.context_params:
            return dict(args)
        base_context = dict(self._session_context)
        exec_ctx = _execution_context.get()
        if exec_ctx:
            base_context.update(exec_ctx)
        injected = {k: v for k, v in base_context.items() if k in registered.context_params}
        return {**args, **injected}

    async def execute(
        self,
        name: str,
        args: dict[str, Any],
        timeout: float | None = None,
    ) -> Any:
        """Run a tool and return its raw result.

        Raises:
            ToolNotFoundError: no tool registered under *name*
            ToolTimeoutError: the tool exceeded *timeout* seconds
        """
        registered = self._tools.get(name)
        if registered is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")

        inputs = self._merged_inputs(registered, args)
        limit = self.default_timeout if timeout is None else timeout

        if inspect.iscoroutinefunction(registered.executor):
            call = registered.executor(inputs)
        else:
            call = asyncio.to_thread(registered.executor, inputs)

        try:
            result = await asyncio.wait_for(call, timeout=limit)
        except TimeoutError as e:
            raise ToolTimeoutError(f"Tool '{name}' timed out after {limit:g}s") from e

        if inspect.isawaitable(result):
            result = await asyncio.wait_for(result, timeout=limit)
        return result

    async def invoke(
        self,
        name: str,
        args: dict[str, Any],
        timeout: float | None = None,
    ) -> ToolOutcome:
        """Run a tool, capturing every failure as a ToolOutcome."""
        start = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        if "_raw" in args:
            return ToolOutcome(
                success=False,
                error=(
                    f"Tool call to '{name}' failed: the arguments could not be parsed. "
                    "Simplify or shorten your arguments and try again."
                ),
            )

        try:
            result = await self.execute(name, args, timeout=timeout)
        except ToolNotFoundError as e:
            logger.warning("Model requested unknown tool '%s'", name, extra={"tool_name": name})
            return ToolOutcome(success=False, error=str(e), latency_ms=elapsed())
        except ToolTimeoutError as e:
            logger.warning("%s", e, extra={"tool_name": name, "latency_ms": elapsed()})
            return ToolOutcome(success=False, error=str(e), latency_ms=elapsed())
        except Exception as e:
            logger.warning(
                "Tool '%s' raised: %s",
                name,
                e,
                extra={"tool_name": name, "latency_ms": elapsed()},
            )
            return ToolOutcome(success=False, error=f"{type(e).__name__}: {e}", latency_ms=elapsed())

        return self._to_outcome(result, elapsed())

    @staticmethod
    def _to_outcome(result: Any, latency_ms: int) -> ToolOutcome:
        """Normalise the conventions tools use to report their own failure."""
        if isinstance(result, ToolOutcome):
            result.latency_ms = latency_ms
            return result
        if isinstance(result, ToolResult):
            if result.is_error:
                return ToolOutcome(success=False, error=result.content, latency_ms=latency_ms)
            return ToolOutcome(success=True, output=result.content, latency_ms=latency_ms)
        if isinstance(result, dict) and result.get("success") is False:
            error = result.get("error") or "Tool reported failure"
            return ToolOutcome(success=False, error=str(error), latency_ms=latency_ms)
        return ToolOutcome(success=True, output=result, latency_ms=latency_ms)


def tool(
    description: str | None = None,
    name: str | None = None,
) -> Callable:
    """
    Decorator to attach a model-facing name/description to a function.

    Usage:
        @tool(description="Search the web")
        async def web_search(query: str, num_results: int = 5) -> dict:
            ...
    """

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {
            "name": name or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
