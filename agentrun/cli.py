"""
Command-line interface for agentrun.

Usage:
    agentrun serve --port 8080 --catalog catalog.json
    agentrun runs --session <session_id> --limit 20

The catalog file seeds the in-memory catalog and ledger:
    {
      "agents": [{"id": "a1", "owner_id": "u1", "instruction_prompt": "...",
                  "deploy_slug": "demo", "is_deployed": true}],
      "workflows": [{"id": "wf1", "slug": "w_demo", "owner_id": "u1",
                     "instruction_prompt": "..."}],
      "credits": {"u1": 500}
    }
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    serve = subparsers.add_parser("serve", help="Run the NDJSON HTTP server")
    serve.add_argument("--host", default=None, help="Bind address (default 127.0.0.1)")
    serve.add_argument("--port", type=int, default=None, help="Port (default 8080)")
    serve.add_argument("--catalog", type=Path, default=None, help="JSON file seeding agents, workflows and credits")
    serve.add_argument("--model", default=None, help="Override the configured model")
    serve.add_argument("--log-level", default="INFO", help="Logging level")
    serve.add_argument("--log-format", default="auto", choices=["auto", "json", "human"])
    serve.set_defaults(func=cmd_serve)

    runs = subparsers.add_parser("runs", help="Print recorded runs as JSON lines")
    runs.add_argument("--session", default=None, help="Only runs from this session")
    runs.add_argument("--lane", default=None, help="Only runs from this lane")
    runs.add_argument("--limit", type=int, default=20)
    runs.add_argument("--storage", type=Path, default=None, help="Run store directory")
    runs.set_defaults(func=cmd_runs)


def load_catalog_file(path: Path | None):
    """Build the in-memory catalog and ledger from a seed file."""
    from agentrun.credits import InMemoryCreditLedger
    from agentrun.sessions.catalog import AgentDefinition, InMemoryAgentCatalog, WorkflowDefinition

    data = {}
    if path is not None:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

    catalog = InMemoryAgentCatalog(
        agents=[AgentDefinition.model_validate(a) for a in data.get("agents", [])],
        workflows=[WorkflowDefinition.model_validate(w) for w in data.get("workflows", [])],
    )
    ledger = InMemoryCreditLedger({k: int(v) for k, v in data.get("credits", {}).items()})
    return catalog, ledger


def cmd_serve(args: argparse.Namespace) -> int:
    from agentrun.config import RuntimeConfig, ServerConfig
    from agentrun.llm import LiteLLMProvider
    from agentrun.observability import configure_logging
    from agentrun.server import AgentRunServer
    from agentrun.sessions.entry_point import SessionEntryPoint
    from agentrun.storage import FileRunRecorder

    configure_logging(level=args.log_level, format=args.log_format)

    config = RuntimeConfig()
    if args.model:
        config.model = args.model
    server_config = ServerConfig()
    if args.host:
        server_config.host = args.host
    if args.port is not None:
        server_config.port = args.port

    try:
        catalog, ledger = load_catalog_file(args.catalog)
    except (OSError, ValueError) as e:
        print(f"Could not load catalog {args.catalog}: {e}", file=sys.stderr)
        return 1

    llm = LiteLLMProvider(
        model=config.model,
        api_key=config.api_key,
        api_base=config.api_base,
        temperature=config.temperature,
    )
    recorder = FileRunRecorder(config.storage_path)
    entry_point = SessionEntryPoint(
        llm=llm, catalog=catalog, ledger=ledger, recorder=recorder, config=config
    )
    server = AgentRunServer(entry_point, recorder=recorder, config=server_config)

    async def _serve() -> None:
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    from agentrun.config import get_storage_path
    from agentrun.schemas.run import Lane
    from agentrun.storage import FileRunRecorder

    try:
        lane = Lane(args.lane) if args.lane else None
    except ValueError:
        print(f"Unknown lane: {args.lane}", file=sys.stderr)
        return 1

    recorder = FileRunRecorder(args.storage or get_storage_path())
    runs = asyncio.run(recorder.list_runs(session_id=args.session, lane=lane, limit=args.limit))
    for run in runs:
        print(run.model_dump_json())
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="agentrun",
        description="agentrun - streaming agentic execution runtime",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
