"""Command line entry point.

    python -m deskagent.main worker          # browser-side worker host
    python -m deskagent.main orchestrator    # relay for ephemeral callers
    python -m deskagent.main run SCRIPT_ID -p q=hello
    python -m deskagent.main intent "search for 'hello'"
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any

from .agent import AutomationAgent
from .commands import Attach, Detach, ExecutionResult, ProcessIntent, RunScript, Status
from .config import AgentConfig
from .errors import AutomationError
from .orchestrator import Orchestrator, send_command
from .relay.worker import WorkerHost
from .storage import JsonScriptStore, ScriptStore

logger = logging.getLogger("deskagent")


def _setup_logging() -> None:
    level_name = (os.environ.get("DESKAGENT_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stderr,
    )


def _store(config: AgentConfig) -> ScriptStore | None:
    return JsonScriptStore(config.scripts_file) if config.scripts_file else None


def _parse_params(pairs: list[str] | None) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise SystemExit(f"--param expects key=value, got {pair!r}")
        params[key.strip()] = value
    return params


def _print_event(event: dict[str, Any]) -> None:
    print(json.dumps(event, ensure_ascii=False), file=sys.stderr, flush=True)


def _print_result(result: Any) -> int:
    print(json.dumps(result, ensure_ascii=False, indent=2))
    if isinstance(result, dict) and "success" in result:
        return 0 if ExecutionResult.from_dict(result).success else 1
    if isinstance(result, dict) and isinstance(result.get("result"), dict):
        return 0 if result["result"].get("success") is True else 1
    return 0


async def _serve_worker(config: AgentConfig) -> None:
    agent = AutomationAgent(config, store=_store(config))
    host = WorkerHost(agent.handlers())
    await host.serve_websocket(config.worker_host, config.worker_port)
    try:
        await asyncio.Event().wait()
    finally:
        await host.close()
        await agent.close()


async def _serve_orchestrator(config: AgentConfig) -> None:
    orchestrator = Orchestrator(config, store=_store(config))
    await orchestrator.serve_websocket()
    try:
        await asyncio.Event().wait()
    finally:
        await orchestrator.close()


async def _send(config: AgentConfig, command: dict[str, Any], *, local: bool) -> Any:
    if not local:
        return await send_command(config, command, on_event=_print_event)
    agent = AutomationAgent(config, store=_store(config))
    try:
        handler = agent.handlers()[command["type"]]
        return await handler(command, _print_event)
    finally:
        await agent.close()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="deskagent", description="Scripted browser automation over CDP")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("worker", help="Serve the worker host next to the browser")
    sub.add_parser("orchestrator", help="Relay commands from ephemeral callers to the worker host")

    run = sub.add_parser("run", help="Run a stored script (or --file) and print the result")
    run.add_argument("script_id", nargs="?", help="Script id or title in DESKAGENT_SCRIPTS_FILE")
    run.add_argument("--file", help="Run the script document in this JSON file instead")
    run.add_argument("-p", "--param", action="append", metavar="KEY=VALUE", help="Override a script parameter")
    run.add_argument("--target", help="Target id or URL (overrides targetUrl)")
    run.add_argument("--local", action="store_true", help="Execute in this process instead of via the orchestrator")

    intent = sub.add_parser("intent", help="Classify free text and run the matching script")
    intent.add_argument("text")
    intent.add_argument("--local", action="store_true", help="Execute in this process instead of via the orchestrator")

    for name, help_text in (("attach", "Attach to a target"), ("detach", "Detach from a target")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("target")
        p.add_argument("--local", action="store_true", help="Execute in this process instead of via the orchestrator")

    status = sub.add_parser("status", help="Show worker session state")
    status.add_argument("--local", action="store_true", help=argparse.SUPPRESS)
    return parser


def _command_from_args(args: argparse.Namespace) -> dict[str, Any]:
    if args.command == "run":
        script: dict[str, Any] | None = None
        if args.file:
            with open(args.file, encoding="utf-8") as fp:
                script = json.load(fp)
        elif not args.script_id:
            raise SystemExit("run needs a SCRIPT_ID or --file")
        return RunScript(
            script_id=args.script_id or str((script or {}).get("id") or "inline"),
            parameters=_parse_params(args.param),
            script=script,
            target=args.target,
        ).to_dict()
    if args.command == "intent":
        return ProcessIntent(text=args.text).to_dict()
    if args.command == "attach":
        return Attach(target=args.target).to_dict()
    if args.command == "detach":
        return Detach(target=args.target).to_dict()
    return Status().to_dict()


def main(argv: list[str] | None = None) -> int:
    _setup_logging()
    args = _build_parser().parse_args(argv)
    config = AgentConfig.from_env()

    try:
        if args.command == "worker":
            asyncio.run(_serve_worker(config))
            return 0
        if args.command == "orchestrator":
            asyncio.run(_serve_orchestrator(config))
            return 0
        command = _command_from_args(args)
        result = asyncio.run(_send(config, command, local=args.local))
    except KeyboardInterrupt:
        return 130
    except AutomationError as exc:
        print(json.dumps({"success": False, "error": exc.to_dict()}, ensure_ascii=False, indent=2))
        return 1
    return _print_result(result)


if __name__ == "__main__":
    sys.exit(main())
