"""Entry point for `python -m cadence` / `cadence`.

Subcommands:
    cadence run SURFACE PROMPT        Run one prompt and print the result
    cadence serve                     Restore heartbeats and run until interrupted
    cadence heartbeat SURFACE PROMPT  Enable a heartbeat (--stop disables it)
    cadence model [NAME]              Show or set the global model
    cadence status SURFACE            Show session and scheduler state
    cadence plan SURFACE              Toggle plan mode for human runs
    cadence clear SURFACE             Forget the session; the next run starts fresh
    cadence usage SURFACE             Show cost and run counts
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from cadence.errors import CadenceError


async def _run(args: argparse.Namespace) -> int:
    from cadence.app import CadenceApp
    from cadence.types import ContextKey, RunRequest

    app = CadenceApp()
    model = None
    if args.model:
        from cadence.models import resolve_model

        model, _ = resolve_model(args.model)

    request = RunRequest(
        context=ContextKey(args.surface, args.thread),
        prompt=args.prompt,
        surface_name=args.surface,
        continue_session=args.continue_session,
        model_override=model,
        image_inputs=args.image or [],
    )
    try:
        result = await app.handle_message(request)
    except CadenceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        await app.shutdown("run failed")
        return 1

    await app.presenter.present(request.context, result, "human")
    if args.wait_callbacks:
        await app.callbacks.wait_idle()
    await app.shutdown("run complete")
    return 1 if result.is_error else 0


async def _serve() -> int:
    from cadence.app import CadenceApp

    await CadenceApp().serve()
    return 0


async def _heartbeat(args: argparse.Namespace) -> int:
    from cadence.config import get_settings
    from cadence.state import SessionStore
    from cadence.types import ContextKey, HeartbeatConfig

    store = SessionStore(get_settings().state_file)
    key = ContextKey(args.surface)
    await store.get_or_create(key, args.surface)

    if args.stop:
        await store.set_heartbeat(key, None)
        print(f"Heartbeat disabled for {key}.")
        return 0
    if not args.prompt:
        print("Error: a prompt is required unless --stop is given", file=sys.stderr)
        return 2

    minutes = args.interval or get_settings().heartbeat.default_interval_minutes
    config = HeartbeatConfig(enabled=True, interval_ms=minutes * 60_000, prompt=args.prompt)
    await store.set_heartbeat(key, config)
    print(f"Heartbeat enabled for {key}: every {minutes} minute{'s' if minutes != 1 else ''}.")
    print("Start `cadence serve` to run it.")
    return 0


async def _model(args: argparse.Namespace) -> int:
    from cadence.config import get_settings
    from cadence.models import resolve_model
    from cadence.state import SessionStore

    store = SessionStore(get_settings().state_file)
    if args.name is None:
        current = await store.get_global_model()
        print(current or f"{get_settings().agent.default_model} (default)")
        return 0

    model_id, backend = resolve_model(args.name)
    await store.set_global_model(model_id)
    print(f"Global model set to {model_id} ({backend}).")
    return 0


async def _status(args: argparse.Namespace) -> int:
    from cadence.app import CadenceApp
    from cadence.types import ContextKey

    app = CadenceApp()
    info = await app.status(ContextKey(args.surface, args.thread))
    await app.shutdown("status")

    print(f"Context: {info['context']}")
    session = info["session"]
    if session is None:
        print("Status: no session")
        return 0
    print(f"Session: {session['session_id']}")
    print(f"Created: {session['created_at']}")
    print(f"Messages: {session['messages']} (+{session['autonomous_runs']} autonomous)")
    print(f"Model: {session['model']}")
    print(f"Plan mode: {'on' if session['plan_mode'] else 'off'}")
    print(f"Project directory: {session['project_directory']}")
    hb = session["heartbeat"]
    if hb and hb["enabled"]:
        print(f"Heartbeat: every {hb['interval_ms'] // 60_000} min")
    else:
        print("Heartbeat: off")
    return 0


async def _plan(args: argparse.Namespace) -> int:
    from cadence.app import CadenceApp
    from cadence.types import ContextKey

    app = CadenceApp()
    enabled = await app.toggle_plan(ContextKey(args.surface, args.thread), args.surface)
    await app.shutdown("plan")
    if enabled:
        print("Plan mode enabled: the agent describes changes before applying them.")
    else:
        print("Plan mode disabled: the agent applies changes directly.")
    return 0


async def _clear(args: argparse.Namespace) -> int:
    from cadence.app import CadenceApp
    from cadence.types import ContextKey

    app = CadenceApp()
    record = await app.clear(ContextKey(args.surface, args.thread))
    await app.shutdown("clear")
    if record is None:
        print("No session found.", file=sys.stderr)
        return 1
    print(f"Session cleared. Session ID was {record.session_id}.")
    return 0


async def _usage(args: argparse.Namespace) -> int:
    from datetime import UTC, datetime

    from cadence.app import CadenceApp
    from cadence.types import ContextKey

    app = CadenceApp()
    info = await app.usage(ContextKey(args.surface, args.thread))
    await app.shutdown("usage")

    session = info["session"]
    if session is None:
        print("No session found for this context.")
    else:
        print(f"This session ({info['context']})")
        print(f"  Messages: {session['messages']} (+{session['autonomous_runs']} autonomous)")
        print(f"  Cost: ${session['cost_usd']:.4f}")
        print(f"  Model: {session['model'] or 'default'}")
    totals = info["totals"]
    print(f"All sessions ({totals['sessions']} total)")
    print(f"  Messages: {totals['messages']} (+{totals['autonomous_runs']} autonomous)")
    print(f"  Cost: ${totals['cost_usd']:.4f}")
    limit = info["last_usage_limit"]
    if limit is not None:
        ago = round((datetime.now(UTC) - limit.detected_at).total_seconds() / 60)
        print(f"Last usage limit ({ago}m ago, {limit.context})")
        print(f"  {limit.message}")
    return 0


def _positive_int(value: str) -> int:
    n = int(value)
    if n <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return n


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="cadence",
        description="Run coding agents per conversation, on demand and on a timer",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one prompt and print the result")
    run.add_argument("surface", help="Surface (channel) id; also names the working directory")
    run.add_argument("prompt")
    run.add_argument("--thread", default=None, help="Sub-scope id within the surface")
    run.add_argument(
        "--continue", dest="continue_session", action="store_true", help="Resume the session"
    )
    run.add_argument("--model", default=None, help="Model alias or id for this run only")
    run.add_argument("--image", action="append", help="Image file to attach (codex only)")
    run.add_argument(
        "--wait-callbacks",
        action="store_true",
        help="Stay alive until scheduled callbacks have run",
    )

    sub.add_parser("serve", help="Restore heartbeats and run until interrupted")

    hb = sub.add_parser("heartbeat", help="Configure the heartbeat for a surface")
    hb.add_argument("surface")
    hb.add_argument("prompt", nargs="?", default=None)
    hb.add_argument("--interval", type=_positive_int, default=None, help="Minutes between ticks")
    hb.add_argument("--stop", action="store_true", help="Disable the heartbeat")

    model = sub.add_parser("model", help="Show or set the global model")
    model.add_argument("name", nargs="?", default=None)

    for name, help_text in (
        ("status", "Show session and scheduler state for a context"),
        ("plan", "Toggle plan mode for human runs in a context"),
        ("clear", "Forget the session for a context"),
        ("usage", "Show cost and run counts"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("surface")
        cmd.add_argument("--thread", default=None, help="Sub-scope id within the surface")

    args = parser.parse_args()

    try:
        match args.command:
            case "run":
                code = asyncio.run(_run(args))
            case "serve":
                code = asyncio.run(_serve())
            case "heartbeat":
                code = asyncio.run(_heartbeat(args))
            case "model":
                code = asyncio.run(_model(args))
            case "status":
                code = asyncio.run(_status(args))
            case "plan":
                code = asyncio.run(_plan(args))
            case "clear":
                code = asyncio.run(_clear(args))
            case "usage":
                code = asyncio.run(_usage(args))
            case _:
                parser.error(f"unknown command {args.command}")
    except CadenceError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
