"""
CLI Module

Architectural Intent:
- Command-line interface for converge
- Entry point for all user interactions
- Delegates to application use cases via composition root
- Supports --verbose/--debug/--json-logs flags for log level control

Exit codes:
    0  success (with --detailed-exitcode: nothing to change)
    1  failure while talking to the control plane or running steps
    2  with --detailed-exitcode on plan/apply: changes present / applied
    3  invalid declarations, variables or trigger
"""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from typing import Any, Optional

from converge.domain.errors import (
    ConvergeError,
    CyclicDependencyError,
    UnknownReferenceError,
    UnsatisfiedDependencyError,
    ValidationError,
)
from converge.infrastructure.logging import configure_logging

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CHANGES = 2
EXIT_INVALID = 3

_INVALID_ERRORS = (
    ValidationError,
    CyclicDependencyError,
    UnknownReferenceError,
    UnsatisfiedDependencyError,
)


def _add_input_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--file", "-f", default="converge.json", help="Path to the declaration file"
    )
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="Set a variable (repeatable)",
    )
    parser.add_argument(
        "--var-file",
        action="append",
        default=[],
        metavar="FILE",
        help="JSON file with variable values (repeatable)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="converge",
        description="converge: declarative infrastructure and build pipelines",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Enable verbose output"
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug output with tracebacks"
    )
    parser.add_argument(
        "--json-logs", action="store_true", help="Emit structured JSON log lines"
    )
    parser.add_argument(
        "--config", "-c", default=None, help="Path to converge.config.json"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    plan_parser = subparsers.add_parser(
        "plan", help="Show what apply would create, update and delete"
    )
    _add_input_args(plan_parser)
    plan_parser.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit 0 when nothing would change, 2 when changes are present",
    )

    apply_parser = subparsers.add_parser(
        "apply", help="Converge the control plane to the declarations"
    )
    _add_input_args(apply_parser)
    apply_parser.add_argument(
        "--detailed-exitcode",
        action="store_true",
        help="Exit 0 when nothing changed, 2 when changes were applied",
    )

    destroy_parser = subparsers.add_parser(
        "destroy", help="Delete recorded objects in reverse create order"
    )
    destroy_parser.add_argument(
        "--target",
        "-t",
        action="append",
        default=[],
        help="Only destroy this node and what depends on it (repeatable)",
    )
    destroy_parser.add_argument(
        "--file",
        "-f",
        default=None,
        help="Declaration file whose resource type timeouts apply to the deletes",
    )

    output_parser = subparsers.add_parser("output", help="Show declared outputs")
    _add_input_args(output_parser)
    output_parser.add_argument(
        "--show-sensitive", action="store_true", help="Print sensitive values"
    )
    output_parser.add_argument(
        "--json", action="store_true", help="Print outputs as JSON"
    )

    pipeline_parser = subparsers.add_parser(
        "pipeline", help="Run the build pipeline for a pushed revision"
    )
    _add_input_args(pipeline_parser)
    pipeline_parser.add_argument(
        "--revision", "-r", required=True, help="Pushed commit revision"
    )
    pipeline_parser.add_argument("--branch", "-b", default="", help="Pushed branch")
    pipeline_parser.add_argument("--repository", default="", help="Repository name")

    serve_parser = subparsers.add_parser(
        "serve", help="Start the status page and push webhook server"
    )
    _add_input_args(serve_parser)
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", "-p", type=int, default=None, help="Bind port")

    subparsers.add_parser("dash", help="Launch the state dashboard")
    return parser


def _load_inputs(args: argparse.Namespace):
    from converge.infrastructure.declarations_loader import (
        collect_variable_values,
        load_declarations,
    )

    declarations = load_declarations(args.file)
    variables = collect_variable_values(declarations, args.var, args.var_file)
    return declarations, variables


def _subscribe_progress(container: Any) -> None:
    from converge.domain.events.run_events import (
        NodeStatusChangedEvent,
        StepStatusChangedEvent,
    )

    async def on_node(event: NodeStatusChangedEvent) -> None:
        if event.status in ("CREATING", "DESTROYING"):
            print(f"[*] {event.aggregate_id}: {event.action}...")
        elif event.status == "FAILED":
            print(f"[-] {event.aggregate_id}: {event.action} failed: {event.error_message}")
        else:
            print(f"[+] {event.aggregate_id}: {event.action} complete")

    async def on_step(event: StepStatusChangedEvent) -> None:
        marks = {"RUNNING": "*", "SUCCEEDED": "+"}
        mark = marks.get(event.status, "-")
        detail = f": {event.error_message}" if event.error_message else ""
        print(f"[{mark}] step {event.aggregate_id}: {event.status.lower()}{detail}")

    container.event_bus.subscribe(NodeStatusChangedEvent, on_node)
    container.event_bus.subscribe(StepStatusChangedEvent, on_step)


def _print_plan(plan: Any) -> None:
    from converge.domain.entities.plan import ChangeAction

    symbols = {
        ChangeAction.CREATE: "+",
        ChangeAction.UPDATE: "~",
        ChangeAction.DELETE: "-",
    }
    for change in plan.changes:
        symbol = symbols.get(change.action)
        if symbol is None:
            continue
        print(f"  {symbol} {change.node_id} ({change.type})")
        if change.action == ChangeAction.UPDATE:
            for key in change.changed_keys:
                print(
                    f"      {key}: {change.before.get(key)!r} -> {change.after.get(key)!r}"
                )
    print(f"[*] {plan}")


def _print_outputs(outputs: list, reveal: bool = False) -> None:
    for output in outputs:
        value = output.value if (reveal and output.available) else output.display()
        print(f"  {output.name} = {value}")


def _report_error(e: Exception, verbose: bool) -> None:
    print(f"[-] {e}")
    if verbose:
        traceback.print_exc()


async def _cmd_plan(args: argparse.Namespace, container: Any) -> int:
    declarations, variables = _load_inputs(args)
    plan = await container.plan.execute(declarations, variables)
    _print_plan(plan)
    if args.detailed_exitcode and plan.has_changes:
        return EXIT_CHANGES
    return EXIT_OK


async def _cmd_apply(args: argparse.Namespace, container: Any) -> int:
    declarations, variables = _load_inputs(args)
    _subscribe_progress(container)
    print(f"[*] Applying {args.file}...")
    result = await container.apply.execute(declarations, variables)
    counts = result.counts()
    print(
        f"[+] Apply complete: {counts['created']} created, {counts['updated']} updated, "
        f"{counts['deleted']} deleted, {counts['unchanged']} unchanged"
    )
    if result.outputs:
        print("[*] Outputs:")
        _print_outputs(result.outputs)
    if args.detailed_exitcode and result.changed:
        return EXIT_CHANGES
    return EXIT_OK


async def _cmd_destroy(args: argparse.Namespace, container: Any) -> int:
    _subscribe_progress(container)
    print("[*] Destroying recorded objects...")
    declarations = None
    if args.file:
        from converge.infrastructure.declarations_loader import load_declarations

        declarations = load_declarations(args.file)
    result = await container.destroy.execute(args.target or None, declarations)
    print(f"[+] Destroy complete: {len(result.deleted)} deleted")
    return EXIT_OK


async def _cmd_output(args: argparse.Namespace, container: Any) -> int:
    declarations, variables = _load_inputs(args)
    outputs = await container.outputs.execute(declarations, variables)
    if args.json:
        print(
            json.dumps(
                {o.name: o.to_dict(reveal=args.show_sensitive) for o in outputs},
                indent=2,
                default=str,
            )
        )
    else:
        _print_outputs(outputs, reveal=args.show_sensitive)
    return EXIT_OK


async def _cmd_pipeline(args: argparse.Namespace, container: Any) -> int:
    from converge.application.dtos.run_dtos import PushEventRequest

    try:
        request = PushEventRequest(
            revision=args.revision, branch=args.branch, repository=args.repository
        )
    except ValueError as e:
        raise ValidationError([str(e)]) from None
    declarations, variables = _load_inputs(args)
    _subscribe_progress(container)
    print(f"[*] Running pipeline for {request.revision[:7]}...")
    result = await container.pipeline_for(declarations, variables).execute(
        declarations, request, variables
    )
    for step_id, artifacts in result.artifacts.items():
        for name, value in artifacts.items():
            print(f"  {step_id}.{name} = {value}")
    print("[+] Pipeline succeeded.")
    return EXIT_OK


async def _cmd_serve(args: argparse.Namespace, container: Any) -> int:
    from converge.application.dtos.run_dtos import PushEventRequest
    from converge.presentation.web.app import ConvergeWebApp

    async def run_push(request: PushEventRequest):
        declarations, variables = _load_inputs(args)
        return await container.pipeline_for(declarations, variables).execute(
            declarations, request, variables
        )

    web = container.config.web
    app = ConvergeWebApp(
        state_store=container.state_store,
        event_bus=container.event_bus,
        run_push=run_push,
        webhook_secret=web.webhook_secret,
    )
    host = args.host or web.host
    port = args.port if args.port is not None else web.port
    await app.start(host, port)
    print(f"[*] Serving status page on http://{host}:{app.port}")
    print("[*] Push webhook: POST /hooks/push. Press Ctrl+C to stop.")
    try:
        while True:
            await asyncio.sleep(1)
    finally:
        app.stop()


_COMMANDS = {
    "plan": _cmd_plan,
    "apply": _cmd_apply,
    "destroy": _cmd_destroy,
    "output": _cmd_output,
    "pipeline": _cmd_pipeline,
    "serve": _cmd_serve,
}


async def async_main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    from converge.infrastructure.config import load_config

    config = load_config(args.config)

    # Configure logging based on flags
    if args.debug:
        configure_logging(level=logging.DEBUG, json_format=args.json_logs)
    elif args.verbose:
        configure_logging(level=logging.INFO, json_format=args.json_logs)
    else:
        configure_logging(level=config.log_level, json_format=args.json_logs)

    verbose = args.verbose or args.debug

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    from converge.composition_root import create_container

    try:
        container = create_container(config)
    except ValueError as e:
        _report_error(e, verbose)
        return EXIT_FAILURE

    if args.command == "dash":
        from converge.presentation.tui.dashboard import Dashboard

        try:
            app = Dashboard(container.state_store)
            await app.run_async()
        finally:
            container.close()
        return EXIT_OK

    try:
        return await _COMMANDS[args.command](args, container)
    except _INVALID_ERRORS as e:
        print(f"[-] Invalid declarations: {e}")
        if verbose:
            traceback.print_exc()
        return EXIT_INVALID
    except ConvergeError as e:
        _report_error(e, verbose)
        return EXIT_FAILURE
    except OSError as e:
        print(f"[-] I/O error: {e}")
        if verbose:
            traceback.print_exc()
        return EXIT_FAILURE
    finally:
        container.close()


def main():
    try:
        code = asyncio.run(async_main())
    except KeyboardInterrupt:
        print("\n[*] Stopped.")
        code = EXIT_OK
    sys.exit(code)


if __name__ == "__main__":
    main()
