"""Command-line interface router for patchpilot."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final

import structlog

from patchpilot.config import (
    ConfigLoadError,
    ConfigValidationError,
    Settings,
    effective_config,
    load_config,
)
from patchpilot.control_plane.dispatcher import SynchronousDispatcher
from patchpilot.control_plane.state_machine import WorkflowStateMachine
from patchpilot.domain.models import PatchSummaryJson, PlanJson, PolicyCheckResult
from patchpilot.domain.workflow import Workflow
from patchpilot.errors import ValidationFailed, WorkflowError
from patchpilot.main import ExitCode
from patchpilot.observability.logging import setup_logging
from patchpilot.persistence import StateDB, WorkflowRepo
from patchpilot.policy.enforcer import PolicyEnforcer
from patchpilot.policy.schema_validator import SchemaValidator
from patchpilot.security.command_guard import CommandGuard
from patchpilot.ui.render import CLIRenderer, create_renderer

POLICY_DOCUMENT_KINDS: Final[tuple[str, ...]] = ("plan", "patch")

_logger = structlog.get_logger(__name__)


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    def __init__(self, message: str, *, exit_code: int = int(ExitCode.INTERNAL_ERROR)) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="patchpilot",
        description=(
            "patchpilot — policy-gated ticket-to-pull-request automation.\n\n"
            "Common workflows:\n"
            "  patchpilot guard-check 'npm test'     Validate a command\n"
            "  patchpilot policy-check patch p.json  Check a patch summary\n"
            "  patchpilot status wf-...              Inspect a workflow\n"
            "  patchpilot stats                      Aggregate workflow statistics\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to patchpilot TOML config (default: ./patchpilot.toml if present).",
    )
    common.add_argument(
        "--json", action="store_true", default=False, help="Emit deterministic JSON output"
    )
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    guard_parser = subparsers.add_parser(
        "guard-check", parents=[common], help="Validate a command against the command guard"
    )
    guard_parser.add_argument("shell_command", metavar="COMMAND", help="Command line to check")
    guard_parser.add_argument(
        "--workspace", default=None, help="Workspace root added to the allowed paths"
    )
    guard_parser.set_defaults(handler=_cmd_guard_check)

    policy_parser = subparsers.add_parser(
        "policy-check",
        parents=[common],
        help="Schema-validate and policy-check a plan or patch summary JSON file",
    )
    policy_parser.add_argument("kind", choices=POLICY_DOCUMENT_KINDS)
    policy_parser.add_argument("document", metavar="FILE", help="Path to the JSON document")
    policy_parser.set_defaults(handler=_cmd_policy_check)

    status_parser = subparsers.add_parser(
        "status", parents=[common], help="Show the status of one workflow"
    )
    status_parser.add_argument("workflow_id", metavar="WORKFLOW_ID")
    status_parser.set_defaults(handler=_cmd_status)

    stats_parser = subparsers.add_parser(
        "stats", parents=[common], help="Aggregate statistics over all workflows"
    )
    stats_parser.set_defaults(handler=_cmd_stats)

    cancel_parser = subparsers.add_parser(
        "cancel", parents=[common], help="Cancel a running workflow"
    )
    cancel_parser.add_argument("workflow_id", metavar="WORKFLOW_ID")
    cancel_parser.set_defaults(handler=_cmd_cancel)

    retry_parser = subparsers.add_parser(
        "retry", parents=[common], help="Reset a failed workflow to INGESTED"
    )
    retry_parser.add_argument("workflow_id", metavar="WORKFLOW_ID")
    retry_parser.set_defaults(handler=_cmd_retry)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Print the redacted effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler: Callable[[argparse.Namespace, Mapping[str, Any]], int] | None = getattr(
        namespace, "handler", None
    )
    if not callable(handler):
        parser.print_help(sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    try:
        config = _load_effective_config(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    settings = Settings.from_config(config)
    handle = setup_logging(settings.observability, log_dir=settings.paths.log_dir)
    try:
        _logger.debug("cli_command_started", command=namespace.command)
        return int(handler(namespace, config))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        handle.shutdown()


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_guard_check(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    settings = Settings.from_config(config)
    guard = CommandGuard(settings.guard)
    workspace = _optional_str(getattr(args, "workspace", None))
    extra_paths = [str(Path(workspace).expanduser().resolve())] if workspace else []
    validation = guard.validate_command(args.shell_command, allowed_paths=extra_paths)

    if _flag(args, "json"):
        _emit_json({"command": "guard-check", "result": validation.to_dict()})
    else:
        _get_renderer(args).command_validation(validation)
    return int(ExitCode.SUCCESS if validation.safe else ExitCode.CHECK_FAILED)


def _cmd_policy_check(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    settings = Settings.from_config(config)
    document = _load_json_document(Path(args.document))
    validator = SchemaValidator(settings.policies)
    enforcer = PolicyEnforcer(settings.policies)
    kind: str = args.kind

    try:
        if kind == "plan":
            validation = validator.validate_plan(document)
        else:
            validation = validator.validate_patch(document)
    except ValidationFailed as exc:
        errors = exc.result.errors if exc.result is not None else [str(exc)]
        payload: dict[str, object] = {
            "command": "policy-check",
            "kind": kind,
            "validation": {"is_valid": False, "errors": errors},
            "policy": None,
        }
        if _flag(args, "json"):
            _emit_json(payload)
        else:
            renderer = _get_renderer(args)
            renderer.kv("Document", kind)
            renderer.section("Schema errors:")
            renderer.items(errors)
        return int(ExitCode.CHECK_FAILED)

    review: dict[str, Any] | None = None
    result: PolicyCheckResult
    if kind == "plan":
        result = enforcer.check_plan_compliance(PlanJson.from_dict(document))
    else:
        patch = PatchSummaryJson.from_dict(document)
        result = enforcer.check_patch_compliance(patch)
        review = enforcer.generate_review_result(patch, result).to_dict()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "policy-check",
                "kind": kind,
                "validation": validation.to_dict(),
                "policy": result.to_dict(),
                "review": review,
            }
        )
    else:
        renderer = _get_renderer(args)
        renderer.policy_result(kind, result)
        if validation.warnings:
            renderer.section("Schema warnings:")
            renderer.items(validation.warnings)
    return int(ExitCode.SUCCESS if result.passed else ExitCode.CHECK_FAILED)


def _cmd_status(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    with _state_machine(config) as machine:
        status = machine.status(_require_workflow(machine, args.workflow_id).id)
    if _flag(args, "json"):
        _emit_json({"command": "status", "workflow": status.to_dict()})
    else:
        _get_renderer(args).workflow_status(status)
    return int(ExitCode.SUCCESS)


def _cmd_stats(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    with _state_machine(config) as machine:
        stats = machine.statistics()
    if _flag(args, "json"):
        _emit_json({"command": "stats", "statistics": stats.to_dict()})
    else:
        _get_renderer(args).statistics(stats)
    return int(ExitCode.SUCCESS)


def _cmd_cancel(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    return _mutate(args, config, "cancel", WorkflowStateMachine.cancel)


def _cmd_retry(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    return _mutate(args, config, "retry", WorkflowStateMachine.retry)


def _cmd_config(args: argparse.Namespace, config: Mapping[str, Any]) -> int:
    redacted = effective_config(config)
    if _flag(args, "json"):
        _emit_json({"command": "config", "config": redacted})
        return int(ExitCode.SUCCESS)
    _get_renderer(args).text(
        json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False, default=str)
    )
    return int(ExitCode.SUCCESS)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _state_machine(config: Mapping[str, Any]) -> Iterator[WorkflowStateMachine]:
    """Open the configured state DB and yield a machine without stage handlers.

    Stage work belongs to the automation worker; CLI mutations only persist state.
    """

    settings = Settings.from_config(config)
    with StateDB(settings.paths.state_db) as state_db:
        yield WorkflowStateMachine(
            WorkflowRepo(state_db), SynchronousDispatcher(), settings.workflow
        )


def _mutate(
    args: argparse.Namespace,
    config: Mapping[str, Any],
    name: str,
    action: Callable[[WorkflowStateMachine, str], object],
) -> int:
    with _state_machine(config) as machine:
        workflow = _require_workflow(machine, args.workflow_id)
        try:
            action(machine, workflow.id)
        except WorkflowError as exc:
            raise CLIError(str(exc), exit_code=int(ExitCode.CHECK_FAILED)) from exc
        status = machine.status(workflow.id)
    if _flag(args, "json"):
        _emit_json({"command": name, "workflow": status.to_dict()})
    else:
        _get_renderer(args).workflow_status(status)
    return int(ExitCode.SUCCESS)


def _require_workflow(machine: WorkflowStateMachine, workflow_id: str) -> Workflow:
    try:
        workflow = machine.get(workflow_id)
    except ValueError as exc:
        raise CLIError(
            f"invalid workflow id: {workflow_id}", exit_code=int(ExitCode.CONFIG_ERROR)
        ) from exc
    if workflow is None:
        raise CLIError(f"workflow not found: {workflow_id}", exit_code=int(ExitCode.CHECK_FAILED))
    return workflow


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        return load_config(config_path)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=int(ExitCode.CONFIG_ERROR)) from exc


def _load_json_document(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise CLIError(f"document not found: {path}", exit_code=int(ExitCode.CONFIG_ERROR)) from exc
    except json.JSONDecodeError as exc:
        raise CLIError(
            f"document is not valid JSON: {path}: {exc}", exit_code=int(ExitCode.CONFIG_ERROR)
        ) from exc
    if not isinstance(payload, dict):
        raise CLIError(
            f"document must be a JSON object: {path}", exit_code=int(ExitCode.CONFIG_ERROR)
        )
    return payload


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(
        json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    )


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(verbose=_flag(args, "verbose"))


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
