"""Kilo CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import threading
from pathlib import Path

from pydantic import ValidationError

from kilo.config import CONFIG_DIRNAME, write_default_config
from kilo.errors import CheckpointNotFoundError, ConfigError, InvalidResumeStateError
from kilo.pipeline.approval import ApprovalAction, ApprovalGate, ApprovalRequest, Decision
from kilo.pipeline.models import ExecutionMode, PipelineResult, PipelineStatus, ResumeRef
from kilo.runtime import KiloRuntime

logger = logging.getLogger("kilo.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INTERRUPTED = 130


# ── Interactive approval ─────────────────────────────────────────────────────


class ConsoleApprover:
    """Approval hook that prompts on stdin.

    The prompt runs on a daemon thread so a signal-driven shutdown is never
    blocked by a pending ``input()``.
    """

    def __init__(self) -> None:
        self.gate: ApprovalGate | None = None

    async def __call__(self, request: ApprovalRequest) -> None:
        summary = request.summary
        print(f"\nPhase '{request.phase_name}' completed", end="")
        if summary is not None:
            print(f" ({summary.completed_tasks}/{summary.total_tasks} tasks)", end="")
        print(f". Next phase: {request.next_phase or '-'}")
        loop = asyncio.get_running_loop()
        threading.Thread(
            target=self._prompt, args=(loop, request.pipeline_id), daemon=True
        ).start()

    def _prompt(self, loop: asyncio.AbstractEventLoop, pipeline_id: str) -> None:
        decision = None
        while decision is None:
            try:
                answer = input("[a]pprove / [r]eject / [m]odify: ").strip().lower()
                decision = parse_decision(answer, input)
            except EOFError:
                decision = Decision(action=ApprovalAction.REJECT, note="no input available")
        loop.call_soon_threadsafe(self._deliver, pipeline_id, decision)

    def _deliver(self, pipeline_id: str, decision: Decision) -> None:
        if self.gate is None or not self.gate.decide(pipeline_id, decision):
            logger.warning("Approval for %s arrived after the request closed", pipeline_id)


def parse_decision(answer: str, read_line=input) -> Decision | None:
    """Turn a console answer into a Decision. None means ask again."""
    if answer in ("a", "approve", "y", "yes"):
        return Decision(action=ApprovalAction.APPROVE)
    if answer in ("r", "reject", "n", "no"):
        note = read_line("Reason (optional): ").strip()
        return Decision(action=ApprovalAction.REJECT, note=note or None)
    if answer in ("m", "modify"):
        raw = read_line("JSON payload to merge into the next phase: ").strip()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            print(f"Invalid JSON: {e}", file=sys.stderr)
            return None
        if not isinstance(payload, dict):
            print("Payload must be a JSON object", file=sys.stderr)
            return None
        return Decision(action=ApprovalAction.MODIFY, payload=payload)
    return None


# ── Commands ─────────────────────────────────────────────────────────────────


def _exit_code(result: PipelineResult) -> int:
    if result.success:
        return EXIT_OK
    if result.final_status == PipelineStatus.INTERRUPTED:
        return EXIT_INTERRUPTED
    return EXIT_FAILED


def _print_result(result: PipelineResult) -> None:
    print(f"\nPipeline {result.pipeline_id}: {result.final_status.value} ({result.progress}% of tasks done)")
    for phase in result.phases:
        print(
            f"  {phase.name:<14} {phase.status.value:<18} "
            f"{phase.completed_tasks}/{phase.total_tasks} done, {phase.failed_tasks} failed"
        )
    if result.error:
        print(f"  error: {result.error}")
    if result.last_checkpoint is not None:
        print(f"  last checkpoint: {result.last_checkpoint.pipeline_id}#{result.last_checkpoint.sequence}")
        if result.final_status == PipelineStatus.INTERRUPTED:
            print(f"  resume with: kilo resume {result.pipeline_id}")


def _init_project(root: Path, force: bool) -> int:
    try:
        path = write_default_config(root, force=force)
    except FileExistsError as e:
        print(f"Error: {e} (use --force to overwrite)", file=sys.stderr)
        return EXIT_FAILED
    print(f"Created {path}")
    print("Next steps:")
    print(f"  1. Edit {path} (agents, phases, pipeline mode)")
    print('  2. kilo run --objective "..."')
    return EXIT_OK


async def _execute(runtime: KiloRuntime, approver: ConsoleApprover, coro_factory) -> int:
    approver.gate = runtime.gate
    async with runtime:
        runtime.shutdown.install()
        try:
            result = await coro_factory(runtime)
        finally:
            runtime.shutdown.uninstall()
    _print_result(result)
    return _exit_code(result)


def _run_pipeline(root: Path, objective: str, mode: ExecutionMode | None) -> int:
    approver = ConsoleApprover()
    runtime = KiloRuntime.from_root(root, on_approval_request=approver)
    return asyncio.run(_execute(runtime, approver, lambda rt: rt.run(objective, mode)))


def _resume_pipeline(root: Path, pipeline_id: str, sequence: int | None) -> int:
    ref = ResumeRef(pipeline_id=pipeline_id, sequence=sequence)
    approver = ConsoleApprover()
    runtime = KiloRuntime.from_root(root, on_approval_request=approver)
    try:
        return asyncio.run(_execute(runtime, approver, lambda rt: rt.resume(ref)))
    except (CheckpointNotFoundError, InvalidResumeStateError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED


async def _show_checkpoints(root: Path, pipeline_id: str | None, sequence: int | None) -> int:
    async with KiloRuntime.from_root(root) as runtime:
        store = runtime.store
        if pipeline_id is None:
            pipelines = await store.list_pipelines()
            if not pipelines:
                print("No checkpoints found.")
            for pid in pipelines:
                latest = await store.load_latest(pid)
                if latest is None:
                    continue
                print(
                    f"{pid}  #{latest.sequence:<4} {latest.pipeline_status.value:<12} "
                    f"{latest.reason.value:<15} {latest.objective}"
                )
            return EXIT_OK

        ref = ResumeRef(pipeline_id=pipeline_id, sequence=sequence)
        if sequence is not None:
            checkpoint = await store.load_by_id(ref.pipeline_id, sequence)
            if checkpoint is None:
                print(f"Error: {CheckpointNotFoundError(pipeline_id, sequence)}", file=sys.stderr)
                return EXIT_FAILED
            print(checkpoint.to_json())
            return EXIT_OK

        checkpoints = await store.list_checkpoints(ref.pipeline_id)
        if not checkpoints:
            print(f"Error: {CheckpointNotFoundError(pipeline_id)}", file=sys.stderr)
            return EXIT_FAILED
        for c in checkpoints:
            print(
                f"#{c.sequence:<4} {c.timestamp.isoformat()}  {c.reason.value:<15} "
                f"{c.pipeline_status.value:<12} phase={c.phase_name}"
            )
        return EXIT_OK


def _serve(root: Path, host: str, port: int, log_level: str) -> int:
    import uvicorn

    from kilo.server import create_app

    app = create_app(KiloRuntime.from_root(root))
    uvicorn.run(app, host=host, port=port, log_level=log_level.lower())
    return EXIT_OK


# ── Argument parsing ─────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Project root containing .kilo/ (default: current directory)",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    parser = argparse.ArgumentParser(
        prog="kilo",
        description="Kilo — BMAD pipeline orchestrator",
    )
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", parents=[common], help="Write a default .kilo/config.yaml")
    init_parser.add_argument("--force", action="store_true", help="Overwrite an existing config")

    run_parser = subparsers.add_parser("run", parents=[common], help="Run a pipeline")
    run_parser.add_argument("--objective", required=True, help="What the pipeline should build")
    run_parser.add_argument(
        "--mode",
        choices=[m.value for m in ExecutionMode],
        help="Execution mode (default: pipeline.mode from config)",
    )

    resume_parser = subparsers.add_parser("resume", parents=[common], help="Resume a pipeline from a checkpoint")
    resume_parser.add_argument("pipeline_id")
    resume_parser.add_argument("--sequence", type=int, help="Checkpoint sequence (default: latest)")

    cp_parser = subparsers.add_parser(
        "checkpoints", parents=[common], help="List pipelines, list checkpoints, or export one"
    )
    cp_parser.add_argument("pipeline_id", nargs="?")
    cp_parser.add_argument("--sequence", type=int, help="Print this checkpoint as JSON")

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the HTTP control API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to (default: 8000)")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_FAILED)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "init":
        sys.exit(_init_project(args.root, args.force))

    kilo_dir = args.root / CONFIG_DIRNAME
    if not kilo_dir.exists():
        print(f"Error: {CONFIG_DIRNAME}/ directory not found at {kilo_dir}", file=sys.stderr)
        print("Run 'kilo init' to create one, or specify --root", file=sys.stderr)
        sys.exit(EXIT_FAILED)

    try:
        if args.command == "run":
            mode = ExecutionMode(args.mode) if args.mode else None
            code = _run_pipeline(args.root, args.objective, mode)
        elif args.command == "resume":
            code = _resume_pipeline(args.root, args.pipeline_id, args.sequence)
        elif args.command == "checkpoints":
            code = asyncio.run(_show_checkpoints(args.root, args.pipeline_id, args.sequence))
        else:
            code = _serve(args.root, args.host, args.port, args.log_level)
    except (FileNotFoundError, ConfigError, ValidationError) as e:
        print(f"Error: {e}", file=sys.stderr)
        code = EXIT_FAILED
    sys.exit(code)


if __name__ == "__main__":
    main()
