"""Conveyor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from conveyor.config import ConfigError, build_engine, load_config, validate_config
from conveyor.pipeline.credentials import SecretMasker, SecretMaskingFilter
from conveyor.pipeline.models import PipelineRunStatus, TriggerMetadata
from conveyor.pipeline.report import EXIT_CONFIG_ERROR, RunReport, exit_code_for

logger = logging.getLogger("conveyor")


# ── Default templates for `conveyor init` ────────────────────────────────────

_DEFAULT_CONFIG = """\
# .conveyor/config.yaml — Conveyor project configuration

project:
  name: "{project_name}"

runtime:
  data_dir: .conveyor-data
  default_stage_timeout: 3600
  max_concurrent_runs: 4

credentials:
  backend: env
  env_prefix: CONVEYOR_SECRET_

quality_gates:
  release:
    coverage: {{operator: ">=", threshold: 80}}
    failed_tests: {{operator: "==", threshold: 0}}
"""

_DEFAULT_PIPELINE = """\
# .conveyor/pipelines/release.yaml — pipeline name is the file name
description: Build, test, gate and deploy {project_name}

stages:
  - name: build
    command: make build REVISION={{{{ trigger.revision }}}}
    timeout: 20m

  - name: test
    command: make test
    timeout: 30m

  - name: gate
    gate: release

  - name: deploy
    command: make deploy REVISION={{{{ trigger.revision }}}}
    credentials:
      - id: deploy-token
        kind: token
        env: DEPLOY_TOKEN
    deployment_target:
      cluster: production
      namespace: default
      workload: {project_name}
      revision_tag: "{{{{ trigger.revision }}}}"
      min_ready_replicas: 2
      poll_interval_seconds: 10
      max_wait_seconds: 300
"""


def _init_project(repo_root: Path) -> None:
    """Scaffold a .conveyor/ directory with a default config and pipeline."""
    conveyor_dir = repo_root / ".conveyor"
    pipelines_dir = conveyor_dir / "pipelines"

    if conveyor_dir.exists():
        print(f"Error: {conveyor_dir} already exists", file=sys.stderr)
        print("Remove it first if you want to re-initialize.", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    project_name = repo_root.resolve().name
    pipelines_dir.mkdir(parents=True)
    (conveyor_dir / "config.yaml").write_text(_DEFAULT_CONFIG.format(project_name=project_name))
    (pipelines_dir / "release.yaml").write_text(
        _DEFAULT_PIPELINE.format(project_name=project_name)
    )

    print(f"Initialized Conveyor project at {conveyor_dir}")
    print(f"  Project: {project_name}")
    print()
    print("Next steps:")
    print(f"  1. Review {conveyor_dir / 'config.yaml'} and {pipelines_dir / 'release.yaml'}")
    print("  2. Export secrets as CONVEYOR_SECRET_<ID> (e.g. CONVEYOR_SECRET_DEPLOY_TOKEN)")
    print("  3. Run: conveyor run release --revision <sha>")


def _load_or_exit(repo_root: Path):
    conveyor_dir = repo_root / ".conveyor"
    try:
        config = load_config(conveyor_dir)
    except (FileNotFoundError, ConfigError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print("Run 'conveyor init' to create one, or specify --repo-root", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)

    # Relative runtime paths are relative to the repository root
    runtime = config.runtime
    if not Path(runtime.data_dir).is_absolute():
        runtime.data_dir = str(repo_root / runtime.data_dir)
    if runtime.workspace_root and not Path(runtime.workspace_root).is_absolute():
        runtime.workspace_root = str(repo_root / runtime.workspace_root)
    return config


def _validate(args) -> None:
    config = _load_or_exit(args.repo_root)
    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"  ✗ {err}", file=sys.stderr)
        print(f"Config invalid: {len(errors)} error(s)", file=sys.stderr)
        sys.exit(EXIT_CONFIG_ERROR)
    print(
        f"Config OK: {len(config.pipelines)} pipeline(s), "
        f"{len(config.quality_gates)} quality gate(s)"
    )
    for name, defn in sorted(config.pipelines.items()):
        print(f"  {name}: {' → '.join(s.name for s in defn.stages)}")


def _parse_context(pairs: list[str]) -> dict[str, str]:
    context: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            print(f"Error: --context expects key=value, got {pair!r}", file=sys.stderr)
            sys.exit(EXIT_CONFIG_ERROR)
        context[key] = value
    return context


async def _open_registry(data_dir: Path):
    import aiosqlite

    from conveyor.pipeline.registry import RunRegistry

    data_dir.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(data_dir / "runs.db"))
    registry = RunRegistry(db)
    await registry.initialize()
    return db, registry


async def _run_pipeline(args, config, masker: SecretMasker) -> int:
    if args.pipeline not in config.pipelines:
        print(f"Error: unknown pipeline '{args.pipeline}'", file=sys.stderr)
        print(f"Known pipelines: {', '.join(sorted(config.pipelines)) or '(none)'}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    errors = validate_config(config)
    if errors:
        for err in errors:
            print(f"  ✗ {err}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    db, registry = await _open_registry(Path(config.runtime.data_dir))
    try:
        engine = build_engine(config, registry=registry, masker=masker)
        trigger = TriggerMetadata(
            revision=args.revision,
            source=args.source,
            pipeline=args.pipeline,
            context=_parse_context(args.context),
        )
        run = await engine.trigger(trigger)
    finally:
        await db.close()

    report = RunReport.from_run(run)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render_text())
    return exit_code_for(run)


async def _list_runs(args, config) -> int:
    db, registry = await _open_registry(Path(config.runtime.data_dir))
    try:
        status = PipelineRunStatus(args.status) if args.status else None
        runs = await registry.list_runs(status=status, pipeline_name=args.pipeline, limit=args.limit)
    finally:
        await db.close()

    if not runs:
        print("No runs found.")
        return 0
    for r in runs:
        print(
            f"{r.run_id}  {r.pipeline_name:<16} {r.trigger.revision[:12]:<12} "
            f"{r.status.value:<10} {r.created_at:%Y-%m-%d %H:%M:%S}"
            + (f"  {r.failure_kind}" if r.failure_kind else "")
        )
    return 0


async def _show_run(args, config) -> int:
    db, registry = await _open_registry(Path(config.runtime.data_dir))
    try:
        run = await registry.get_run(args.run_id)
    finally:
        await db.close()

    if run is None:
        print(f"Error: run {args.run_id} not found", file=sys.stderr)
        return 1
    report = RunReport.from_run(run)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(report.render_text())
    return 0


def _configure_logging(level: str, masker: SecretMasker) -> None:
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(SecretMaskingFilter(masker))


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Conveyor — build, test, gate and deploy pipeline orchestration",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conveyor init
    init_parser = subparsers.add_parser("init", help="Initialize a new Conveyor project")
    init_parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )

    # conveyor validate
    validate_parser = subparsers.add_parser("validate", help="Validate .conveyor/ configuration")
    _add_common(validate_parser)

    # conveyor run
    run_parser = subparsers.add_parser("run", help="Run a pipeline to completion")
    _add_common(run_parser)
    run_parser.add_argument("pipeline", help="Pipeline name")
    run_parser.add_argument("--revision", required=True, help="Source revision to build")
    run_parser.add_argument("--source", default="manual", help="Trigger source (default: manual)")
    run_parser.add_argument(
        "--context",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra trigger context, available as {{ context.KEY }} (repeatable)",
    )
    run_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    # conveyor runs
    runs_parser = subparsers.add_parser("runs", help="List recorded runs")
    _add_common(runs_parser)
    runs_parser.add_argument("--status", choices=[s.value for s in PipelineRunStatus])
    runs_parser.add_argument("--pipeline", help="Only runs of this pipeline")
    runs_parser.add_argument("--limit", type=int, default=20)

    # conveyor show
    show_parser = subparsers.add_parser("show", help="Show one run's report")
    _add_common(show_parser)
    show_parser.add_argument("run_id")
    show_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    # conveyor serve
    serve_parser = subparsers.add_parser("serve", help="Start the Conveyor HTTP trigger API")
    _add_common(serve_parser)
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to bind to (default: 8000)",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(EXIT_CONFIG_ERROR)

    if args.command == "init":
        _init_project(args.repo_root)
        return

    masker = SecretMasker()
    _configure_logging(args.log_level, masker)

    if args.command == "serve":
        conveyor_dir = args.repo_root / ".conveyor"
        if not conveyor_dir.exists():
            print(f"Error: .conveyor/ directory not found at {conveyor_dir}", file=sys.stderr)
            print("Run 'conveyor init' to create one, or specify --repo-root", file=sys.stderr)
            sys.exit(EXIT_CONFIG_ERROR)

        import uvicorn

        from conveyor.server import create_app

        app = create_app(conveyor_dir, masker=masker)
        uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
        return

    if args.command == "validate":
        _validate(args)
        return

    config = _load_or_exit(args.repo_root)
    match args.command:
        case "run":
            code = asyncio.run(_run_pipeline(args, config, masker))
        case "runs":
            code = asyncio.run(_list_runs(args, config))
        case "show":
            code = asyncio.run(_show_run(args, config))
        case _:
            parser.print_help()
            code = EXIT_CONFIG_ERROR
    sys.exit(code)


if __name__ == "__main__":
    main()
