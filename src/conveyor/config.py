"""Configuration loading for Conveyor.

Reads .conveyor/config.yaml and pipeline definitions from .conveyor/pipelines/.
Pydantic models validate the config schema; ``build_engine`` wires a
:class:`PipelineEngine` from a loaded config.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from conveyor.pipeline.credentials import (
    CredentialBroker,
    EnvSecretStore,
    FileSecretStore,
    SecretMasker,
    SecretStore,
)
from conveyor.pipeline.engine import PipelineEngine
from conveyor.pipeline.executor import SubprocessExecutor
from conveyor.pipeline.gates import OperatorRegistry, QualityGateEvaluator
from conveyor.pipeline.models import PipelineDefinition, QualityGateSpec
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.verifier import DeploymentVerifier, HttpHealthProbe, KubectlWorkloadProbe

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when .conveyor/ cannot be loaded or is inconsistent."""


# ── Config Models ────────────────────────────────────────────────────────────


class ProjectConfig(BaseModel):
    name: str
    description: str = ""


class RuntimeConfig(BaseModel):
    data_dir: str = ".conveyor-data"  # run database lives here
    workspace_root: str | None = None  # per-run working dirs (default: <data_dir>/workspaces)
    default_stage_timeout: int | None = 3600  # seconds; None = unbounded
    max_concurrent_runs: int = Field(default=4, ge=1)
    kubectl: str = "kubectl"

    def resolved_workspace_root(self) -> Path:
        if self.workspace_root:
            return Path(self.workspace_root)
        return Path(self.data_dir) / "workspaces"


class CredentialStoreConfig(BaseModel):
    backend: Literal["env", "file"] = "env"
    env_prefix: str = "CONVEYOR_SECRET_"
    path: str | None = None  # directory of <id>.yaml / <id>.json for backend=file


class ConveyorConfig(BaseModel):
    """Top-level Conveyor configuration (matches .conveyor/config.yaml)."""

    project: ProjectConfig
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    credentials: CredentialStoreConfig = Field(default_factory=CredentialStoreConfig)

    # Named quality gates: {name: {metric: {operator, threshold}}}
    quality_gates: dict[str, QualityGateSpec] = Field(default_factory=dict)

    # Inline pipelines; files under .conveyor/pipelines/ are merged on top
    pipelines: dict[str, PipelineDefinition] = Field(default_factory=dict)

    # Modules exposing register_operators(registry) for custom gate operators
    plugins: list[str] = Field(default_factory=list)

    @field_validator("quality_gates", mode="before")
    @classmethod
    def _flat_gate_form(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {
                name: QualityGateSpec.from_config(body or {}) if isinstance(body, dict) else body
                for name, body in v.items()
            }
        return v


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(conveyor_dir: Path) -> ConveyorConfig:
    """Load Conveyor configuration from a .conveyor/ directory.

    Args:
        conveyor_dir: Path to the .conveyor/ directory.

    Returns:
        Validated ConveyorConfig, with pipeline files merged in.

    Raises:
        FileNotFoundError: If config.yaml doesn't exist.
        ConfigError: If config or a pipeline file fails validation.
    """
    config_path = conveyor_dir / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(f"Conveyor config not found: {config_path}")

    raw = _read_yaml_mapping(config_path)
    try:
        config = ConveyorConfig(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid {config_path}: {exc}") from exc

    config.pipelines.update(load_pipeline_definitions(conveyor_dir))

    # Environment variable overrides for deployment
    data_dir = os.environ.get("CONVEYOR_DATA_DIR")
    if data_dir:
        config.runtime.data_dir = data_dir

    workspace_root = os.environ.get("CONVEYOR_WORKSPACE_ROOT")
    if workspace_root:
        config.runtime.workspace_root = workspace_root

    secret_dir = os.environ.get("CONVEYOR_SECRET_DIR")
    if secret_dir:
        config.credentials.backend = "file"
        config.credentials.path = secret_dir

    logger.info(
        "Loaded Conveyor config: project=%s, %d pipeline(s), %d gate(s)",
        config.project.name,
        len(config.pipelines),
        len(config.quality_gates),
    )
    return config


def load_pipeline_definitions(conveyor_dir: Path) -> dict[str, PipelineDefinition]:
    """Load all pipeline files from .conveyor/pipelines/.

    Returns:
        Dict mapping pipeline name (file stem) → PipelineDefinition.
    """
    pipelines_dir = conveyor_dir / "pipelines"
    definitions: dict[str, PipelineDefinition] = {}

    if not pipelines_dir.exists():
        logger.debug("No pipelines directory found at %s", pipelines_dir)
        return definitions

    files = sorted([*pipelines_dir.glob("*.yaml"), *pipelines_dir.glob("*.yml")])
    for path in files:
        raw = _read_yaml_mapping(path)
        try:
            definitions[path.stem] = PipelineDefinition(**raw)
        except ValidationError as exc:
            raise ConfigError(f"Invalid pipeline {path.name}: {exc}") from exc
        logger.info("Loaded pipeline definition: %s", path.stem)

    return definitions


def validate_config(config: ConveyorConfig) -> list[str]:
    """Cross-reference checks pydantic can't do per-model. Returns error messages."""
    errors: list[str] = []
    if not config.pipelines:
        errors.append("No pipelines defined")
    for name, defn in sorted(config.pipelines.items()):
        for gate in sorted(defn.gate_refs()):
            if gate not in config.quality_gates:
                errors.append(f"Pipeline '{name}' references unknown quality gate '{gate}'")
        if defn.stages[0].is_gate_only:
            errors.append(
                f"Pipeline '{name}', stage '{defn.stages[0].name}': gate stage has no earlier "
                "stage to take metrics from"
            )
    if config.credentials.backend == "file" and not config.credentials.path:
        errors.append("credentials.backend is 'file' but credentials.path is not set")

    try:
        operators = load_operators(config)
    except ConfigError as exc:
        errors.append(str(exc))
    else:
        for gate_name, spec in sorted(config.quality_gates.items()):
            for metric, threshold in spec.thresholds.items():
                if not operators.has(threshold.operator):
                    errors.append(
                        f"Quality gate '{gate_name}', metric '{metric}': "
                        f"unknown operator '{threshold.operator}'"
                    )
    return errors


# ── Wiring ───────────────────────────────────────────────────────────────────


def load_operators(config: ConveyorConfig) -> OperatorRegistry:
    """Built-in gate operators plus those registered by ``config.plugins``.

    Raises:
        ConfigError: If a plugin module cannot be imported or fails to register.
    """
    operators = OperatorRegistry()
    for plugin in config.plugins:
        try:
            operators.load_plugin(plugin)
        except Exception as exc:
            raise ConfigError(f"Cannot load gate operator plugin '{plugin}': {exc}") from exc
    return operators


def build_secret_store(config: CredentialStoreConfig) -> SecretStore:
    match config.backend:
        case "file":
            return FileSecretStore(config.path or "")
        case _:
            return EnvSecretStore(prefix=config.env_prefix)


def build_engine(
    config: ConveyorConfig,
    *,
    registry: RunRegistry | None = None,
    masker: SecretMasker | None = None,
) -> PipelineEngine:
    """Assemble a PipelineEngine with the default executor, broker and verifier.

    Raises:
        ConfigError: If a gate operator plugin cannot be loaded.
    """
    operators = load_operators(config)

    workspace_root = config.runtime.resolved_workspace_root()
    engine = PipelineEngine(
        executor=SubprocessExecutor(secret_prefix=config.credentials.env_prefix),
        broker=CredentialBroker(build_secret_store(config.credentials), masker=masker),
        verifier=DeploymentVerifier(
            KubectlWorkloadProbe(kubectl=config.runtime.kubectl), HttpHealthProbe()
        ),
        gates=config.quality_gates,
        evaluator=QualityGateEvaluator(operators),
        registry=registry,
        workspace_root=workspace_root,
        default_stage_timeout=config.runtime.default_stage_timeout,
        max_concurrent_runs=config.runtime.max_concurrent_runs,
    )
    for name, definition in config.pipelines.items():
        engine.add_pipeline(name, definition)
    return engine


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    """Parse a YAML file that must hold a mapping (empty file → ``{}``)."""
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Malformed YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")
    return raw
