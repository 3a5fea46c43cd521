"""Environment scrubbing for stage subprocesses.

Builds the environment dict an external tool is started with:
1. Start from the host environment.
2. Strip known secret env vars and anything matching secret-looking patterns.
3. Inject the stage's non-secret ``env`` values.
4. Inject the stage's resolved credentials (last, so they cannot be shadowed).

The result is a new dict; ``os.environ`` is never mutated.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

logger = logging.getLogger(__name__)

# Engine-level secrets that must never reach a stage tool.
SECRET_ENV_VARS: frozenset[str] = frozenset(
    {
        "CONVEYOR_API_TOKEN",
        "KUBECONFIG_CONTENT",
        "GITHUB_TOKEN",
        "GH_TOKEN",
    }
)

_SECRET_PATTERNS = frozenset(
    {
        "API_KEY",
        "SECRET_KEY",
        "PRIVATE_KEY",
        "ACCESS_TOKEN",
        "AUTH_TOKEN",
    }
)

# Keep these even though they match a pattern.
_ALLOWED = frozenset({"SSH_AUTH_SOCK"})


def build_stage_env(
    *,
    credential_env: Mapping[str, str] | None = None,
    stage_env: Mapping[str, str] | None = None,
    extra: Mapping[str, str] | None = None,
    secret_prefix: str = "CONVEYOR_SECRET_",
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Build a sanitized environment for a stage subprocess.

    Args:
        credential_env: Env rendering of the stage's resolved credentials.
        stage_env: Non-secret ``env`` values declared on the stage.
        extra: Engine-provided values (e.g. ``CONVEYOR_METRICS_FILE``).
        secret_prefix: Prefix of the env-backed secret store; all such vars
            are stripped so a stage can only see the credentials it declared.
        base_env: Environment to start from (default: ``os.environ``).
    """
    env = dict(os.environ if base_env is None else base_env)

    stripped: list[str] = []
    for key in list(env.keys()):
        key_upper = key.upper()
        if key in SECRET_ENV_VARS or (secret_prefix and key.startswith(secret_prefix)):
            del env[key]
            stripped.append(key)
            continue
        if key in _ALLOWED:
            continue
        if any(pattern in key_upper for pattern in _SECRET_PATTERNS):
            del env[key]
            stripped.append(key)

    if stripped:
        logger.debug("Env scrub: stripped %d secret vars: %s", len(stripped), ", ".join(sorted(stripped)))

    if stage_env:
        env.update(stage_env)
    if extra:
        env.update(extra)
    if credential_env:
        env.update(credential_env)
    return env
