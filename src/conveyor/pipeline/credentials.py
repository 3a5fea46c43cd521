"""Credential broker — resolves logical credential references at point of need.

The broker resolves a :class:`CredentialRef` against a pluggable
:class:`SecretStore` immediately before the stage that needs it. Nothing is
cached: every call goes back to the store, and the resolved value is dropped
(``revoke()``) when the stage invocation ends.

Resolved values never appear in ``repr()`` or in log output. The broker
registers every value it hands out with a :class:`SecretMasker`; attach
:class:`SecretMaskingFilter` to a logging handler to redact them.

Request/response cycle:
  1. Runner opens ``broker.scoped(stage.credentials)`` before invocation.
  2. Broker fetches each reference, validates its shape, registers it for masking.
  3. Runner passes ``scope.env`` to the executor.
  4. On exit every credential is revoked and unregistered.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from collections.abc import Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Protocol, runtime_checkable

import yaml

from conveyor.pipeline.errors import CredentialResolutionFailure
from conveyor.pipeline.models import CredentialBinding, CredentialKind, CredentialRef

logger = logging.getLogger(__name__)

MASK = "***"


# ── Masking ──────────────────────────────────────────────────────────────────


class SecretMasker:
    """Set of live secret strings that must be redacted from any output."""

    def __init__(self) -> None:
        self._secrets: dict[str, int] = {}

    def add(self, secret: str) -> None:
        if secret:
            self._secrets[secret] = self._secrets.get(secret, 0) + 1

    def discard(self, secret: str) -> None:
        count = self._secrets.get(secret, 0)
        if count <= 1:
            self._secrets.pop(secret, None)
        else:
            self._secrets[secret] = count - 1

    def __len__(self) -> int:
        return len(self._secrets)

    def mask(self, text: str) -> str:
        return mask_text(text, self._secrets.keys())


def mask_text(text: str, secrets: Iterable[str]) -> str:
    """Replace every occurrence of each secret in ``text`` with ``***``."""
    if not text:
        return text
    # Longest first so a secret that contains another is fully masked.
    for secret in sorted((s for s in secrets if s), key=len, reverse=True):
        text = text.replace(secret, MASK)
    return text


class SecretMaskingFilter(logging.Filter):
    """Logging filter that redacts live secrets from formatted messages.

    Attach to a handler::

        handler.addFilter(SecretMaskingFilter(broker.masker))
    """

    def __init__(self, masker: SecretMasker) -> None:
        super().__init__()
        self._masker = masker

    def filter(self, record: logging.LogRecord) -> bool:
        if not len(self._masker):
            return True
        message = record.getMessage()
        masked = self._masker.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


# ── Secret Stores ────────────────────────────────────────────────────────────


@runtime_checkable
class SecretStore(Protocol):
    """Backend a broker resolves against.

    ``fetch`` raises ``KeyError`` for an unknown id, ``OSError`` when the
    store cannot be reached and ``ValueError`` when a stored value cannot be
    decoded.
    """

    async def fetch(self, credential_id: str) -> Any:
        ...


class MappingSecretStore:
    """In-memory store, mainly for tests and embedding."""

    def __init__(self, secrets: Mapping[str, Any] | None = None) -> None:
        self._secrets = dict(secrets or {})
        self.fetch_count = 0

    def set(self, credential_id: str, value: Any) -> None:
        self._secrets[credential_id] = value

    async def fetch(self, credential_id: str) -> Any:
        self.fetch_count += 1
        return self._secrets[credential_id]


class EnvSecretStore:
    """Reads ``<prefix><ID>`` from the process environment.

    The id is upper-cased and non-alphanumerics become ``_``; e.g.
    ``registry-creds`` → ``CONVEYOR_SECRET_REGISTRY_CREDS``. JSON object
    values are decoded.
    """

    def __init__(self, prefix: str = "CONVEYOR_SECRET_", environ: Mapping[str, str] | None = None):
        self._prefix = prefix
        self._environ = environ

    def var_name(self, credential_id: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9]", "_", credential_id).upper()

    async def fetch(self, credential_id: str) -> Any:
        environ = self._environ if self._environ is not None else os.environ
        raw = environ[self.var_name(credential_id)]
        return _maybe_json(raw)


class FileSecretStore:
    """Reads ``<directory>/<id>.yaml`` (or ``.yml`` / ``.json``).

    A missing directory means the store is unreachable (``OSError``); a missing
    file means the id is unknown (``KeyError``); a file that does not parse
    raises ``ValueError`` without echoing its contents.
    """

    def __init__(self, directory: Path | str) -> None:
        self._directory = Path(directory)

    async def fetch(self, credential_id: str) -> Any:
        return await asyncio.to_thread(self._read, credential_id)

    def _read(self, credential_id: str) -> Any:
        if not self._directory.is_dir():
            raise FileNotFoundError(f"Secret directory not found: {self._directory}")
        if "/" in credential_id or "\\" in credential_id or credential_id.startswith("."):
            raise KeyError(credential_id)
        for suffix in (".yaml", ".yml", ".json"):
            path = self._directory / f"{credential_id}{suffix}"
            if path.is_file():
                with open(path) as f:
                    try:
                        return yaml.safe_load(f)
                    except yaml.YAMLError:
                        raise ValueError(f"Unreadable secret file: {path.name}") from None
        raise KeyError(credential_id)


def _maybe_json(raw: str) -> Any:
    stripped = raw.strip()
    if stripped.startswith("{"):
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return raw
    return raw


# ── Resolved Credential ──────────────────────────────────────────────────────


class ResolvedCredential:
    """A resolved secret, valid until :meth:`revoke` is called.

    The value is only reachable through :attr:`value`; ``repr``/``str`` are
    masked.
    """

    __slots__ = ("id", "kind", "_value", "_on_revoke")

    def __init__(self, ref: CredentialRef, value: Any, on_revoke: Any = None) -> None:
        self.id = ref.id
        self.kind = ref.kind
        self._value = value
        self._on_revoke = on_revoke

    @property
    def revoked(self) -> bool:
        return self._value is None

    @property
    def value(self) -> Any:
        if self._value is None:
            raise RuntimeError(f"Credential '{self.id}' has been revoked")
        return self._value

    def secret_strings(self) -> list[str]:
        """Every string that must be masked for this credential."""
        if self._value is None:
            return []
        return _secret_strings(self.kind, self._value)

    def to_env(self, name: str) -> dict[str, str]:
        """Render the credential as process-level environment variables."""
        value = self.value
        match self.kind:
            case CredentialKind.USERNAME_PASSWORD:
                return {
                    f"{name}_USERNAME": value["username"],
                    f"{name}_PASSWORD": value["password"],
                }
            case CredentialKind.CONFIG:
                rendered = value if isinstance(value, str) else json.dumps(value, sort_keys=True)
                return {name: rendered}
            case _:
                return {name: value}

    def revoke(self) -> None:
        if self._value is None:
            return
        if self._on_revoke is not None:
            self._on_revoke(self)
        self._value = None

    def __repr__(self) -> str:
        state = "revoked" if self._value is None else MASK
        return f"ResolvedCredential(id={self.id!r}, kind={self.kind.value!r}, value={state})"

    __str__ = __repr__


def _secret_strings(kind: CredentialKind, value: Any) -> list[str]:
    match kind:
        case CredentialKind.USERNAME_PASSWORD:
            return [str(value.get("password", ""))]
        case CredentialKind.CONFIG:
            if isinstance(value, str):
                return [value]
            rendered = json.dumps(value, sort_keys=True)
            leaves = [str(v) for v in _leaf_values(value) if isinstance(v, str) and len(v) >= 4]
            return [rendered, *leaves]
        case _:
            return [str(value)]


def _leaf_values(value: Any) -> Iterable[Any]:
    if isinstance(value, Mapping):
        for v in value.values():
            yield from _leaf_values(v)
    elif isinstance(value, list):
        for v in value:
            yield from _leaf_values(v)
    else:
        yield value


# ── Broker ───────────────────────────────────────────────────────────────────


class CredentialScope:
    """Credentials resolved for one stage invocation."""

    def __init__(self, stage: str | None) -> None:
        self.stage = stage
        self.credentials: list[ResolvedCredential] = []
        self.env: dict[str, str] = {}

    def secret_strings(self) -> list[str]:
        return [s for c in self.credentials for s in c.secret_strings()]

    def revoke_all(self) -> None:
        for cred in self.credentials:
            cred.revoke()
        self.env.clear()


class CredentialBroker:
    """Stateless-per-call broker over a :class:`SecretStore`.

    The broker never caches resolved values; every :meth:`resolve` goes back
    to the store. Failures are always fatal to the stage and never retried.
    """

    def __init__(self, store: SecretStore, *, masker: SecretMasker | None = None) -> None:
        self._store = store
        self.masker = masker if masker is not None else SecretMasker()

    async def resolve(self, ref: CredentialRef, *, stage: str | None = None) -> ResolvedCredential:
        """Resolve a reference to a scope-limited value.

        Raises:
            CredentialResolutionFailure: unknown id, unreachable store,
                undecodable value, or a value that does not match ``ref.kind``.
        """
        try:
            raw = await self._store.fetch(ref.id)
        except KeyError:
            raise CredentialResolutionFailure(ref.id, "unknown reference", stage=stage) from None
        except OSError as exc:
            raise CredentialResolutionFailure(
                ref.id, f"secret store unreachable ({exc.__class__.__name__})", stage=stage
            ) from exc
        except ValueError:
            raise CredentialResolutionFailure(ref.id, "unreadable secret", stage=stage) from None

        value = _normalize(ref, raw, stage)
        cred = ResolvedCredential(ref, value, on_revoke=self._unregister)
        for secret in cred.secret_strings():
            self.masker.add(secret)
        logger.info("Resolved credential '%s' (%s) for stage %s", ref.id, ref.kind.value, stage)
        return cred

    @asynccontextmanager
    async def scoped(
        self, bindings: Iterable[CredentialBinding], *, stage: str | None = None
    ) -> AsyncIterator[CredentialScope]:
        """Resolve every binding for one invocation; revoke them all on exit."""
        scope = CredentialScope(stage)
        try:
            for binding in bindings:
                cred = await self.resolve(binding.ref, stage=stage)
                scope.credentials.append(cred)
                scope.env.update(cred.to_env(binding.env))
            yield scope
        finally:
            scope.revoke_all()
            if scope.credentials:
                logger.debug(
                    "Revoked %d credential(s) for stage %s", len(scope.credentials), stage
                )

    def _unregister(self, cred: ResolvedCredential) -> None:
        for secret in cred.secret_strings():
            self.masker.discard(secret)


def _normalize(ref: CredentialRef, raw: Any, stage: str | None) -> Any:
    """Validate that ``raw`` has the shape ``ref.kind`` expects."""
    if raw is None or raw == "":
        raise CredentialResolutionFailure(ref.id, "empty value", stage=stage)

    match ref.kind:
        case CredentialKind.TOKEN:
            if isinstance(raw, Mapping):
                raw = raw.get("token")
            if not isinstance(raw, str) or not raw:
                raise CredentialResolutionFailure(ref.id, "expected an opaque token", stage=stage)
            return raw
        case CredentialKind.USERNAME_PASSWORD:
            if isinstance(raw, str) and ":" in raw:
                username, _, password = raw.partition(":")
                raw = {"username": username, "password": password}
            if (
                not isinstance(raw, Mapping)
                or not isinstance(raw.get("username"), str)
                or not isinstance(raw.get("password"), str)
                or not raw["username"]
                or not raw["password"]
            ):
                raise CredentialResolutionFailure(
                    ref.id, "expected a username/password pair", stage=stage
                )
            return {"username": raw["username"], "password": raw["password"]}
        case CredentialKind.CONFIG:
            if not isinstance(raw, (Mapping, str)):
                raise CredentialResolutionFailure(
                    ref.id, "expected a structured config blob", stage=stage
                )
            return dict(raw) if isinstance(raw, Mapping) else raw
    raise CredentialResolutionFailure(ref.id, f"unsupported kind {ref.kind}", stage=stage)
