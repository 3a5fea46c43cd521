"""Tests for the credential broker, secret stores and secret masking."""

from __future__ import annotations

import json
import logging

import pytest

from conveyor.pipeline.credentials import (
    MASK,
    CredentialBroker,
    EnvSecretStore,
    FileSecretStore,
    MappingSecretStore,
    SecretMasker,
    SecretMaskingFilter,
    mask_text,
)
from conveyor.pipeline.errors import CredentialResolutionFailure
from conveyor.pipeline.models import CredentialBinding, CredentialKind, CredentialRef


class UnreachableStore:
    async def fetch(self, credential_id: str):
        raise ConnectionRefusedError("vault down")


@pytest.fixture
def store():
    return MappingSecretStore(
        {
            "deploy-token": "tok-123456",
            "registry": {"username": "ci", "password": "hunter2-pass"},
            "kubeconfig": {"cluster": "prod", "token": "kube-secret-token"},
        }
    )


@pytest.fixture
def broker(store):
    return CredentialBroker(store)


class TestResolve:
    async def test_resolves_token(self, broker):
        cred = await broker.resolve(CredentialRef(id="deploy-token"), stage="deploy")
        assert cred.value == "tok-123456"
        assert cred.to_env("DEPLOY_TOKEN") == {"DEPLOY_TOKEN": "tok-123456"}

    async def test_resolves_username_password(self, broker):
        ref = CredentialRef(id="registry", kind=CredentialKind.USERNAME_PASSWORD)
        cred = await broker.resolve(ref)
        assert cred.to_env("REG") == {"REG_USERNAME": "ci", "REG_PASSWORD": "hunter2-pass"}

    async def test_resolves_config_blob_as_json(self, broker):
        ref = CredentialRef(id="kubeconfig", kind=CredentialKind.CONFIG)
        cred = await broker.resolve(ref)
        env = cred.to_env("KUBECONFIG_JSON")
        assert json.loads(env["KUBECONFIG_JSON"]) == {"cluster": "prod", "token": "kube-secret-token"}

    async def test_unknown_reference(self, broker):
        with pytest.raises(CredentialResolutionFailure, match="unknown reference") as exc_info:
            await broker.resolve(CredentialRef(id="nope"), stage="build")
        assert exc_info.value.credential_id == "nope"
        assert exc_info.value.stage == "build"
        assert exc_info.value.kind == "credential_resolution_failure"

    async def test_unreachable_store(self):
        broker = CredentialBroker(UnreachableStore())
        with pytest.raises(CredentialResolutionFailure, match="unreachable"):
            await broker.resolve(CredentialRef(id="deploy-token"))

    async def test_wrong_shape(self, broker):
        ref = CredentialRef(id="deploy-token", kind=CredentialKind.USERNAME_PASSWORD)
        with pytest.raises(CredentialResolutionFailure, match="username/password"):
            await broker.resolve(ref)

    async def test_failure_message_never_contains_value(self, broker):
        ref = CredentialRef(id="deploy-token", kind=CredentialKind.USERNAME_PASSWORD)
        with pytest.raises(CredentialResolutionFailure) as exc_info:
            await broker.resolve(ref)
        assert "tok-123456" not in str(exc_info.value)

    async def test_no_caching(self, broker, store):
        await broker.resolve(CredentialRef(id="deploy-token"))
        store.set("deploy-token", "tok-rotated")
        cred = await broker.resolve(CredentialRef(id="deploy-token"))
        assert cred.value == "tok-rotated"
        assert store.fetch_count == 2


class TestRevocation:
    async def test_revoke_drops_value(self, broker):
        cred = await broker.resolve(CredentialRef(id="deploy-token"))
        cred.revoke()
        assert cred.revoked
        with pytest.raises(RuntimeError, match="revoked"):
            _ = cred.value

    async def test_repr_is_masked(self, broker):
        cred = await broker.resolve(CredentialRef(id="deploy-token"))
        assert "tok-123456" not in repr(cred)
        assert "tok-123456" not in str(cred)

    async def test_scoped_revokes_on_exit(self, broker):
        bindings = [CredentialBinding(id="deploy-token", env="TOKEN")]
        async with broker.scoped(bindings, stage="deploy") as scope:
            assert scope.env == {"TOKEN": "tok-123456"}
            assert len(broker.masker) == 1
            creds = list(scope.credentials)
        assert all(c.revoked for c in creds)
        assert scope.env == {}
        assert len(broker.masker) == 0

    async def test_scoped_revokes_on_error(self, broker):
        bindings = [CredentialBinding(id="deploy-token", env="TOKEN")]
        with pytest.raises(ValueError):
            async with broker.scoped(bindings) as scope:
                creds = list(scope.credentials)
                raise ValueError("boom")
        assert all(c.revoked for c in creds)
        assert len(broker.masker) == 0

    async def test_scoped_partial_failure_revokes_resolved(self, broker):
        bindings = [
            CredentialBinding(id="deploy-token", env="TOKEN"),
            CredentialBinding(id="missing", env="OTHER"),
        ]
        with pytest.raises(CredentialResolutionFailure):
            async with broker.scoped(bindings):
                pass
        assert len(broker.masker) == 0


class TestSecretStores:
    async def test_env_store(self):
        store = EnvSecretStore(environ={"CONVEYOR_SECRET_REGISTRY_CREDS": "abc"})
        assert await store.fetch("registry-creds") == "abc"

    async def test_env_store_decodes_json(self):
        store = EnvSecretStore(
            environ={"CONVEYOR_SECRET_REG": '{"username": "u", "password": "p"}'}
        )
        assert await store.fetch("reg") == {"username": "u", "password": "p"}

    async def test_env_store_unknown(self):
        with pytest.raises(KeyError):
            await EnvSecretStore(environ={}).fetch("missing")

    async def test_file_store(self, tmp_path):
        (tmp_path / "registry.yaml").write_text("username: ci\npassword: pw\n")
        store = FileSecretStore(tmp_path)
        assert await store.fetch("registry") == {"username": "ci", "password": "pw"}

    async def test_file_store_malformed_file(self, tmp_path):
        (tmp_path / "registry.yaml").write_text("password: [s3cr3t-value\n")
        broker = CredentialBroker(FileSecretStore(tmp_path))

        with pytest.raises(CredentialResolutionFailure, match="unreadable") as exc_info:
            await broker.resolve(CredentialRef(id="registry"), stage="deploy")

        assert exc_info.value.credential_id == "registry"
        assert "s3cr3t" not in str(exc_info.value)
        assert exc_info.value.__cause__ is None

    async def test_file_store_unknown_id(self, tmp_path):
        with pytest.raises(KeyError):
            await FileSecretStore(tmp_path).fetch("missing")

    async def test_file_store_rejects_traversal(self, tmp_path):
        with pytest.raises(KeyError):
            await FileSecretStore(tmp_path).fetch("../etc/passwd")

    async def test_file_store_missing_directory_is_unreachable(self, tmp_path):
        broker = CredentialBroker(FileSecretStore(tmp_path / "nowhere"))
        with pytest.raises(CredentialResolutionFailure, match="unreachable"):
            await broker.resolve(CredentialRef(id="registry"))


class TestMasking:
    def test_mask_text_longest_first(self):
        assert mask_text("x=abcdef y=abc", ["abc", "abcdef"]) == f"x={MASK} y={MASK}"

    def test_masker_refcount(self):
        masker = SecretMasker()
        masker.add("s3cret")
        masker.add("s3cret")
        masker.discard("s3cret")
        assert masker.mask("s3cret") == MASK
        masker.discard("s3cret")
        assert masker.mask("s3cret") == "s3cret"

    def test_logging_filter_redacts(self, caplog):
        masker = SecretMasker()
        masker.add("tok-123456")
        log = logging.getLogger("conveyor.test.masking")
        handler_filter = SecretMaskingFilter(masker)
        log.addFilter(handler_filter)
        try:
            with caplog.at_level(logging.INFO, logger="conveyor.test.masking"):
                log.info("token is %s", "tok-123456")
        finally:
            log.removeFilter(handler_filter)
        assert "tok-123456" not in caplog.text
        assert MASK in caplog.text

    async def test_broker_uses_shared_empty_masker(self, store):
        masker = SecretMasker()
        broker = CredentialBroker(store, masker=masker)
        assert broker.masker is masker

        cred = await broker.resolve(CredentialRef(id="deploy-token"))
        assert masker.mask("token tok-123456") == f"token {MASK}"
        cred.revoke()
        assert masker.mask("token tok-123456") == "token tok-123456"
