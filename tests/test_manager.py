"""
Tests for SessionManager, the assembled session lifecycle.

Tests cover:
- Login, persistence and restore across instances
- Restore of expired and legacy sessions
- Logout and push handling through the manager
- Assembly from environment configuration
"""
import os

import pytest

from navigator_authsession.conf import SessionConfig
from navigator_authsession.errors import InvalidTransition
from navigator_authsession.manager import SessionManager, build_key_provider
from navigator_authsession.push import PushResult
from navigator_authsession.records import SessionRecord, SessionState
from navigator_authsession.vault import (
    SESSION_BLOB_KEY,
    FileKeyValueStore,
    KeyFileProvider,
    LEGACY_KEYS,
)


@pytest.fixture
def config(tmp_path):
    return SessionConfig(store_path=str(tmp_path / "session.json"), stepup_ttl=60)


@pytest.fixture
def make_manager(config, identity, store, key_provider):
    def factory(**overrides):
        options = {
            "config": config,
            "identity": identity,
            "store": store,
            "key_provider": key_provider,
        }
        options.update(overrides)
        return SessionManager.from_config(**options)
    return factory


@pytest.mark.asyncio
class TestLifecycle:

    async def test_login_persist_reload(self, make_manager, record):
        manager = make_manager()
        assert await manager.login(record) is True
        assert manager.is_valid() is True
        await manager.close()

        restarted = make_manager()
        assert await restarted.restore() == record
        assert restarted.state == SessionState.ACTIVE
        assert restarted.is_valid() is True
        await restarted.close()

    async def test_restore_without_session(self, make_manager):
        manager = make_manager()
        assert await manager.restore() is None
        assert manager.state == SessionState.UNAUTHENTICATED

    async def test_restore_expired_session_clears(self, make_manager, vault, store):
        vault.persist(SessionRecord(token="T", secret="S", expiration_time=1))
        manager = make_manager()
        assert await manager.restore() is None
        assert manager.state == SessionState.UNAUTHENTICATED
        assert store.get(SESSION_BLOB_KEY) is None

    async def test_restore_migrates_legacy_session(self, make_manager, store):
        store.put("session.Token", b"LT")
        store.put("session.Secret", b"LS")
        store.put("session.ExpirationTime", b"0")
        manager = make_manager()
        record = await manager.restore()
        assert record.token == "LT"
        assert manager.is_valid() is True
        assert not any(store.contains(key) for key in LEGACY_KEYS)

    async def test_adopt_response(self, make_manager):
        manager = make_manager()
        adopted = await manager.adopt_response({
            "errorCode": 0,
            "sessionInfo": {"sessionToken": "T5", "sessionSecret": "S5", "expires_in": 0},
        })
        assert adopted is True
        assert manager.state_machine.record.token == "T5"
        assert await manager.adopt_response({"errorCode": 0}) is False

    async def test_logout(self, make_manager, store, observer, record):
        manager = make_manager()
        manager.subscribe(observer)
        await manager.login(record)
        await manager.logout()
        assert manager.state == SessionState.UNAUTHENTICATED
        assert store.get(SESSION_BLOB_KEY) is None
        assert observer.invalidations == []

    async def test_login_rejected_while_step_up_pending(self, make_manager, record, exchanged_record):
        manager = make_manager()
        await manager.login(record)
        await manager.state_machine.request_step_up()
        with pytest.raises(InvalidTransition):
            await manager.login(exchanged_record)
        assert manager.state == SessionState.PENDING_STEP_UP
        assert manager.state_machine.record is record
        await manager.close()

    async def test_push_deny_stops_verifier(self, make_manager, config, record):
        manager = make_manager(config=config.model_copy(update={"verification_interval": 10}))
        await manager.login(record)
        assert manager.verifier.running is True
        ticket = await manager.state_machine.request_step_up()
        result = await manager.handle_push(
            {"mode": "verify", "action": "deny", "ticketId": ticket.id}
        )
        assert result == PushResult.DENIED
        assert manager.state == SessionState.INVALID
        assert manager.verifier.running is False


class TestFromConfig:

    def test_identity_url_required(self, config):
        with pytest.raises(ValueError):
            SessionManager.from_config(config)

    def test_key_file_created_without_device_secret(self, config):
        provider = build_key_provider(config)
        handle = provider.get_or_create_key()
        assert handle.key_id.startswith("file:")
        assert os.path.exists(f"{config.store_path}.key")

    def test_configured_key_file_preferred(self, config, tmp_path):
        key_path = str(tmp_path / "device.key")
        KeyFileProvider(key_path, create=True).get_or_create_key()
        provider = build_key_provider(
            config.model_copy(update={"key_file": key_path, "device_secret": "x"})
        )
        assert provider.get_or_create_key().key_id.startswith("file:")

    def test_device_secret_fallback(self, config):
        provider = build_key_provider(config.model_copy(update={"device_secret": "x"}))
        assert provider.get_or_create_key().key_id.startswith("soft:")

    @pytest.mark.asyncio
    async def test_from_environment(self, monkeypatch, tmp_path, identity, record):
        store_path = str(tmp_path / "env-session.json")
        monkeypatch.setenv("AUTHSESSION_STORE_PATH", store_path)
        monkeypatch.setenv("AUTHSESSION_DEVICE_SECRET", "env-device-secret")
        monkeypatch.setenv("AUTHSESSION_IDENTITY_URL", "http://identity.invalid")
        manager = SessionManager.from_config()
        await manager.login(record)
        await manager.close()

        restored = SessionManager.from_config(identity=identity)
        assert await restored.restore() == record
        assert FileKeyValueStore(store_path).contains(SESSION_BLOB_KEY)
