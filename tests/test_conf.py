"""Tests for SessionConfig and master key loading."""
import base64

import pytest
from pydantic import ValidationError

from navigator_authsession.conf import (
    SessionConfig,
    generate_master_key,
    load_master_keys,
)


class TestSessionConfig:

    def test_defaults(self):
        config = SessionConfig()
        assert config.verification_interval == 0
        assert config.stepup_ttl == 120
        assert config.approve_labels == ("approve",)
        assert config.deny_labels == ("deny",)
        assert "~" not in config.store_path

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("AUTHSESSION_VERIFICATION_INTERVAL", "15")
        monkeypatch.setenv("AUTHSESSION_STEPUP_TTL", "30")
        monkeypatch.setenv("AUTHSESSION_APPROVE_LABELS", "Approve, Aprobar")
        monkeypatch.setenv("AUTHSESSION_DENY_LABELS", "Deny,Rechazar")
        config = SessionConfig.from_env()
        assert config.verification_interval == 15
        assert config.stepup_ttl == 30
        assert config.approve_labels == ("Approve", "Aprobar")
        assert config.deny_labels == ("Deny", "Rechazar")

    def test_overlapping_labels_rejected(self):
        with pytest.raises(ValidationError):
            SessionConfig(approve_labels=("ok",), deny_labels=("ok", "no"))

    def test_negative_interval_rejected(self):
        with pytest.raises(ValidationError):
            SessionConfig(verification_interval=-1)


class TestMasterKeys:

    def test_load_from_environment(self, monkeypatch):
        key = generate_master_key()
        monkeypatch.setenv("AUTHSESSION_MASTER_KEY_v2", key)
        keys = load_master_keys()
        assert keys[2] == base64.b64decode(key)

    def test_wrong_length_rejected(self, monkeypatch):
        monkeypatch.setenv(
            "AUTHSESSION_MASTER_KEY_v1", base64.b64encode(b"short").decode()
        )
        with pytest.raises(ValueError):
            load_master_keys()
