"""
AuthSession Configuration — environment loading and validated settings.

Reads settings from environment variables:
    AUTHSESSION_VERIFICATION_INTERVAL = <minutes, 0 disables verification>
    AUTHSESSION_STEPUP_TTL = <seconds a step-up ticket stays pending>
    AUTHSESSION_STORE_PATH = <path of the persistent key-value file>
    AUTHSESSION_KEY_FILE = <path of a 32-byte secure key file>
    AUTHSESSION_DEVICE_SECRET = <seed for the software key fallback>
    AUTHSESSION_MASTER_KEY_v{N} = <base64-encoded 32-byte key>
    AUTHSESSION_IDENTITY_URL = <identity service base url>
    AUTHSESSION_API_KEY = <application key sent to the identity service>
    AUTHSESSION_HTTP_TIMEOUT = <seconds per identity request>
    AUTHSESSION_APPROVE_LABELS = <comma-separated approve action labels>
    AUTHSESSION_DENY_LABELS = <comma-separated deny action labels>
    AUTHSESSION_CIPHER_BACKEND = <aesgcm (default) or chacha20>

Security Note:
    Never log key material. Only log key IDs and version numbers.
"""
import os
import re
import base64
import secrets
import logging
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger("navigator.authsession")

_KEY_ENV_PATTERN = re.compile(r"^AUTHSESSION_MASTER_KEY_v(\d+)$")

DEFAULT_STORE_PATH = os.path.join("~", ".navigator", "authsession.json")
DEFAULT_APPROVE_LABELS = ("approve",)
DEFAULT_DENY_LABELS = ("deny",)


def load_master_keys() -> dict[int, bytes]:
    """Load master keys from AUTHSESSION_MASTER_KEY_v{N} environment variables.

    Each env var value must be base64-encoded and decode to exactly 32 bytes.

    Returns:
        Mapping of key version (int) to raw 32-byte key. Empty if none set.

    Raises:
        ValueError: If a key does not decode to exactly 32 bytes.
    """
    keys: dict[int, bytes] = {}
    for name, value in os.environ.items():
        match = _KEY_ENV_PATTERN.match(name)
        if match:
            version = int(match.group(1))
            key_bytes = base64.b64decode(value)
            if len(key_bytes) != 32:
                raise ValueError(
                    f"{name} must decode to exactly 32 bytes, "
                    f"got {len(key_bytes)}"
                )
            keys[version] = key_bytes
    logger.debug("Loaded %d master key version(s): %s", len(keys), sorted(keys.keys()))
    return keys


def generate_master_key() -> str:
    """Generate a random 32-byte master key and return as base64 string.

    This is a utility for operators to generate new keys.

    Returns:
        Base64-encoded 32-byte key string.
    """
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii")


def _split_labels(raw: Optional[str], default: tuple[str, ...]) -> tuple[str, ...]:
    if not raw:
        return default
    return tuple(label.strip() for label in raw.split(",") if label.strip())


class SessionConfig(BaseModel):
    """Validated session lifecycle configuration."""

    verification_interval: float = Field(default=0, ge=0)
    stepup_ttl: int = Field(default=120, ge=1)
    store_path: str = Field(default=DEFAULT_STORE_PATH)
    key_file: Optional[str] = None
    device_secret: Optional[str] = None
    identity_url: Optional[str] = None
    api_key: Optional[str] = None
    http_timeout: float = Field(default=10.0, gt=0)
    approve_labels: tuple[str, ...] = DEFAULT_APPROVE_LABELS
    deny_labels: tuple[str, ...] = DEFAULT_DENY_LABELS

    @field_validator("store_path")
    @classmethod
    def expand_store_path(cls, v: str) -> str:
        """Expand ``~`` in the store path."""
        return os.path.expanduser(v)

    @model_validator(mode="after")
    def validate_labels(self) -> "SessionConfig":
        """Ensure approve and deny labels are disjoint and non-empty."""
        if not self.approve_labels or not self.deny_labels:
            raise ValueError("approve_labels and deny_labels cannot be empty")
        overlap = set(self.approve_labels) & set(self.deny_labels)
        if overlap:
            raise ValueError(
                f"labels cannot be both approve and deny: {sorted(overlap)}"
            )
        return self

    @classmethod
    def from_env(cls) -> "SessionConfig":
        """Create SessionConfig by loading values from environment.

        Returns:
            Populated SessionConfig instance.
        """
        env = os.environ
        return cls(
            verification_interval=float(
                env.get("AUTHSESSION_VERIFICATION_INTERVAL", "0")
            ),
            stepup_ttl=int(env.get("AUTHSESSION_STEPUP_TTL", "120")),
            store_path=env.get("AUTHSESSION_STORE_PATH", DEFAULT_STORE_PATH),
            key_file=env.get("AUTHSESSION_KEY_FILE"),
            device_secret=env.get("AUTHSESSION_DEVICE_SECRET"),
            identity_url=env.get("AUTHSESSION_IDENTITY_URL"),
            api_key=env.get("AUTHSESSION_API_KEY"),
            http_timeout=float(env.get("AUTHSESSION_HTTP_TIMEOUT", "10")),
            approve_labels=_split_labels(
                env.get("AUTHSESSION_APPROVE_LABELS"), DEFAULT_APPROVE_LABELS
            ),
            deny_labels=_split_labels(
                env.get("AUTHSESSION_DENY_LABELS"), DEFAULT_DENY_LABELS
            ),
        )
