"""
SessionManager — composition root helper for the session lifecycle.

Wires the vault, state machine, verifier and push gateway together with
explicit constructor injection; the embedding application owns its
lifetime. There is no process-global instance.
"""
import asyncio
import logging
from typing import Any, Optional
from collections.abc import Mapping

from .conf import SessionConfig
from .identity import HTTPIdentityService, IdentityService
from .push import ActionLabels, PushApprovalGateway, PushResult
from .records import SessionRecord, SessionState
from .state import SessionObserver, SessionStateMachine
from .verifier import Verifier
from .vault import (
    CredentialVault,
    EnvMasterKeyProvider,
    FallbackKeyProvider,
    FileKeyValueStore,
    KeyFileProvider,
    PersistentKeyValueStore,
    SecureKeyProvider,
    SoftwareKeyProvider,
)

logger = logging.getLogger("navigator.authsession")


class _VerifierStopper:
    """Stops background verification once the session is invalidated."""

    def __init__(self, verifier: Verifier):
        self._verifier = verifier

    def on_invalidated(self, reason: str) -> None:
        self._verifier.stop()

    def on_prompt_suppress_requested(
        self,
        ticket_id: Optional[str],
        notification_id: Optional[str] = None
    ) -> None:
        pass


def build_key_provider(config: SessionConfig) -> SecureKeyProvider:
    """Secure key file first, then environment master keys, then software."""
    providers: list[SecureKeyProvider] = []
    if config.key_file:
        providers.append(KeyFileProvider(config.key_file))
    providers.append(EnvMasterKeyProvider())
    if config.device_secret:
        providers.append(SoftwareKeyProvider(config.device_secret))
    else:
        providers.append(KeyFileProvider(f"{config.store_path}.key", create=True))
    return FallbackKeyProvider(*providers)


class SessionManager:
    """Login, logout and restore on top of the session lifecycle."""

    def __init__(
        self,
        vault: CredentialVault,
        state_machine: SessionStateMachine,
        verifier: Verifier,
        gateway: PushApprovalGateway,
    ):
        self.vault = vault
        self.state_machine = state_machine
        self.verifier = verifier
        self.gateway = gateway
        state_machine.subscribe(_VerifierStopper(verifier))

    @classmethod
    def from_config(
        cls,
        config: Optional[SessionConfig] = None,
        identity: Optional[IdentityService] = None,
        store: Optional[PersistentKeyValueStore] = None,
        key_provider: Optional[SecureKeyProvider] = None,
    ) -> "SessionManager":
        """Assemble the default stack from configuration.

        Raises:
            ValueError: If no identity service is given and
                ``identity_url`` is not configured.
        """
        if config is None:
            config = SessionConfig.from_env()
        if store is None:
            store = FileKeyValueStore(config.store_path)
        if key_provider is None:
            key_provider = build_key_provider(config)
        vault = CredentialVault(store, key_provider)
        state_machine = SessionStateMachine(vault, stepup_ttl=config.stepup_ttl)
        if identity is None:
            if not config.identity_url:
                raise ValueError("identity_url is not configured")
            identity = HTTPIdentityService(
                config.identity_url,
                session_provider=lambda: state_machine.record,
                api_key=config.api_key,
                timeout=config.http_timeout,
            )
        verifier = Verifier(
            identity, state_machine, store, interval=config.verification_interval
        )
        gateway = PushApprovalGateway(
            state_machine,
            identity,
            ActionLabels(config.approve_labels, config.deny_labels),
        )
        return cls(vault, state_machine, verifier, gateway)

    @property
    def state(self) -> SessionState:
        return self.state_machine.state

    def is_valid(self) -> bool:
        return self.state_machine.is_valid()

    def subscribe(self, observer: SessionObserver) -> None:
        self.state_machine.subscribe(observer)

    def _bind(self) -> None:
        self.gateway.bind_loop(asyncio.get_running_loop())

    async def restore(self) -> Optional[SessionRecord]:
        """Load a persisted session at startup.

        An expired record is cleared and the session stays unauthenticated.
        """
        self._bind()
        record = await self.state_machine.restore()
        if record is not None:
            self.verifier.start()
        return record

    async def login(self, record: SessionRecord) -> bool:
        """Adopt a freshly issued session; returns False if not persisted.

        Raises:
            InvalidRecord: If the record is already expired.
            InvalidTransition: If a step-up verification is pending.
        """
        self._bind()
        persisted = await self.state_machine.login(record)
        self.verifier.start()
        return persisted

    async def adopt_response(self, payload: Mapping[str, Any]) -> bool:
        """Log in from an identity-service response carrying session info.

        Returns:
            True if the response carried a session that was adopted.
        """
        record = SessionRecord.from_response(payload)
        if record is None:
            return False
        await self.login(record)
        return True

    async def handle_push(self, payload: Any) -> PushResult:
        return await self.gateway.handle(payload)

    async def logout(self) -> None:
        self.verifier.stop()
        await self.state_machine.logout()

    async def close(self) -> None:
        """Stop background work; the persisted session is kept."""
        self.verifier.stop()
        await self.state_machine.close()
