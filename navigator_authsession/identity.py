"""
Identity Service — remote session verification and step-up token exchange.

``IdentityService`` is the contract the lifecycle consumes.
``HTTPIdentityService`` is a reference aiohttp client for a REST identity
service answering JSON bodies with an ``errorCode`` field (``0`` = success).

Error classification:
- connection failures, timeouts, gateway errors (502/503/504) and the
  service's own network error code -> ``TransientNetworkError``
- any other non-zero ``errorCode`` or HTTP error -> ``RemoteRejection``

Security Note:
    Never log session tokens, secrets or verification tokens.
"""
import asyncio
import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

import aiohttp

from .errors import RemoteRejection, TransientNetworkError
from .records import SessionRecord

logger = logging.getLogger("navigator.authsession.identity")

NETWORK_ERROR_CODE = 500026
NO_SESSION_CODE = 403005
_GATEWAY_STATUSES = frozenset({502, 503, 504})

VERIFY_ENDPOINT = "accounts.verifyLogin"
STEPUP_ENDPOINT = "accounts.auth.push.verify"


@runtime_checkable
class IdentityService(Protocol):

    async def verify_session(self) -> None:
        """Check the current session with the identity service.

        Raises:
            TransientNetworkError: The service could not be reached.
            RemoteRejection: The service rejected the session.
        """
        ...

    async def exchange_step_up_token(self, token: str) -> SessionRecord:
        """Trade an approved step-up token for a session record.

        Raises:
            TransientNetworkError: The service could not be reached.
            RemoteRejection: The service rejected the token.
        """
        ...


class HTTPIdentityService:
    """aiohttp client for the identity service.

    Args:
        base_url: service root, endpoints are appended as path segments.
        session_provider: returns the record whose token is verified.
        api_key: optional application key sent with every call.
        timeout: total timeout per request, in seconds.
        client: optional shared ``aiohttp.ClientSession``; when omitted a
            session is opened per request.
    """

    def __init__(
        self,
        base_url: str,
        session_provider: Callable[[], Optional[SessionRecord]],
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[aiohttp.ClientSession] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._session_provider = session_provider
        self._api_key = api_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._client = client

    def _url(self, endpoint: str) -> str:
        return f"{self._base_url}/{endpoint}"

    async def _post(
        self,
        client: aiohttp.ClientSession,
        endpoint: str,
        params: dict[str, str]
    ) -> dict[str, Any]:
        async with client.post(
            self._url(endpoint), data=params, timeout=self._timeout
        ) as response:
            status = response.status
            try:
                body = await response.json(content_type=None)
            except ValueError:
                body = None
        if not isinstance(body, dict):
            if status in _GATEWAY_STATUSES:
                raise TransientNetworkError(f"{endpoint}: HTTP {status}")
            raise RemoteRejection(status, f"{endpoint}: HTTP {status} without JSON body")
        if status in _GATEWAY_STATUSES and "errorCode" not in body:
            raise TransientNetworkError(f"{endpoint}: HTTP {status}")
        default_code = 0 if 200 <= status < 300 else status
        try:
            code = int(body.get("errorCode", default_code))
        except (TypeError, ValueError):
            code = default_code or -1
        if code == NETWORK_ERROR_CODE:
            raise TransientNetworkError(f"{endpoint}: network error reported")
        if code != 0:
            raise RemoteRejection(code, body.get("errorMessage"))
        return body

    async def _call(self, endpoint: str, params: dict[str, str]) -> dict[str, Any]:
        if self._api_key:
            params = {"apiKey": self._api_key, **params}
        logger.debug("Calling identity endpoint %s", endpoint)
        try:
            if self._client is not None:
                return await self._post(self._client, endpoint, params)
            async with aiohttp.ClientSession() as client:
                return await self._post(client, endpoint, params)
        except asyncio.TimeoutError as err:
            raise TransientNetworkError(f"{endpoint}: timeout") from err
        except aiohttp.ClientConnectionError as err:
            raise TransientNetworkError(f"{endpoint}: {err}") from err
        except aiohttp.ClientResponseError as err:
            raise RemoteRejection(err.status, f"{endpoint}: {err.message}") from err

    async def verify_session(self) -> None:
        record = self._session_provider()
        if record is None:
            raise RemoteRejection(NO_SESSION_CODE, "no session to verify")
        await self._call(VERIFY_ENDPOINT, {"sessionToken": record.token})

    async def exchange_step_up_token(self, token: str) -> SessionRecord:
        body = await self._call(STEPUP_ENDPOINT, {"vToken": token})
        record = SessionRecord.from_response(body)
        if record is None:
            raise RemoteRejection(NO_SESSION_CODE, "step-up response carries no session")
        return record
