"""TTLock cloud API client."""

import asyncio
import hashlib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from studio_access.config import Settings
from studio_access.core.errors import GatewayError

logger = logging.getLogger(__name__)

# Vendor error codes meaning the access token is no longer valid
TOKEN_ERRCODES = {10003, 10004}

# Passcode was added through the gateway rather than over bluetooth
ADD_TYPE_GATEWAY = 2
DELETE_TYPE_GATEWAY = 2


@dataclass
class LockStatus:
    """Connectivity and battery of a lock."""

    lock_id: str
    online: bool
    battery_level: Optional[int] = None


@dataclass
class AccessEvent:
    """A single entry from a lock's access log."""

    record_id: str
    lock_id: str
    occurred_at: datetime
    success: bool
    passcode: Optional[str] = None
    record_type: Optional[int] = None
    username: Optional[str] = None


@dataclass
class _Token:
    access_token: str
    expires_at: float  # monotonic seconds


def _to_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _from_millis(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class TTLockClient:
    """Client for the TTLock Open API.

    All outbound calls are serialized and spaced at least ``min_interval``
    seconds apart to stay under the vendor rate limits. Transport errors,
    HTTP 429 and 5xx responses are retried with a linear backoff.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        username: str,
        password: str,
        base_url: str = "https://euapi.ttlock.com",
        timeout: float = 10.0,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        min_interval: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            client_id: TTLock developer app client id
            client_secret: TTLock developer app secret
            username: TTLock account username
            password: TTLock account password (sent MD5-hashed)
            base_url: Regional API root
            timeout: Per-request timeout in seconds
            max_retries: Retries for transient failures
            retry_backoff: Seconds added to the wait for each retry
            min_interval: Minimum gap between consecutive requests
            transport: Optional httpx transport (used for testing)
        """
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id
        self._client_secret = client_secret
        self._username = username
        self._password_md5 = hashlib.md5(password.encode()).hexdigest()
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.min_interval = min_interval
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._token: Optional[_Token] = None
        self._request_lock = asyncio.Lock()
        self._last_request_at = 0.0

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["TTLockClient"]:
        """Build a client, or None when credentials are not configured."""
        if not settings.gateway_configured:
            logger.warning("TTLock credentials not configured, passcodes will not be synced")
            return None
        return cls(
            client_id=settings.ttlock_client_id,
            client_secret=settings.ttlock_client_secret,
            username=settings.ttlock_username,
            password=settings.ttlock_password,
            base_url=settings.ttlock_base_url,
            timeout=settings.gateway_timeout_seconds,
            max_retries=settings.gateway_max_retries,
            retry_backoff=settings.gateway_retry_backoff_seconds,
            min_interval=settings.gateway_min_interval_seconds,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _post(self, path: str, data: dict[str, Any]) -> dict[str, Any]:
        """POST a form to the API with serialization, spacing and retries."""
        client = await self._get_client()
        attempt = 0
        while True:
            async with self._request_lock:
                wait = self.min_interval - (time.monotonic() - self._last_request_at)
                if wait > 0:
                    await asyncio.sleep(wait)
                try:
                    response = await client.post(path, data=data)
                    transient = response.status_code == 429 or response.status_code >= 500
                    error: Optional[Exception] = None
                except httpx.TransportError as e:
                    response = None
                    transient = True
                    error = e
                finally:
                    self._last_request_at = time.monotonic()

            if not transient:
                break
            if attempt >= self.max_retries:
                if error is not None:
                    raise GatewayError(f"TTLock request to {path} failed: {error}") from error
                raise GatewayError(f"TTLock request to {path} failed: HTTP {response.status_code}")
            attempt += 1
            logger.warning(
                "Transient TTLock failure on %s (attempt %d/%d): %s",
                path, attempt, self.max_retries,
                error or f"HTTP {response.status_code}",
            )
            await asyncio.sleep(self.retry_backoff * attempt)

        if response.status_code >= 400:
            raise GatewayError(f"TTLock request to {path} failed: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            raise GatewayError(f"TTLock returned a non-JSON response for {path}")
        errcode = payload.get("errcode")
        if errcode not in (None, 0):
            raise GatewayError(
                f"TTLock error {errcode}: {payload.get('errmsg', 'unknown error')}",
                errcode=errcode,
            )
        return payload

    async def authenticate(self) -> str:
        """Get an access token, reusing the cached one until shortly before expiry."""
        if self._token and self._token.expires_at > time.monotonic():
            return self._token.access_token

        payload = await self._post(
            "/oauth2/token",
            {
                "client_id": self.client_id,
                "client_secret": self._client_secret,
                "grant_type": "password",
                "username": self._username,
                "password": self._password_md5,
            },
        )
        access_token = payload.get("access_token")
        if not access_token:
            raise GatewayError("TTLock authentication returned no access token")

        expires_in = int(payload.get("expires_in", 0))
        # Refresh one minute early
        self._token = _Token(access_token, time.monotonic() + expires_in - 60)
        logger.info("TTLock authentication successful, token expires in %d seconds", expires_in)
        return access_token

    async def _call(self, path: str, data: dict[str, Any]) -> dict[str, Any]:
        """Call an authenticated endpoint, re-authenticating once on a stale token."""
        for attempt in range(2):
            token = await self.authenticate()
            body = {
                "clientId": self.client_id,
                "accessToken": token,
                "date": str(int(time.time() * 1000)),
                **data,
            }
            try:
                return await self._post(path, body)
            except GatewayError as e:
                if e.errcode in TOKEN_ERRCODES and attempt == 0:
                    logger.info("TTLock token rejected, re-authenticating")
                    self._token = None
                    continue
                raise
        raise GatewayError(f"TTLock call to {path} failed after re-authentication")

    # Passcode operations

    async def create_passcode(
        self,
        lock_id: str,
        code: str,
        start: datetime,
        end: datetime,
        label: str,
    ) -> tuple[str, str]:
        """Create a time-bounded passcode on a lock.

        Args:
            lock_id: TTLock lock id
            code: Requested numeric passcode
            start: Instant the passcode becomes valid
            end: Instant the passcode stops working
            label: Name shown in the TTLock app

        Returns:
            Tuple of (credential_id, passcode) as accepted by the vendor
        """
        payload = await self._call(
            "/v3/keyboardPwd/add",
            {
                "lockId": lock_id,
                "keyboardPwd": code,
                "keyboardPwdName": label,
                "startDate": str(_to_millis(start)),
                "endDate": str(_to_millis(end)),
                "addType": str(ADD_TYPE_GATEWAY),
            },
        )
        credential_id = payload.get("keyboardPwdId")
        if not credential_id:
            raise GatewayError(f"Unexpected TTLock response: {payload}")
        return str(credential_id), str(payload.get("keyboardPwd") or code)

    async def delete_passcode(self, lock_id: str, credential_id: str) -> None:
        """Delete a passcode from a lock."""
        await self._call(
            "/v3/keyboardPwd/delete",
            {
                "lockId": lock_id,
                "keyboardPwdId": credential_id,
                "deleteType": str(DELETE_TYPE_GATEWAY),
            },
        )

    # Monitoring

    async def get_lock_status(self, lock_id: str) -> LockStatus:
        """Get connectivity and battery level of a lock."""
        payload = await self._call("/v3/lock/detail", {"lockId": lock_id})
        battery = payload.get("electricQuantity")
        return LockStatus(
            lock_id=lock_id,
            online=bool(payload.get("isConnected")),
            battery_level=int(battery) if battery is not None else None,
        )

    async def get_access_log(
        self, lock_id: str, start: datetime, end: datetime, page_size: int = 100
    ) -> list[AccessEvent]:
        """Get unlock records for a lock between two instants."""
        payload = await self._call(
            "/v3/lockRecord/list",
            {
                "lockId": lock_id,
                "startDate": str(_to_millis(start)),
                "endDate": str(_to_millis(end)),
                "pageNo": "1",
                "pageSize": str(page_size),
            },
        )
        events = []
        for record in payload.get("list", []):
            events.append(AccessEvent(
                record_id=str(record.get("recordId", "")),
                lock_id=lock_id,
                occurred_at=_from_millis(record.get("lockDate", 0)),
                success=record.get("success") == 1,
                passcode=record.get("keyboardPwd") or None,
                record_type=record.get("recordType"),
                username=record.get("username"),
            ))
        return events

    async def health_check(self) -> bool:
        """Check that the API accepts our credentials."""
        try:
            await self.authenticate()
            return True
        except GatewayError:
            return False
