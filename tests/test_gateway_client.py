import hashlib
from datetime import datetime, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from studio_access.config import Settings
from studio_access.core.errors import GatewayError
from studio_access.gateway.client import TTLockClient

START = datetime(2025, 1, 6, 10, tzinfo=timezone.utc)
END = datetime(2025, 1, 6, 12, tzinfo=timezone.utc)


class FakeTTLock:
    """Scripted TTLock API: per-path queues of responses, falling back to success."""

    def __init__(self):
        self.requests: list[tuple[str, dict]] = []
        self.scripted: dict[str, list] = {}
        self.token_counter = 0

    def script(self, path: str, *responses) -> None:
        self.scripted.setdefault(path, []).extend(responses)

    def calls(self, path: str) -> list[dict]:
        return [form for p, form in self.requests if p == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append((path, form))

        queue = self.scripted.get(path)
        if queue:
            scripted = queue.pop(0)
            if isinstance(scripted, Exception):
                raise scripted
            if isinstance(scripted, int):
                return httpx.Response(scripted, json={})
            return httpx.Response(200, json=scripted)

        if path == "/oauth2/token":
            self.token_counter += 1
            return httpx.Response(200, json={
                "access_token": f"token-{self.token_counter}",
                "expires_in": 7776000,
            })
        if path == "/v3/keyboardPwd/add":
            return httpx.Response(200, json={"keyboardPwdId": 555})
        if path == "/v3/lock/detail":
            return httpx.Response(200, json={"isConnected": 1, "hasGateway": 1, "electricQuantity": 73})
        if path == "/v3/lockRecord/list":
            return httpx.Response(200, json={"list": [
                {
                    "recordId": 9,
                    "lockDate": 1736157600000,
                    "success": 1,
                    "keyboardPwd": "123456",
                    "recordType": 4,
                    "username": "guest",
                },
            ]})
        return httpx.Response(200, json={"errcode": 0, "errmsg": "none error message"})


@pytest.fixture
def api() -> FakeTTLock:
    return FakeTTLock()


@pytest.fixture
async def client(api):
    client = TTLockClient(
        client_id="cid",
        client_secret="csecret",
        username="owner@example.com",
        password="hunter2",
        base_url="https://ttlock.test",
        max_retries=2,
        retry_backoff=0,
        min_interval=0,
        transport=httpx.MockTransport(api.handler),
    )
    yield client
    await client.close()


async def test_authenticates_with_md5_password_and_caches_token(client, api):
    await client.create_passcode("lock-1", "123456", START, END, "Booking-1")
    await client.create_passcode("lock-2", "123456", START, END, "Booking-1")

    token_calls = api.calls("/oauth2/token")
    assert len(token_calls) == 1
    assert token_calls[0]["password"] == hashlib.md5(b"hunter2").hexdigest()
    assert token_calls[0]["grant_type"] == "password"
    assert {c["accessToken"] for c in api.calls("/v3/keyboardPwd/add")} == {"token-1"}


async def test_create_passcode_sends_validity_window(client, api):
    credential_id, code = await client.create_passcode("lock-1", "654321", START, END, "Booking-7")

    assert (credential_id, code) == ("555", "654321")
    form = api.calls("/v3/keyboardPwd/add")[0]
    assert form["lockId"] == "lock-1"
    assert form["keyboardPwd"] == "654321"
    assert form["keyboardPwdName"] == "Booking-7"
    assert form["startDate"] == str(int(START.timestamp() * 1000))
    assert form["endDate"] == str(int(END.timestamp() * 1000))
    assert form["clientId"] == "cid"


async def test_vendor_error_payload_raises(client, api):
    api.script("/v3/keyboardPwd/add", {"errcode": -3, "errmsg": "Invalid Parameter"})

    with pytest.raises(GatewayError) as exc_info:
        await client.create_passcode("lock-1", "123456", START, END, "Booking-1")

    assert exc_info.value.errcode == -3
    assert "Invalid Parameter" in str(exc_info.value)


async def test_retries_transient_failures(client, api):
    api.script("/v3/keyboardPwd/add", 500, httpx.ConnectError("boom"))

    credential_id, _ = await client.create_passcode("lock-1", "123456", START, END, "Booking-1")

    assert credential_id == "555"
    assert len(api.calls("/v3/keyboardPwd/add")) == 3


async def test_gives_up_after_max_retries(client, api):
    api.script("/v3/keyboardPwd/delete", 503, 429, 503)

    with pytest.raises(GatewayError, match="HTTP 503"):
        await client.delete_passcode("lock-1", "555")

    assert len(api.calls("/v3/keyboardPwd/delete")) == 3


async def test_client_errors_are_not_retried(client, api):
    api.script("/v3/keyboardPwd/delete", 404)

    with pytest.raises(GatewayError, match="HTTP 404"):
        await client.delete_passcode("lock-1", "555")

    assert len(api.calls("/v3/keyboardPwd/delete")) == 1


async def test_reauthenticates_once_on_stale_token(client, api):
    api.script("/v3/keyboardPwd/delete", {"errcode": 10004, "errmsg": "invalid grant"})

    await client.delete_passcode("lock-1", "555")

    assert len(api.calls("/oauth2/token")) == 2
    deletes = api.calls("/v3/keyboardPwd/delete")
    assert [d["accessToken"] for d in deletes] == ["token-1", "token-2"]
    assert deletes[0]["keyboardPwdId"] == "555"


async def test_lock_status_and_access_log(client, api):
    status = await client.get_lock_status("lock-1")
    assert status.online is True
    assert status.battery_level == 73

    events = await client.get_access_log("lock-1", START, END)
    assert len(events) == 1
    assert events[0].record_id == "9"
    assert events[0].success is True
    assert events[0].passcode == "123456"
    assert events[0].occurred_at == datetime(2025, 1, 6, 10, tzinfo=timezone.utc)


async def test_paired_but_disconnected_lock_is_offline(client, api):
    api.script("/v3/lock/detail", {"isConnected": 0, "hasGateway": 1, "electricQuantity": 12})

    status = await client.get_lock_status("lock-1")

    assert status.online is False
    assert status.battery_level == 12


async def test_health_check_reports_auth_failure(client, api):
    api.script("/oauth2/token", {"errcode": 10007, "errmsg": "invalid account or invalid password"})

    assert await client.health_check() is False


def test_from_settings_requires_credentials():
    assert TTLockClient.from_settings(Settings(_env_file=None)) is None

    client = TTLockClient.from_settings(Settings(
        _env_file=None,
        ttlock_client_id="a",
        ttlock_client_secret="b",
        ttlock_username="c",
        ttlock_password="d",
    ))
    assert isinstance(client, TTLockClient)
