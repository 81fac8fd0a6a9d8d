"""Unit tests for cloud_api module.

Tests ControlMySpaAPI login, spa document reads and control calls against a
mocked aiohttp session.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from controlmyspa_bridge.cloud_api import ControlMySpaAPI, build_control_request
from controlmyspa_bridge.const import CMS_CONTROL_URL, CMS_SPA_SEARCH_URL
from controlmyspa_bridge.entities import ComponentType, DeviceSetting, EntityKey
from controlmyspa_bridge.exceptions import CredentialExpiredError, CredentialInvalidError, SpaTransportError
from controlmyspa_bridge.structs import Credential, SpaCommand
from tests.helpers.fakes import SPA_ID, make_raw_owner, make_raw_spa

IDM_DOC = {
    "mobileClientId": "client-id",
    "mobileClientSecret": "client-secret",
    "_links": {
        "tokenEndpoint": {"href": "https://idm.example/oauth/token"},
        "whoami": {"href": "https://idm.example/whoami"},
    },
}


def _response(status: int = 200, body: object = None) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=body)
    response.raise_for_status = MagicMock()
    return response


def _ctx(response: MagicMock) -> MagicMock:
    """Wrap a response so it can be used with ``async with session.get(...)``."""
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=response)
    ctx.__aexit__ = AsyncMock(return_value=False)
    return ctx


def _session() -> MagicMock:
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    return session


@pytest.fixture
def api() -> ControlMySpaAPI:
    """API client with a mocked, already open HTTP session."""
    client = ControlMySpaAPI("owner@example.com", "hunter2")
    client.http_session = _session()
    return client


@pytest.fixture
def logged_in(api: ControlMySpaAPI) -> ControlMySpaAPI:
    """API client that already holds the identity links and a token."""
    api.idm = {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "token_endpoint": "https://idm.example/oauth/token",
        "whoami": "https://idm.example/whoami",
    }
    api.credential = Credential(access_token="abc", expires_in=3600)
    return api


class TestBuildControlRequest:
    """Tests for mapping commands onto control endpoints."""

    @pytest.mark.parametrize(
        ("key", "value", "endpoint", "body"),
        [
            (EntityKey(DeviceSetting.DESIRED_TEMP), "102.2", "setDesiredTemp", {"desiredTemp": "102.2"}),
            (EntityKey(DeviceSetting.TEMP_RANGE), "LOW", "setTempRange", {"desiredState": "LOW"}),
            (EntityKey(DeviceSetting.PANEL_LOCK), "LOCK", "setPanel", {"desiredState": "LOCK_PANEL"}),
            (EntityKey(DeviceSetting.PANEL_LOCK), "UNLOCK", "setPanel", {"desiredState": "UNLOCK_PANEL"}),
            (EntityKey(DeviceSetting.HEATER_MODE), "READY", "toggleHeaterMode", {"originatorId": ""}),
            (
                EntityKey(ComponentType.PUMP, 1),
                "HIGH",
                "setJetState",
                {"deviceNumber": "1", "desiredState": "HIGH", "originatorId": "optional-Jet"},
            ),
            (
                EntityKey(ComponentType.LIGHT, 0),
                "OFF",
                "setLightState",
                {"deviceNumber": "0", "desiredState": "OFF", "originatorId": "optional-Light"},
            ),
            (
                EntityKey(ComponentType.BLOWER, 0),
                "HIGH",
                "setBlowerState",
                {"deviceNumber": "0", "desiredState": "HIGH", "originatorId": "optional-Blower"},
            ),
            (
                EntityKey(ComponentType.FILTER, 1),
                "08:00,45",
                "setFilterCycleIntervalsSchedule",
                {"deviceNumber": "1", "originatorId": "optional-filtercycle", "intervalNumber": 3, "time": "08:00"},
            ),
        ],
    )
    def test_endpoints(self, key: EntityKey, value: str, endpoint: str, body: dict[str, object]):
        assert build_control_request(SpaCommand(SPA_ID, key, value)) == (endpoint, body)

    def test_read_only_kind_has_no_endpoint(self):
        with pytest.raises(ValueError, match="cannot be controlled"):
            _ = build_control_request(SpaCommand(SPA_ID, EntityKey(ComponentType.OZONE), "ON"))


class TestSession:
    """Tests for HTTP session handling."""

    def test_session_created_lazily(self):
        with patch("controlmyspa_bridge.cloud_api.aiohttp.ClientSession") as mock_session_class:
            mock_session_class.return_value = _session()
            api = ControlMySpaAPI("owner@example.com", "hunter2")

            first = api._session()
            second = api._session()

            assert first is second
            assert mock_session_class.call_count == 1

    @pytest.mark.asyncio
    async def test_close_session(self, api: ControlMySpaAPI):
        session = api.http_session
        assert session is not None

        await api.close()

        session.close.assert_awaited_once()
        assert api.http_session is None

    def test_explicit_timeout(self):
        api = ControlMySpaAPI("owner@example.com", "hunter2", api_timeout=7)
        assert api._timeout.total == 7

    def test_zero_timeout_uses_session_default(self, api: ControlMySpaAPI):
        assert api.http_session is not None
        assert api._timeout is api.http_session.timeout


class TestAuthenticate:
    """Tests for password login."""

    @pytest.mark.asyncio
    async def test_success(self, api: ControlMySpaAPI):
        session = api.http_session
        assert session is not None
        session.get = MagicMock(return_value=_ctx(_response(body=IDM_DOC)))
        session.post = MagicMock(
            return_value=_ctx(_response(body={"access_token": "tok", "refresh_token": "ref", "expires_in": 1800})),
        )

        credential = await api.authenticate()

        assert credential.access_token == "tok"
        assert credential.expires_in == 1800
        assert api.credential is credential
        args, kwargs = session.post.call_args
        assert args[0] == "https://idm.example/oauth/token"
        assert kwargs["data"]["grant_type"] == "password"
        assert kwargs["data"]["username"] == "owner@example.com"
        assert kwargs["auth"] == aiohttp.BasicAuth("client-id", "client-secret")

    @pytest.mark.asyncio
    async def test_missing_expiry_uses_default(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(_response(body={"access_token": "tok"})))

        credential = await logged_in.authenticate()

        assert credential.expires_in == 3600

    @pytest.mark.parametrize("status", [400, 401, 403])
    @pytest.mark.asyncio
    async def test_refused(self, logged_in: ControlMySpaAPI, status: int):
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(_response(status=status)))

        with pytest.raises(CredentialInvalidError) as exc_info:
            _ = await logged_in.authenticate()
        assert exc_info.value.status == status

    @pytest.mark.asyncio
    async def test_no_token_in_answer(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(_response(body={})))

        with pytest.raises(CredentialInvalidError):
            _ = await logged_in.authenticate()

    @pytest.mark.asyncio
    async def test_identity_service_unreachable(self, api: ControlMySpaAPI):
        session = api.http_session
        assert session is not None
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(SpaTransportError, match="identity service unreachable"):
            _ = await api.authenticate()

    @pytest.mark.asyncio
    async def test_identity_answer_incomplete(self, api: ControlMySpaAPI):
        session = api.http_session
        assert session is not None
        session.get = MagicMock(return_value=_ctx(_response(body={"mobileClientId": "x"})))

        with pytest.raises(SpaTransportError, match="missing"):
            _ = await api.authenticate()


class TestFetchState:
    """Tests for reading the spa and owner documents."""

    @pytest.mark.asyncio
    async def test_owner_fetched_once(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.get = MagicMock(
            side_effect=[
                _ctx(_response(body=make_raw_owner())),
                _ctx(_response(body=make_raw_spa())),
                _ctx(_response(body=make_raw_spa())),
            ],
        )

        spa, owner = await logged_in.fetch_state()
        _ = await logged_in.fetch_state()

        assert spa["_id"] == SPA_ID
        assert owner["firstName"] == "Sam"
        assert logged_in.spa_id == SPA_ID
        assert session.get.call_count == 3
        last_args, last_kwargs = session.get.call_args
        assert last_args[0] == CMS_SPA_SEARCH_URL
        assert last_kwargs["params"] == {"username": "owner@example.com"}
        assert last_kwargs["headers"] == {"Authorization": "Bearer abc"}

    @pytest.mark.asyncio
    async def test_expired_token(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.get = MagicMock(return_value=_ctx(_response(status=401)))

        with pytest.raises(CredentialExpiredError):
            _ = await logged_in.fetch_state()

    @pytest.mark.asyncio
    async def test_not_logged_in(self, logged_in: ControlMySpaAPI):
        logged_in.credential = None

        with pytest.raises(CredentialExpiredError, match="authenticate first"):
            _ = await logged_in.fetch_state()

    @pytest.mark.asyncio
    async def test_non_object_answer(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.get = MagicMock(return_value=_ctx(_response(body=["not", "an", "object"])))

        with pytest.raises(SpaTransportError, match="expected an object"):
            _ = await logged_in.fetch_state()

    @pytest.mark.asyncio
    async def test_timeout(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.get = MagicMock(side_effect=TimeoutError())

        with pytest.raises(SpaTransportError):
            _ = await logged_in.fetch_state()


class TestSendCommand:
    """Tests for control calls."""

    @pytest.mark.asyncio
    async def test_accepted_with_echo(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(_response(body={"values": {"desiredTemp": 102.2}})))
        command = SpaCommand(SPA_ID, EntityKey(DeviceSetting.DESIRED_TEMP), "102.2")

        ack = await logged_in.send_command(command)

        assert ack.accepted is True
        assert ack.values == {"DESIREDTEMP": "102.2"}
        args, kwargs = session.post.call_args
        assert args[0] == f"{CMS_CONTROL_URL}/{SPA_ID}/setDesiredTemp"
        assert kwargs["json"] == {"desiredTemp": "102.2"}
        assert kwargs["headers"]["Authorization"] == "Bearer abc"

    @pytest.mark.asyncio
    async def test_accepted_without_json_body(self, logged_in: ControlMySpaAPI):
        response = _response(status=202)
        response.json = AsyncMock(side_effect=ValueError("not json"))
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(response))

        ack = await logged_in.send_command(SpaCommand(SPA_ID, EntityKey(ComponentType.LIGHT, 0), "HIGH"))

        assert ack.accepted is True
        assert ack.values == {}

    @pytest.mark.asyncio
    async def test_not_accepted(self, logged_in: ControlMySpaAPI):
        response = _response(status=500)
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(response))

        ack = await logged_in.send_command(SpaCommand(SPA_ID, EntityKey(ComponentType.LIGHT, 0), "HIGH"))

        assert ack.accepted is False
        assert ack.status == 500
        response.json.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_token(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(return_value=_ctx(_response(status=401)))

        with pytest.raises(CredentialExpiredError):
            _ = await logged_in.send_command(SpaCommand(SPA_ID, EntityKey(ComponentType.LIGHT, 0), "HIGH"))

    @pytest.mark.asyncio
    async def test_connection_error(self, logged_in: ControlMySpaAPI):
        session = logged_in.http_session
        assert session is not None
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))

        with pytest.raises(SpaTransportError, match="setLightState failed"):
            _ = await logged_in.send_command(SpaCommand(SPA_ID, EntityKey(ComponentType.LIGHT, 0), "HIGH"))
