"""ControlMySpa cloud API client.

Covers the three things the bridge needs from the cloud: obtaining an access
token, reading the spa document, and sending control calls.
"""

from __future__ import annotations

import datetime
from collections.abc import Mapping
from typing import TypedDict, cast

import aiohttp

from controlmyspa_bridge.const import (
    CMS_CONTROL_URL,
    CMS_IDM_URL,
    CMS_SPA_SEARCH_URL,
    CMS_USER_AGENT,
    DEFAULT_TOKEN_EXPIRES_IN,
)
from controlmyspa_bridge.entities import ComponentType, DeviceSetting
from controlmyspa_bridge.exceptions import (
    CredentialExpiredError,
    CredentialInvalidError,
    SpaTransportError,
)
from controlmyspa_bridge.logging_abstraction import get_logger
from controlmyspa_bridge.structs import CommandAck, Credential, SpaCommand

logger = get_logger(__name__)

ACCEPTED_STATUSES = (200, 202)


class IdmLinks(TypedDict):
    """Endpoints and client credentials advertised by the identity service."""

    client_id: str
    client_secret: str
    token_endpoint: str
    whoami: str


_COMPONENT_ENDPOINTS: dict[ComponentType, tuple[str, str]] = {
    ComponentType.PUMP: ("setJetState", "optional-Jet"),
    ComponentType.BLOWER: ("setBlowerState", "optional-Blower"),
    ComponentType.LIGHT: ("setLightState", "optional-Light"),
}


def build_control_request(command: SpaCommand) -> tuple[str, dict[str, object]]:
    """Map a validated command onto the cloud's control endpoint and JSON body.

    Returns:
        Tuple of (endpoint name, request body)

    Raises:
        ValueError: The entity has no control endpoint

    """
    key = command.key
    match key.kind:
        case DeviceSetting.DESIRED_TEMP:
            return "setDesiredTemp", {"desiredTemp": command.value}
        case DeviceSetting.TEMP_RANGE:
            return "setTempRange", {"desiredState": command.value}
        case DeviceSetting.PANEL_LOCK:
            state = "LOCK_PANEL" if command.value == "LOCK" else "UNLOCK_PANEL"
            return "setPanel", {"desiredState": state}
        case DeviceSetting.HEATER_MODE:
            # the cloud only offers a toggle
            return "toggleHeaterMode", {"originatorId": ""}
        case ComponentType.FILTER:
            start, _, minutes = command.value.partition(",")
            return "setFilterCycleIntervalsSchedule", {
                "deviceNumber": str(key.port),
                "originatorId": "optional-filtercycle",
                "intervalNumber": int(minutes) // 15,
                "time": start,
            }
        case ComponentType.PUMP | ComponentType.BLOWER | ComponentType.LIGHT:
            endpoint, originator = _COMPONENT_ENDPOINTS[key.kind]
            return endpoint, {
                "deviceNumber": str(key.port),
                "desiredState": command.value,
                "originatorId": originator,
            }
        case _:
            msg = f"{key} cannot be controlled"
            raise ValueError(msg)


class ControlMySpaAPI:
    """aiohttp client for iot.controlmyspa.com.

    One instance per account. The access token obtained by :meth:`authenticate`
    is used for every later call until the next authenticate.
    """

    lp: str = "ControlMySpaAPI:"

    def __init__(self, username: str, password: str, api_timeout: float = 0.0) -> None:
        self.username: str = username
        self._password: str = password
        self.api_timeout: float = api_timeout
        self.http_session: aiohttp.ClientSession | None = None
        self.idm: IdmLinks | None = None
        self.credential: Credential | None = None
        self.spa_id: str | None = None
        self._owner: dict[str, object] | None = None

    async def close(self) -> None:
        """Close the aiohttp session if it exists and is not closed."""
        lp = f"{self.lp}close:"
        if self.http_session and not self.http_session.closed:
            logger.debug("%s Closing aiohttp ClientSession", lp)
            await self.http_session.close()
        self.http_session = None

    def _session(self) -> aiohttp.ClientSession:
        if not self.http_session or self.http_session.closed:
            logger.debug("%s Creating new aiohttp ClientSession", self.lp)
            self.http_session = aiohttp.ClientSession(headers={"User-Agent": CMS_USER_AGENT, "Accept": "*/*"})
        return self.http_session

    @property
    def _timeout(self) -> aiohttp.ClientTimeout:
        if self.api_timeout:
            return aiohttp.ClientTimeout(total=self.api_timeout)
        return self._session().timeout

    def _auth_headers(self) -> dict[str, str]:
        if self.credential is None:
            raise CredentialExpiredError("no access token, authenticate first")
        return {"Authorization": f"Bearer {self.credential.access_token}"}

    async def _load_idm(self) -> IdmLinks:
        lp = f"{self.lp}idm:"
        try:
            async with self._session().get(CMS_IDM_URL, timeout=self._timeout) as r:
                r.raise_for_status()
                body = cast("dict[str, object]", await r.json(content_type=None))
        except aiohttp.ClientResponseError as e:
            raise SpaTransportError(f"identity service lookup failed: {e.message}", status=e.status) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise SpaTransportError(f"identity service unreachable: {e}") from e

        links = cast("Mapping[str, Mapping[str, str]]", body.get("_links") or {})
        try:
            self.idm = IdmLinks(
                client_id=str(body["mobileClientId"]),
                client_secret=str(body["mobileClientSecret"]),
                token_endpoint=links["tokenEndpoint"]["href"],
                whoami=links["whoami"]["href"],
            )
        except (KeyError, TypeError) as e:
            raise SpaTransportError(f"identity service answer is missing {e}") from e
        logger.debug("%s token endpoint: %s", lp, self.idm["token_endpoint"])
        return self.idm

    async def authenticate(self) -> Credential:
        """Log in with the account password and keep the new token.

        Raises:
            CredentialInvalidError: The cloud refused the account name or password
            SpaTransportError: The cloud could not be reached

        """
        lp = f"{self.lp}authenticate:"
        idm = self.idm or await self._load_idm()
        form = {
            "grant_type": "password",
            "password": self._password,
            "scope": "openid user_name",
            "username": self.username,
        }
        issued_at = datetime.datetime.now(datetime.UTC)
        try:
            async with self._session().post(
                idm["token_endpoint"],
                data=form,
                auth=aiohttp.BasicAuth(idm["client_id"], idm["client_secret"]),
                timeout=self._timeout,
            ) as r:
                if r.status in (400, 401, 403):
                    raise CredentialInvalidError(f"login refused for {self.username}", status=r.status)
                r.raise_for_status()
                body = cast("dict[str, object]", await r.json(content_type=None))
        except aiohttp.ClientResponseError as e:
            raise SpaTransportError(f"login failed: {e.message}", status=e.status) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise SpaTransportError(f"login failed: {e}") from e

        if not body.get("access_token"):
            raise CredentialInvalidError("token response carries no access_token")
        expires_in = body.get("expires_in") or DEFAULT_TOKEN_EXPIRES_IN
        self.credential = Credential(
            access_token=str(body["access_token"]),
            refresh_token=cast("str | None", body.get("refresh_token")),
            token_type=str(body.get("token_type") or "bearer"),
            expires_in=int(cast("int | str", expires_in)),
            issued_at=issued_at,
        )
        logger.info("%s logged in", lp, extra={"expires_at": self.credential.expires_at.isoformat()})
        return self.credential

    async def _get_json(self, url: str, params: Mapping[str, str] | None = None) -> dict[str, object]:
        try:
            async with self._session().get(
                url,
                params=params,
                headers=self._auth_headers(),
                timeout=self._timeout,
            ) as r:
                if r.status == 401:
                    raise CredentialExpiredError
                r.raise_for_status()
                body: object = await r.json(content_type=None)
        except aiohttp.ClientResponseError as e:
            raise SpaTransportError(f"GET {url} failed: {e.message}", status=e.status) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            raise SpaTransportError(f"GET {url} failed: {e}") from e
        if not isinstance(body, dict):
            raise SpaTransportError(f"GET {url} returned {type(body).__name__}, expected an object")
        return cast("dict[str, object]", body)

    async def fetch_state(self) -> tuple[dict[str, object], dict[str, object]]:
        """Read the account's spa document (and, once, the owner document)."""
        lp = f"{self.lp}fetch_state:"
        if self._owner is None:
            idm = self.idm or await self._load_idm()
            self._owner = await self._get_json(idm["whoami"])
        spa = await self._get_json(CMS_SPA_SEARCH_URL, params={"username": self.username})
        spa_id = spa.get("_id")
        if spa_id:
            self.spa_id = str(spa_id)
        logger.debug("%s fetched spa %s", lp, self.spa_id)
        return spa, self._owner

    async def send_command(self, command: SpaCommand) -> CommandAck:
        """POST one control call.

        Returns:
            CommandAck with ``accepted`` set for 200/202 answers, plus any values
            the cloud echoed back

        Raises:
            CredentialExpiredError: The access token was refused
            SpaTransportError: The cloud could not be reached

        """
        lp = f"{self.lp}send_command:"
        endpoint, body = build_control_request(command)
        url = f"{CMS_CONTROL_URL}/{command.spa_id}/{endpoint}"
        logger.info("%s %s", lp, endpoint, extra={"entity": str(command.key), "value": command.value})
        try:
            async with self._session().post(
                url,
                json=body,
                headers={**self._auth_headers(), "Accept": "application/json"},
                timeout=self._timeout,
            ) as r:
                if r.status == 401:
                    raise CredentialExpiredError
                status = r.status
                answer: object = await r.json(content_type=None) if status in ACCEPTED_STATUSES else None
        except (aiohttp.ClientError, TimeoutError) as e:
            raise SpaTransportError(f"{endpoint} failed: {e}") from e
        except ValueError:
            # accepted, but the body was not JSON
            answer = None

        values: dict[str, str] = {}
        if isinstance(answer, dict):
            raw_values = cast("dict[str, object]", answer).get("values")
            if isinstance(raw_values, dict):
                values = {str(k).upper(): str(v) for k, v in cast("dict[object, object]", raw_values).items()}
        return CommandAck(status=status, accepted=status in ACCEPTED_STATUSES, values=values)
