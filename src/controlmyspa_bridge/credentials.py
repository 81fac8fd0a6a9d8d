"""Credential Lifecycle Manager.

Keeps a valid access token for the cloud API: renews it shortly before it
expires, retries failed renewals on a fixed backoff, and tells its listener
whenever a renewal succeeds.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import aiohttp

from controlmyspa_bridge.const import RENEWAL_MARGIN, RENEWAL_RETRY_DELAY
from controlmyspa_bridge.exceptions import CredentialInvalidError, SpaBridgeError
from controlmyspa_bridge.logging_abstraction import get_logger

if TYPE_CHECKING:
    from controlmyspa_bridge.scheduler import Scheduler
    from controlmyspa_bridge.structs import Credential, RenewedListener, SpaAPIProtocol

logger = get_logger(__name__)

RENEWAL_TIMER = "credential_renewal"


def renewal_delay(credential: Credential, margin: float = RENEWAL_MARGIN) -> float:
    """Seconds after issuance at which ``credential`` should be renewed."""
    return max(0.0, credential.expires_in - margin)


class CredentialManager:
    lp: str = "credentials:"

    def __init__(
        self,
        api: SpaAPIProtocol,
        scheduler: Scheduler,
        retry_delay: float = RENEWAL_RETRY_DELAY,
    ) -> None:
        self.api: SpaAPIProtocol = api
        self.scheduler: Scheduler = scheduler
        self.retry_delay: float = retry_delay
        self.credential: Credential | None = None
        self._on_renewed: RenewedListener | None = None
        self.failed_attempts: int = 0

    def on_renewed(self, listener: RenewedListener) -> None:
        self._on_renewed = listener

    async def authenticate(self) -> Credential | None:
        """Obtain the first credential and schedule its renewal.

        When the cloud cannot be reached the login is retried every
        ``retry_delay`` seconds on the renewal timer, and the renewed listener
        fires once it succeeds.

        Returns:
            The credential, or None while the login is being retried

        Raises:
            CredentialInvalidError: The account was refused; the bridge cannot start

        """
        lp = f"{self.lp}authenticate:"
        try:
            credential = await self.api.authenticate()
        except CredentialInvalidError:
            raise
        except (SpaBridgeError, aiohttp.ClientError, TimeoutError) as e:
            self.failed_attempts += 1
            logger.warning("%s login failed, retrying in %.0fs: %s", lp, self.retry_delay, e)
            self.scheduler.call_later(RENEWAL_TIMER, self.retry_delay, self._renew)
            return None
        self._install(credential)
        return credential

    def _install(self, credential: Credential) -> None:
        self.credential = credential
        self.failed_attempts = 0
        self.schedule_renewal(credential)

    def schedule_renewal(self, credential: Credential) -> None:
        delay = renewal_delay(credential)
        logger.debug(
            "%s renewal in %.0fs",
            self.lp,
            delay,
            extra={"expires_at": credential.expires_at.isoformat()},
        )
        self.scheduler.call_later(RENEWAL_TIMER, delay, self._renew)

    async def renew_now(self) -> None:
        """Renew right away, e.g. after the cloud refused the current token."""
        _ = self.scheduler.cancel(RENEWAL_TIMER)
        await self._renew()

    async def _renew(self) -> None:
        lp = f"{self.lp}renew:"
        try:
            credential = await self.api.authenticate()
        except (SpaBridgeError, aiohttp.ClientError, TimeoutError) as e:
            self.failed_attempts += 1
            logger.warning(
                "%s renewal failed, retrying in %.0fs: %s",
                lp,
                self.retry_delay,
                e,
                extra={"attempt": self.failed_attempts},
            )
            self.scheduler.call_later(RENEWAL_TIMER, self.retry_delay, self._renew)
            return

        logger.info("%s credential renewed", lp)
        self._install(credential)
        if self._on_renewed is not None:
            await self._on_renewed(credential)

    def stop(self) -> None:
        _ = self.scheduler.cancel(RENEWAL_TIMER)
