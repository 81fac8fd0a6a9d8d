"""Exception hierarchy for the spa bridge.

Directly invoked operations (dispatch, refresh) catch these and hand them back
inside typed results; only startup failures propagate to the caller.
"""

from __future__ import annotations


class SpaBridgeError(Exception):
    """Base class for all bridge errors."""


class InvalidValueError(SpaBridgeError):
    """A command value is outside the entity's allowed set.

    Raised before any network call is made.

    Attributes:
        entity: Entity the command was addressed to
        value: The rejected value
        allowed: Human readable description of the accepted values

    """

    def __init__(self, entity: str, value: object, allowed: str) -> None:
        self.entity: str = entity
        self.value: object = value
        self.allowed: str = allowed
        super().__init__(f"Invalid value {value!r} for {entity} (allowed: {allowed})")


class SpaTransportError(SpaBridgeError):
    """The cloud API could not be reached or answered with an error.

    Attributes:
        reason: Specific failure reason
        status: HTTP status, when the cloud answered at all

    """

    def __init__(self, reason: str, status: int | None = None) -> None:
        self.reason: str = reason
        self.status: int | None = status
        suffix = f" (status: {status})" if status is not None else ""
        super().__init__(f"Transport error: {reason}{suffix}")


class CommandRejectedError(SpaTransportError):
    """The cloud answered a control request without accepting it."""

    def __init__(self, command: str, status: int) -> None:
        self.command: str = command
        super().__init__(f"command {command} not accepted", status=status)


class ReconciliationMismatchError(SpaBridgeError):
    """A written value never showed up in the spa's reported state.

    Attributes:
        entity: Entity the command was addressed to
        desired: Value that was written
        observed: Value reported after the fallback refresh

    """

    def __init__(self, entity: str, desired: object, observed: object) -> None:
        self.entity: str = entity
        self.desired: object = desired
        self.observed: object = observed
        super().__init__(f"{entity} still reports {observed!r} after setting {desired!r}")


class CredentialError(SpaTransportError):
    """Base class for authentication failures."""


class CredentialExpiredError(CredentialError):
    """The cloud refused the current access token (HTTP 401)."""

    def __init__(self, reason: str = "access token rejected") -> None:
        super().__init__(reason, status=401)


class CredentialInvalidError(CredentialError):
    """The account name or password was refused. Fatal at startup."""

    def __init__(self, reason: str, status: int | None = None) -> None:
        super().__init__(f"credentials refused: {reason}", status=status)


class BusRoutingError(SpaBridgeError):
    """An inbound bus message arrived on a topic that maps to nothing.

    Attributes:
        topic: The unroutable topic

    """

    def __init__(self, topic: str) -> None:
        self.topic: str = topic
        super().__init__(f"No route for topic: {topic}")
