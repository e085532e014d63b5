"""Exceptions for duo-call signaling, negotiation and media capture."""


class SignalingChannelError(Exception):
    """Signaling channel could not be opened or was reused."""

    pass


class MalformedMessageError(ValueError):
    """Inbound signaling payload could not be parsed."""

    pass


class DeviceUnavailableError(Exception):
    """Capture device (camera, microphone or screen) could not be opened."""

    pass


class InvalidTransitionError(Exception):
    """Call state transition is not allowed."""

    pass


class ConfigError(Exception):
    """Configuration value is invalid."""

    pass
