from __future__ import annotations


class ProbeHubError(Exception):
    """Base class for every error raised by the probe hub."""


class InvalidDeviceError(ProbeHubError, ValueError):
    pass


class DuplicateDeviceError(ProbeHubError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device '{device_id}' is already registered")
        self.device_id = device_id


class NotFoundError(ProbeHubError, LookupError):
    def __init__(self, kind: str, key: str) -> None:
        super().__init__(f"{kind} '{key}' not found")
        self.kind = kind
        self.key = key


class InvalidTrialError(ProbeHubError, ValueError):
    pass


class DuplicateTrialError(InvalidTrialError):
    def __init__(self, trial_id: str) -> None:
        super().__init__(f"Trial '{trial_id}' already exists")
        self.trial_id = trial_id


class StoreError(ProbeHubError):
    """Raised by persistence adapters when the backing store is unusable."""


class FetchError(ProbeHubError):
    """A single poll against a device did not produce a reading."""


class DeviceError(FetchError):
    """The device answered but reported a failure in its payload."""


class TransportError(FetchError):
    """The device could not be reached, timed out, or sent garbage."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause
