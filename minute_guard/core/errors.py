"""
Error taxonomy for usage metering.

Storage and config errors are never swallowed: recording must fail loudly
rather than silently under-record usage.
"""


class MinuteGuardError(Exception):
    """Base class for all metering errors."""


class PeriodUnresolvable(MinuteGuardError):
    """No limit config exists for the tenant, so no billing period can be resolved."""

    def __init__(self, tenant_id: str, message: str = ""):
        super().__init__(message or f"No limit configuration for tenant {tenant_id}")
        self.tenant_id = tenant_id


class VersionConflict(MinuteGuardError):
    """A conditional update lost the compare-and-swap on the period version."""

    def __init__(self, period_id: int, expected_version: int):
        super().__init__(
            f"Period {period_id} is no longer at version {expected_version}"
        )
        self.period_id = period_id
        self.expected_version = expected_version


class StorageConflict(MinuteGuardError):
    """The atomic update could not be applied within the retry budget.

    Callers should retry the whole call.
    """

    def __init__(self, tenant_id: str, attempts: int):
        super().__init__(
            f"Could not apply usage for tenant {tenant_id} after {attempts} attempts"
        )
        self.tenant_id = tenant_id
        self.attempts = attempts


class ChannelDeliveryFailure(MinuteGuardError):
    """A single alert channel failed to deliver. Never fatal to the alert."""

    def __init__(self, channel: str, message: str):
        super().__init__(f"{channel}: {message}")
        self.channel = channel
