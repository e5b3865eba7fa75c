"""
guest_house/errors.py

Exception types that cross module boundaries.

Expected negative outcomes (missing input, unknown sessions, mismatched codes,
unreachable networks) are NOT exceptions: the lifecycle returns them as
Outcome values. Only contract violations and provider failures are raised.
"""


class GuestHouseError(Exception):
    """Base class for every error raised by this package."""


class InvalidArgument(GuestHouseError, ValueError):
    """A caller broke a store contract (e.g. saving a null user)."""


class ProviderError(GuestHouseError):
    """
    Unexpected failure talking to the verification provider.

    The underlying httpx exception is kept as __cause__ so the top-level
    handler can log the full chain.
    """
