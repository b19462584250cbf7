"""
Blood Allocation Engine - Errors
=================================
Every failure the core can report. Ledger errors carry the unit they
concern so the planner can recover against the next candidate.
"""


class AllocationError(Exception):
    """Base class for all allocation engine errors."""

    retryable = False


class InvalidQuantity(AllocationError, ValueError):
    """A unit count that is not a positive integer, or a release that overshoots."""


class InsufficientQuantity(AllocationError):
    """A reservation asked for more units than remain on the unit."""

    def __init__(self, unit_id: str, requested: int, remaining: int):
        self.unit_id = unit_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Unit {unit_id}: requested {requested}, only {remaining} remaining"
        )


class UnitExpired(AllocationError):
    """The unit expired between listing and reservation."""

    def __init__(self, unit_id: str, expires_at):
        self.unit_id = unit_id
        self.expires_at = expires_at
        super().__init__(f"Unit {unit_id} expired at {expires_at.isoformat()}")


class IncompatibleTypes(AllocationError):
    """A draw would pair incompatible blood types. Never retried."""

    def __init__(self, recipient, donor, donation_type):
        self.recipient = recipient
        self.donor = donor
        self.donation_type = donation_type
        super().__init__(
            f"{donor} {donation_type} cannot be given to a {recipient} recipient"
        )


class UnitNotFound(AllocationError, KeyError):
    def __init__(self, unit_id: str):
        self.unit_id = unit_id
        super().__init__(f"Unknown inventory unit: {unit_id}")

    def __str__(self):
        return self.args[0]


class RequestNotFound(AllocationError, KeyError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Unknown request: {request_id}")

    def __str__(self):
        return self.args[0]


class InvalidTransition(AllocationError):
    """A request status change not allowed by the lifecycle."""

    def __init__(self, request_id: str, current, target):
        self.request_id = request_id
        self.current = current
        self.target = target
        super().__init__(
            f"Request {request_id}: cannot move from {current} to {target}"
        )


class LedgerBusy(AllocationError):
    """A facility partition lock could not be acquired in time. Safe to retry."""

    retryable = True

    def __init__(self, facility_id: str, timeout: float):
        self.facility_id = facility_id
        self.timeout = timeout
        super().__init__(
            f"Inventory of {facility_id} is locked by another cycle "
            f"(waited {timeout:.1f}s)"
        )


class SnapshotError(AllocationError, ValueError):
    """A snapshot record could not be parsed."""
