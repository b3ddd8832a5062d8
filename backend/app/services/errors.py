"""Domain errors raised by the minting core.

Each error carries the HTTP status and a stable machine-readable code so the
API layer can translate it with a single exception handler.
"""
from typing import Optional


class LaunchpadError(Exception):
    """Base class for all minting core errors"""
    status_code = 400
    code = "launchpad_error"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(LaunchpadError):
    status_code = 404
    code = "not_found"


# Authorization

class MintAuthorizationError(LaunchpadError):
    status_code = 403
    code = "not_authorized"


class NotAdminError(MintAuthorizationError):
    code = "admin_required"


class NotWhitelistedError(MintAuthorizationError):
    code = "not_whitelisted"


class PhaseInactiveError(MintAuthorizationError):
    status_code = 400
    code = "phase_inactive"


# Capacity

class CapacityError(LaunchpadError):
    status_code = 409
    code = "capacity_exhausted"


class AllocationExhaustedError(CapacityError):
    code = "allocation_exhausted"


class PhaseAllocationExhaustedError(CapacityError):
    code = "phase_allocation_exhausted"


class SupplyExhaustedError(CapacityError):
    code = "supply_exhausted"


class PhaseConflictError(CapacityError):
    """Another phase of the collection is already active"""
    code = "phase_conflict"


class InsufficientCreditsError(CapacityError):
    status_code = 402
    code = "insufficient_credits"


# State machine

class InvalidTransitionError(LaunchpadError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str, reason: str = ""):
        message = f"Cannot move mint from {from_status} to {to_status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status


class RetryLimitExceeded(LaunchpadError):
    """Fatal: the attempt needs manual escalation"""
    status_code = 423
    code = "retry_limit_exceeded"


class SupplyLockedError(LaunchpadError):
    status_code = 409
    code = "supply_locked"
