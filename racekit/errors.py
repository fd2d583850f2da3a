"""Kit-claim error taxonomy.

Every error carries a stable ``code`` (used in JSON responses) and the HTTP
status the API maps it to. None of them is fatal; callers surface the
message to the operator and return to a safe state.
"""
from __future__ import annotations


class KitClaimError(Exception):
    code = "kit_claim_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class MalformedPayload(KitClaimError, ValueError):
    code = "malformed_payload"
    status_code = 400

    def __init__(self, message: str = "Invalid QR Code - not in the correct format"):
        super().__init__(message)


class NotFound(KitClaimError):
    code = "not_found"
    status_code = 404

    def __init__(self, message: str = "Registration not found for this code"):
        super().__init__(message)


class LookupFailed(KitClaimError):
    code = "lookup_failed"
    status_code = 502


class UpdateFailed(KitClaimError):
    code = "update_failed"
    status_code = 502


class ClaimConflict(UpdateFailed):
    code = "claim_conflict"
    status_code = 409


class PermissionDenied(KitClaimError):
    code = "permission_denied"
    status_code = 403

    def __init__(self, message: str = "Permission denied. Check that this account has kit distribution permission."):
        super().__init__(message)


class InvalidClaim(KitClaimError, ValueError):
    code = "invalid_claim"
    status_code = 422
