RETRY_NEVER = "never"
RETRY_AFTER_FIX = "after_fix"
RETRY_TRANSIENT = "transient"


class TeamApiError(Exception):
    kind = "internal"
    code = "internal_error"
    status_code = 500
    retry = RETRY_NEVER

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_detail(self) -> dict[str, str]:
        return {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
            "retry": self.retry,
        }


class NotFoundError(TeamApiError):
    kind = "not_found"
    code = "not_found"
    status_code = 404


class ForbiddenError(TeamApiError):
    kind = "forbidden"
    code = "forbidden"
    status_code = 403


class ConflictError(TeamApiError):
    kind = "conflict"
    code = "conflict"
    status_code = 409
    retry = RETRY_AFTER_FIX


class InvalidStateError(TeamApiError):
    kind = "invalid_state"
    code = "invalid_state"
    status_code = 409


class ExpiredError(TeamApiError):
    kind = "expired"
    code = "expired"
    status_code = 410


class InsufficientCreditsError(TeamApiError):
    kind = "insufficient_credits"
    code = "insufficient_credits"
    status_code = 402
    retry = RETRY_AFTER_FIX


class ValidationError(TeamApiError):
    kind = "validation_error"
    code = "validation_error"
    status_code = 400
    retry = RETRY_AFTER_FIX


class ExternalServiceError(TeamApiError):
    kind = "external_service_error"
    code = "external_service_error"
    status_code = 502
    retry = RETRY_TRANSIENT


class SlugConflictError(ConflictError):
    code = "slug_taken"


class EmailTakenError(ConflictError):
    code = "email_taken"


class AlreadyMemberError(ConflictError):
    code = "already_member"


class DuplicatePendingInvitationError(ConflictError):
    code = "already_invited"


class RecentlyRemovedError(ConflictError):
    code = "recently_removed"


class InvalidTargetError(InvalidStateError):
    code = "invalid_target"
    status_code = 400


class AlreadyAcceptedError(InvalidStateError):
    code = "already_accepted"
    status_code = 410


class EmailMismatchError(ForbiddenError):
    code = "email_mismatch"


class NoAllocationError(InsufficientCreditsError):
    code = "no_allocation"


class EmailDeliveryError(ExternalServiceError):
    code = "email_delivery_failed"
