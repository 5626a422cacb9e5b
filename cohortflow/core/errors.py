"""
Domain error taxonomy. Each error knows the HTTP status the API renders it with.
"""

class CohortflowError(Exception):
    status_code = 400
    code = "cohortflow_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details

class NotFound(CohortflowError):
    status_code = 404
    code = "not_found"

class NotEnrolled(CohortflowError):
    status_code = 403
    code = "not_enrolled"

class CrossCohortViolation(CohortflowError):
    """A read or write targeted an entity outside the caller's resolved cohort."""
    status_code = 403
    code = "cross_cohort_violation"

class InvariantViolation(CohortflowError):
    """Stored data breaks an invariant; surfaced to repair tooling only."""
    status_code = 409
    code = "invariant_violation"

class StaleResubmission(CohortflowError):
    """A learner resubmitted without an active resubmission request."""
    status_code = 409
    code = "stale_resubmission"

class InvalidTransition(CohortflowError):
    status_code = 409
    code = "invalid_transition"

class ContentNotAvailable(CohortflowError):
    status_code = 409
    code = "content_not_available"

class NotificationDeliveryFailure(CohortflowError):
    status_code = 502
    code = "notification_delivery_failure"
