"""Custom exceptions for the intake application."""


class IntakeException(Exception):
    """Base class for intake exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their
    status_code and error code for consistent HTTP response handling.
    """
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Intake error"):
        self.message = message
        super().__init__(message)

    def to_response(self) -> dict:
        return {"error": self.message, "code": self.code}


class TransientStoreError(IntakeException):
    """Raised when Redis or the database is unreachable or times out.

    Workers answer it with a requeue; the API answers with HTTP 503 so the
    client retries later.
    """
    status_code = 503
    code = "QUEUE_ERROR"

    def __init__(self, message: str = "store temporarily unavailable", store: str = "redis"):
        self.store = store
        super().__init__(message)


class SerializationError(IntakeException):
    """Raised when a work item cannot be encoded or decoded.

    At enqueue time the item is never pushed; on the worker side the raw
    payload is moved to the dead-letter queue.
    """
    status_code = 503
    code = "QUEUE_ERROR"

    def __init__(self, message: str = "malformed work item", payload: str | None = None):
        self.payload = payload
        super().__init__(message)


class RateLimiterUnavailable(IntakeException):
    """Raised by the Redis token bucket when the store cannot be reached.

    Never returned to the caller: the rate limiter converts it to an allow
    (fail open) or a deny (fail closed) decision.
    """
    status_code = 503
    code = "RATE_LIMITER_UNAVAILABLE"

    def __init__(self, reason: str = "unexpected"):
        self.reason = reason
        super().__init__(f"rate limiter store unavailable ({reason})")


class RetryExhausted(IntakeException):
    """Raised by requeue after an item was moved to the dead-letter queue.

    The item is safe in the dead-letter list; this only tells the worker to
    report it as an operational concern.
    """
    status_code = 500
    code = "RETRY_EXHAUSTED"

    def __init__(self, event_id: str, retry_count: int):
        self.event_id = event_id
        self.retry_count = retry_count
        super().__init__(
            f"Work item {event_id} exhausted {retry_count} attempts and was dead-lettered"
        )


class RateLimitExceededError(IntakeException):
    """Raised when a client identity has no tokens left.

    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int = 1):
        self.retry_after = retry_after
        super().__init__("rate limit exceeded")
