"""
Domain exceptions raised by the sync queue, workers and rate limiter
"""


class QueueUnavailableError(RuntimeError):
    """Background job queue is disabled or cannot be reached"""


class OrphanedConnectionError(RuntimeError):
    """Job references a platform connection that no longer exists or is inactive.

    Jobs failing with this error are removed instead of retried.
    """


class AccountRateLimitedError(RuntimeError):
    """Ad account is inside its rate-limit cool-down window"""

    def __init__(self, account_id: str, wait_seconds: float):
        self.account_id = account_id
        self.wait_seconds = wait_seconds
        super().__init__(
            f"Account {account_id} is rate limited. Wait {round(wait_seconds)}s before retrying."
        )


class RateLimitTimeoutError(TimeoutError):
    """Request waited in the rate limiter queue for longer than its timeout"""


class EtlJobNotFoundError(LookupError):
    """ETL job id does not exist"""


class MetaApiError(RuntimeError):
    """Error response from the Meta Graph API

    `error` holds the Graph error object ({"message", "code", "error_subcode", ...}).
    """

    def __init__(self, message: str, status: int = None, error: dict = None):
        self.status = status
        self.error = error or {}
        super().__init__(message)
