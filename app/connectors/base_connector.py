"""
Base connector class for the ad and commerce platforms
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from datetime import datetime
import asyncio
import time

from app.exceptions import AccountRateLimitedError, OrphanedConnectionError
from app.utils.logger import log
from app.utils.retry import RetryStats, is_retryable_error, calculate_backoff

# Retrying these cannot help within one sync
NON_RETRYABLE_ERRORS = (AccountRateLimitedError, OrphanedConnectionError)


class BaseConnector(ABC):
    """Base class for all platform connectors"""

    # Retry configuration (can be overridden by subclasses)
    RETRY_MAX_ATTEMPTS = 3
    RETRY_BASE_DELAY = 2.0  # seconds
    RETRY_MAX_DELAY = 60.0  # seconds

    def __init__(self, name: str):
        self.name = name
        self.last_sync = None
        self.sync_count = 0
        self.error_count = 0
        self.retry_count = 0

    @abstractmethod
    async def connect(self) -> bool:
        """Open a session with the platform"""
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Check the stored credential still works"""
        pass

    @abstractmethod
    async def fetch_data(self, start_date: datetime, end_date: datetime, **kwargs) -> Dict[str, Any]:
        """Fetch every requested entity for the window"""
        pass

    async def close(self) -> None:
        """Release the platform session"""

    async def sync(self, start_date: datetime, end_date: datetime, **kwargs) -> Dict[str, Any]:
        """
        Validate the connection and fetch data, retrying transient failures.

        Never raises; failures come back as {"success": False, "error": ...}.

        Args:
            start_date: Start of the sync window
            end_date: End of the sync window
            **kwargs: Passed through to fetch_data (e.g. entities=["campaigns"])

        Returns:
            Dict with keys: success, source, data/error, sync_time, duration, retry_stats
        """
        log.info(f"Starting sync for {self.name} from {start_date} to {end_date}")
        start_time = time.time()
        stats = RetryStats()

        try:
            # Validate the credential first (with retry)
            connection_valid = await self._retry_operation(
                self.validate_connection,
                operation_name="validate_connection",
                stats=stats
            )
            if not connection_valid:
                raise ConnectionError(f"Connection validation failed for {self.name}")

            data = await self._retry_operation(
                lambda: self.fetch_data(start_date, end_date, **kwargs),
                operation_name="fetch_data",
                stats=stats
            )

            # Update metrics
            self.last_sync = datetime.utcnow()
            self.sync_count += 1
            stats.success = True
            elapsed = time.time() - start_time

            if stats.attempts:
                log.info(
                    f"Sync completed for {self.name} in {elapsed:.2f}s "
                    f"(after {stats.attempts} retries, {stats.total_delay_seconds:.1f}s delay)"
                )
            else:
                log.info(f"Sync completed for {self.name} in {elapsed:.2f}s")

            return {
                "success": True,
                "source": self.name,
                "data": data,
                "sync_time": self.last_sync,
                "duration": elapsed,
                "retry_stats": stats.to_dict()
            }

        except Exception as e:
            self.error_count += 1
            elapsed = time.time() - start_time
            log.error(f"Sync failed for {self.name} after {stats.attempts} retries: {e}")

            return {
                "success": False,
                "source": self.name,
                "error": str(e),
                "error_type": type(e).__name__,
                "sync_time": datetime.utcnow(),
                "duration": elapsed,
                "retry_stats": stats.to_dict()
            }

        finally:
            await self.close()

    async def _retry_operation(
        self,
        operation,
        operation_name: str = "operation",
        stats: Optional[RetryStats] = None
    ) -> Any:
        """
        Run an operation, retrying transient errors with exponential backoff.

        Args:
            operation: Callable returning a value or a coroutine
            operation_name: Name for logging
            stats: Records one attempt per retry (first tries are not counted)

        Returns:
            Result of the operation
        """
        for attempt in range(1, self.RETRY_MAX_ATTEMPTS + 1):
            try:
                result = operation()

                # Lambdas wrapping async calls hand back a coroutine
                if asyncio.iscoroutine(result):
                    result = await result

                if attempt > 1:
                    self.retry_count += attempt - 1
                return result

            except Exception as e:
                # Rate-limited accounts and orphaned connections are handled by the queue
                retryable = not isinstance(e, NON_RETRYABLE_ERRORS) and is_retryable_error(e)
                if attempt >= self.RETRY_MAX_ATTEMPTS or not retryable:
                    raise

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.RETRY_BASE_DELAY,
                    max_delay=self.RETRY_MAX_DELAY
                )
                if stats is not None:
                    stats.record_attempt(error=e, delay=delay)

                log.warning(
                    f"{self.name} {operation_name} attempt {attempt} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)

        raise RuntimeError("Retry exhausted")

    def get_status(self) -> Dict[str, Any]:
        """Get connector status"""
        return {
            "name": self.name,
            "last_sync": self.last_sync,
            "sync_count": self.sync_count,
            "error_count": self.error_count,
            "retry_count": self.retry_count,
            "error_rate": self.error_count / max(self.sync_count, 1),
            "retry_config": {
                "max_attempts": self.RETRY_MAX_ATTEMPTS,
                "base_delay": self.RETRY_BASE_DELAY,
                "max_delay": self.RETRY_MAX_DELAY
            }
        }
