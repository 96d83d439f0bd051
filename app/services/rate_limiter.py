"""
Meta API Rate Limiter

Serialises Graph API calls per ad account to avoid "User request limit
reached" (code 17, subcode 2446079) errors.

- Requests wait in one priority-ordered queue (higher priority first)
- Calls to the same account are spaced by a minimum interval
- While an account is rate limited new requests fail fast with
  AccountRateLimitedError so callers can fall back to stored data
- Rate-limit errors are retried up to 3 times with 2s / 4s / 8s backoff
- A request still queued when its timeout expires fails with
  RateLimitTimeoutError; once running it is never cut off
"""
import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.config import get_settings
from app.exceptions import AccountRateLimitedError, RateLimitTimeoutError
from app.utils.logger import log

settings = get_settings()

RequestFactory = Callable[[], Awaitable[Any]]


@dataclass
class QueuedRequest:
    id: str
    account_id: str
    request: RequestFactory
    future: asyncio.Future
    priority: int = 0
    retry_count: int = 0


@dataclass
class AccountState:
    last_request_time: float = 0.0
    request_count: int = 0
    is_rate_limited: bool = False
    rate_limit_reset_time: float = 0.0


def _graph_error(error: Any) -> Dict[str, Any]:
    """Pull the Graph API error object out of an exception or response body"""
    body = error if isinstance(error, dict) else getattr(error, "error", None)
    if not isinstance(body, dict):
        return {}
    nested = body.get("error")
    return nested if isinstance(nested, dict) else body


class MetaRateLimiter:
    """Per-account request queue for the Meta Marketing API"""

    def __init__(
        self,
        min_interval: Optional[float] = None,
        reset_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = settings.rate_limit_min_interval_seconds if min_interval is None else min_interval
        self.reset_seconds = settings.rate_limit_reset_seconds if reset_seconds is None else reset_seconds
        self.max_retries = settings.rate_limit_max_retries if max_retries is None else max_retries
        self.retry_base_delay = retry_base_delay
        self.clock = clock

        self._queue: List[QueuedRequest] = []
        self._processing = False
        self._worker: Optional[asyncio.Task] = None
        self._account_states: Dict[str, AccountState] = {}

    async def execute_request(
        self,
        account_id: str,
        request: RequestFactory,
        priority: int = 0,
        request_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Queue a Graph API call and wait for its result.

        Args:
            account_id: Ad account the call counts against
            request: Zero-argument coroutine function performing the call
            priority: Higher values run first
            request_id: Identifier used in logs
            timeout: Seconds the request may wait in the queue

        Raises:
            AccountRateLimitedError: account is cooling down
            RateLimitTimeoutError: request was still queued after timeout
        """
        loop = asyncio.get_running_loop()
        timeout = settings.rate_limit_request_timeout_seconds if timeout is None else timeout

        queued = QueuedRequest(
            id=request_id or f"{account_id}-{int(time.time() * 1000)}-{random.random():.6f}",
            account_id=account_id,
            request=request,
            future=loop.create_future(),
            priority=priority,
        )

        timer = loop.call_later(timeout, self._expire, queued, timeout)
        queued.future.add_done_callback(lambda _: timer.cancel())

        self._enqueue(queued)
        log.debug(f"[MetaRateLimiter] Queued request {queued.id} for account {account_id} (priority: {priority})")
        self._start_processing(loop)

        return await queued.future

    # ------------------------------------------------------------------
    # Queue handling
    # ------------------------------------------------------------------

    def _enqueue(self, queued: QueuedRequest, front: bool = False) -> None:
        if front:
            self._queue.insert(0, queued)
            return
        index = next(
            (i for i, item in enumerate(self._queue) if item.priority < queued.priority),
            len(self._queue),
        )
        self._queue.insert(index, queued)

    def _expire(self, queued: QueuedRequest, timeout: float) -> None:
        if queued in self._queue:
            self._queue.remove(queued)
            if not queued.future.done():
                queued.future.set_exception(
                    RateLimitTimeoutError(f"Request {queued.id} timed out after {timeout}s")
                )

    def _requeue(self, queued: QueuedRequest) -> None:
        if queued.future.done():
            return
        self._enqueue(queued, front=True)
        self._start_processing(asyncio.get_running_loop())

    def _start_processing(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._processing or not self._queue:
            return
        self._processing = True
        self._worker = loop.create_task(self._process_queue())

    async def _process_queue(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while self._queue:
                queued = self._queue.pop(0)
                if queued.future.done():
                    continue

                state = self._state(queued.account_id)
                if state.is_rate_limited:
                    wait = state.rate_limit_reset_time - self.clock()
                    if wait <= 0:
                        self._reset_account_state(queued.account_id)
                    elif queued.retry_count == 0:
                        log.warning(
                            f"[MetaRateLimiter] Account {queued.account_id} is rate limited, "
                            f"failing fast instead of waiting {round(wait)}s"
                        )
                        queued.future.set_exception(AccountRateLimitedError(queued.account_id, wait))
                        continue

                await self._ensure_min_interval(queued.account_id)

                try:
                    log.debug(f"[MetaRateLimiter] Executing request {queued.id} for account {queued.account_id}")
                    result = await queued.request()
                except Exception as e:
                    log.error(f"[MetaRateLimiter] Request {queued.id} failed: {e}")
                    if self.is_rate_limit_error(e):
                        self._mark_rate_limited(queued.account_id)
                        if queued.retry_count < self.max_retries:
                            queued.retry_count += 1
                            delay = self.retry_base_delay * (2 ** queued.retry_count)
                            log.info(
                                f"[MetaRateLimiter] Retrying request {queued.id} in {delay:.1f}s "
                                f"(attempt {queued.retry_count + 1})"
                            )
                            loop.call_later(delay, self._requeue, queued)
                            continue
                    if not queued.future.done():
                        queued.future.set_exception(e)
                    continue

                self._record_success(queued.account_id)
                if not queued.future.done():
                    queued.future.set_result(result)
        finally:
            self._processing = False

    # ------------------------------------------------------------------
    # Account state
    # ------------------------------------------------------------------

    def _state(self, account_id: str) -> AccountState:
        return self._account_states.setdefault(account_id, AccountState())

    def _reset_account_state(self, account_id: str) -> None:
        self._account_states[account_id] = AccountState()

    def _mark_rate_limited(self, account_id: str) -> None:
        state = self._state(account_id)
        state.is_rate_limited = True
        state.rate_limit_reset_time = self.clock() + self.reset_seconds
        log.warning(f"[MetaRateLimiter] Rate limit detected for account {account_id}")

    def _record_success(self, account_id: str) -> None:
        now = self.clock()
        state = self._state(account_id)
        if now - state.last_request_time > self.reset_seconds:
            state.request_count = 0
        state.last_request_time = now
        state.request_count += 1
        state.is_rate_limited = False

    async def _ensure_min_interval(self, account_id: str) -> None:
        state = self._account_states.get(account_id)
        if state is None or state.last_request_time == 0:
            return
        elapsed = self.clock() - state.last_request_time
        if elapsed < self.min_interval:
            await asyncio.sleep(self.min_interval - elapsed)

    def is_account_rate_limited(self, account_id: str) -> bool:
        state = self._account_states.get(account_id)
        return bool(state and state.is_rate_limited and self.clock() < state.rate_limit_reset_time)

    @staticmethod
    def is_rate_limit_error(error: Any) -> bool:
        """
        Meta throttling errors:
          code 17 / subcode 2446079 - User request limit reached
          code 80004 - too many calls to this ad account
        """
        body = _graph_error(error)
        code = body.get("code")
        if code == 17 and body.get("error_subcode") == 2446079:
            return True
        if code == 80004:
            return True

        message = str(body.get("message") or error).lower()
        return "rate limit" in message or "too many calls" in message

    def get_queue_status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "queue_length": len(self._queue),
            "processing": self._processing,
            "account_states": [
                {
                    "account_id": account_id,
                    "is_rate_limited": state.is_rate_limited,
                    "request_count": state.request_count,
                    "rate_limit_reset_in": max(0.0, round(state.rate_limit_reset_time - now, 1))
                    if state.is_rate_limited else 0.0,
                }
                for account_id, state in self._account_states.items()
            ],
        }


meta_rate_limiter = MetaRateLimiter()


async def with_meta_rate_limit(
    account_id: str,
    request: RequestFactory,
    priority: int = 0,
    request_id: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Any:
    """Run a Graph API call through the shared limiter"""
    return await meta_rate_limiter.execute_request(account_id, request, priority, request_id, timeout)
