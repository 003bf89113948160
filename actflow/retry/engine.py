"""Classified, backoff-based retry of remote calls."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from ..config import ActflowConfig, CircuitBreakerConfig
from ..constants import DEFAULT_MAX_TOTAL_RETRY_TIME, DEFAULT_RATE_LIMIT_BUFFER
from ..errors import CircuitOpenError, RetryCancelledError, RetryExhaustedError, TransientError
from .breaker import CircuitBreaker, CircuitState
from .classify import ErrorType, classify_error, extract_rate_limit_info, is_retryable
from .models import PlatformStats, RetryAttemptContext
from .policy import DEFAULT_POLICIES, RetryPolicy, compute_delay, default_policy, merge_policy

logger = logging.getLogger(__name__)

Call = Callable[[], Awaitable[Any]]
AuthRefresher = Callable[[], Awaitable[bool]]
SleepFn = Callable[[float], Awaitable[None]]
AttemptObserver = Callable[[RetryAttemptContext], None]

# Failures that say something about the target's health rather than the request.
BREAKER_ERROR_TYPES = frozenset({ErrorType.NETWORK, ErrorType.SERVER_ERROR, ErrorType.RATE_LIMIT})


class RetryEngine:
    """Wraps a single remote call and retries it according to a policy.

    Policies are looked up per platform (``trello``, ``slack`` ...). Auth
    refresh callbacks are injected per platform and return ``True`` when new
    credentials are in place. ``sleep`` is awaited for every backoff wait and
    can be replaced in tests.

    With ``circuit_breaker`` enabled each platform gets a :class:`CircuitBreaker`;
    network, server and rate-limit failures count towards opening it and calls
    to an open circuit fail at once with :class:`CircuitOpenError`.
    """

    def __init__(
        self,
        policies: Optional[Mapping[str, RetryPolicy]] = None,
        *,
        auth_refreshers: Optional[Mapping[str, AuthRefresher]] = None,
        sleep: SleepFn = asyncio.sleep,
        rng: Optional[random.Random] = None,
        rate_limit_buffer: float = DEFAULT_RATE_LIMIT_BUFFER,
        max_total_retry_time: float = DEFAULT_MAX_TOTAL_RETRY_TIME,
        on_attempt: Optional[AttemptObserver] = None,
        circuit_breaker: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._policies: Dict[str, RetryPolicy] = dict(DEFAULT_POLICIES)
        self._policies.update(policies or {})
        self._auth_refreshers: Dict[str, AuthRefresher] = dict(auth_refreshers or {})
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.rate_limit_buffer = rate_limit_buffer
        self.max_total_retry_time = max_total_retry_time
        self.on_attempt = on_attempt
        self._stats: Dict[str, PlatformStats] = {}
        self._stats_lock = threading.Lock()
        self._breaker_config = circuit_breaker
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    @classmethod
    def from_config(
        cls,
        config: ActflowConfig,
        *,
        auth_refreshers: Optional[Mapping[str, AuthRefresher]] = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> "RetryEngine":
        policies = {
            platform: merge_policy(default_policy(platform), override.model_dump())
            for platform, override in config.retry.policies.items()
        }
        return cls(
            policies,
            auth_refreshers=auth_refreshers,
            sleep=sleep,
            rate_limit_buffer=config.retry.rate_limit_buffer,
            max_total_retry_time=config.retry.max_total_retry_time,
            circuit_breaker=config.retry.circuit_breaker,
        )

    # ------------------------------------------------------------------
    # Policy management
    def get_policy(self, platform: str) -> RetryPolicy:
        return self._policies.get(platform.lower()) or default_policy(platform)

    def set_policy(self, platform: str, policy: RetryPolicy) -> None:
        self._policies[platform.lower()] = policy

    def reset_policy(self, platform: str) -> None:
        self._policies[platform.lower()] = default_policy(platform)

    def register_auth_refresher(self, platform: str, refresher: AuthRefresher) -> None:
        self._auth_refreshers[platform.lower()] = refresher

    # ------------------------------------------------------------------
    # Circuit breakers
    def circuit_breaker(self, platform: str) -> Optional[CircuitBreaker]:
        """The breaker guarding ``platform``, or ``None`` when breakers are disabled."""
        conf = self._breaker_config
        if conf is None or not conf.enabled:
            return None
        platform = platform.lower()
        breaker = self._breakers.get(platform)
        if breaker is None:
            breaker = CircuitBreaker(
                platform,
                failure_threshold=conf.failure_threshold,
                failure_window=conf.failure_window,
                reset_timeout=conf.reset_timeout,
                success_threshold=conf.success_threshold,
                clock=self._clock,
            )
            self._breakers[platform] = breaker
        return breaker

    def circuit_states(self) -> Dict[str, CircuitState]:
        return {platform: breaker.state for platform, breaker in self._breakers.items()}

    def reset_circuits(self, platform: Optional[str] = None) -> None:
        for name, breaker in self._breakers.items():
            if platform is None or name == platform.lower():
                breaker.reset()

    # ------------------------------------------------------------------
    # Retry loop
    async def retry(
        self,
        fn: Call,
        *,
        platform: str = "generic",
        operation: str = "call",
        policy: Optional[RetryPolicy] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> Any:
        """Call ``fn`` until it succeeds or the policy says stop.

        Raises :class:`RetryExhaustedError` when the error is not retryable
        or attempts run out, and :class:`RetryCancelledError` when
        ``cancel_event`` is set before an attempt or during a wait.
        """
        platform = platform.lower()
        policy = policy or self.get_policy(platform)
        if max_retries is not None:
            policy = policy.model_copy(update={"max_retries": max_retries})
        timeout = timeout if timeout is not None else policy.timeout
        max_attempts = policy.max_attempts

        self._update_stats(platform, total_operations=1)
        started = time.monotonic()
        waited = 0.0
        auth_refreshed = False
        attempt = 0
        last_error: Optional[BaseException] = None
        last_type = ErrorType.UNKNOWN

        breaker = self.circuit_breaker(platform)

        while attempt < max_attempts:
            if cancel_event is not None and cancel_event.is_set():
                raise self._cancelled(platform, operation, attempt)
            if breaker is not None and not breaker.allow():
                last_error = CircuitOpenError(platform, breaker.retry_at)
                last_type = ErrorType.SERVER_ERROR
                self._update_stats(platform, circuit_rejections=1)
                break
            attempt += 1
            try:
                result = await self._attempt(fn, timeout, operation)
            except Exception as exc:
                last_error = exc
                last_type = classify_error(exc)
                self._record_error(platform, last_type)
                if breaker is not None and last_type in BREAKER_ERROR_TYPES:
                    breaker.record_failure()

                if last_type is ErrorType.AUTH:
                    if await self._try_refresh(platform, policy, auth_refreshed):
                        auth_refreshed = True
                        self._notify(platform, operation, attempt, max_attempts, last_type, exc, 0.0, waited, True)
                        logger.info(
                            f"[{platform}] {operation}: credentials refreshed, retrying immediately"
                        )
                        continue
                    auth_refreshed = True
                    break

                if not is_retryable(exc, last_type, policy.retryable_errors):
                    logger.warning(
                        f"[{platform}] {operation} attempt {attempt}/{max_attempts} failed "
                        f"({last_type.value}), not retryable: {exc}"
                    )
                    break
                if attempt >= max_attempts:
                    break

                delay = self._delay_for(exc, last_type, attempt, policy, platform)
                if waited + delay > self.max_total_retry_time:
                    logger.warning(
                        f"[{platform}] {operation}: next wait of {delay:.2f}s exceeds the "
                        f"{self.max_total_retry_time}s retry budget"
                    )
                    break

                self._notify(platform, operation, attempt, max_attempts, last_type, exc, delay, waited, auth_refreshed)
                logger.warning(
                    f"[{platform}] {operation} attempt {attempt}/{max_attempts} failed "
                    f"({last_type.value}): {exc}; retrying in {delay:.2f}s"
                )
                self._update_stats(platform, total_retries=1)
                if await self._wait(delay, cancel_event):
                    raise self._cancelled(platform, operation, attempt)
                waited += delay
            else:
                if breaker is not None:
                    breaker.record_success()
                elapsed = time.monotonic() - started
                if attempt == 1:
                    self._update_stats(platform, successful_first_attempt=1, total_success_time=elapsed)
                else:
                    self._update_stats(platform, successful_after_retries=1, total_success_time=elapsed)
                    logger.info(f"[{platform}] {operation} succeeded on attempt {attempt}")
                return result

        self._update_stats(platform, failed_after_retries=1)
        logger.error(
            f"[{platform}] {operation} gave up after {attempt} attempt(s) "
            f"({last_type.value}): {last_error}"
        )
        raise RetryExhaustedError(
            f"{platform}.{operation} failed after {attempt} attempt(s): {last_error}",
            attempts=attempt,
            last_error=last_error,
            error_type=last_type.value,
            platform=platform,
            operation=operation,
        ) from last_error

    async def _attempt(self, fn: Call, timeout: Optional[float], operation: str) -> Any:
        if not timeout:
            return await fn()
        try:
            return await asyncio.wait_for(fn(), timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError(
                f"{operation} timed out after {timeout}s", code="ETIMEDOUT"
            ) from exc

    def _delay_for(
        self,
        exc: BaseException,
        error_type: ErrorType,
        attempt: int,
        policy: RetryPolicy,
        platform: str,
    ) -> float:
        delay = compute_delay(attempt, policy, self._rng)
        if error_type is not ErrorType.RATE_LIMIT:
            return delay
        self._update_stats(platform, rate_limit_hits=1)
        reset_wait = extract_rate_limit_info(exc).wait_seconds()
        if reset_wait is None:
            return delay
        return max(reset_wait, delay) + self.rate_limit_buffer

    async def _try_refresh(self, platform: str, policy: RetryPolicy, already_used: bool) -> bool:
        refresher = self._auth_refreshers.get(platform)
        if already_used or refresher is None or not policy.refresh_auth_on_error:
            return False
        try:
            refreshed = bool(await refresher())
        except Exception as exc:
            logger.error(f"[{platform}] credential refresh failed: {exc}", exc_info=True)
            return False
        if refreshed:
            self._update_stats(platform, token_refreshes=1)
        return refreshed

    async def _wait(self, delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay``; return ``True`` if cancelled meanwhile."""
        if cancel_event is None:
            await self._sleep(delay)
            return False
        if cancel_event.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(delay))
        canceller = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({sleeper, canceller}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, canceller):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, canceller, return_exceptions=True)
        return cancel_event.is_set()

    def _cancelled(self, platform: str, operation: str, attempts: int) -> RetryCancelledError:
        self._update_stats(platform, cancelled=1)
        logger.info(f"[{platform}] {operation} cancelled after {attempts} attempt(s)")
        return RetryCancelledError(
            f"{platform}.{operation} cancelled after {attempts} attempt(s)", attempts=attempts
        )

    def _notify(
        self,
        platform: str,
        operation: str,
        attempt: int,
        max_attempts: int,
        error_type: ErrorType,
        exc: BaseException,
        delay: float,
        waited: float,
        auth_refreshed: bool,
    ) -> None:
        if self.on_attempt is None:
            return
        self.on_attempt(
            RetryAttemptContext(
                platform=platform,
                operation=operation,
                attempt=attempt,
                max_attempts=max_attempts,
                error_type=error_type.value,
                last_error=str(exc),
                next_delay=delay,
                elapsed_wait=waited,
                auth_refreshed=auth_refreshed,
            )
        )

    # ------------------------------------------------------------------
    # Statistics
    def _update_stats(self, platform: str, **counters: float) -> None:
        with self._stats_lock:
            stats = self._stats.setdefault(platform, PlatformStats())
            for name, amount in counters.items():
                setattr(stats, name, getattr(stats, name) + amount)

    def _record_error(self, platform: str, error_type: ErrorType) -> None:
        with self._stats_lock:
            stats = self._stats.setdefault(platform, PlatformStats())
            stats.errors_by_type[error_type.value] = stats.errors_by_type.get(error_type.value, 0) + 1

    def statistics(self, platform: str) -> PlatformStats:
        with self._stats_lock:
            return self._stats.get(platform.lower(), PlatformStats()).model_copy(deep=True)

    def all_statistics(self) -> Dict[str, PlatformStats]:
        with self._stats_lock:
            return {p: s.model_copy(deep=True) for p, s in self._stats.items()}

    def reset_statistics(self, platform: Optional[str] = None) -> None:
        with self._stats_lock:
            if platform is None:
                self._stats.clear()
            else:
                self._stats.pop(platform.lower(), None)

    def format_statistics(self) -> str:
        lines = ["Retry statistics:"]
        for platform, stats in sorted(self.all_statistics().items()):
            lines.append(f"  {platform}:")
            lines.append(f"    operations: {stats.total_operations}")
            lines.append(f"    first-attempt successes: {stats.successful_first_attempt}")
            lines.append(f"    successes after retry: {stats.successful_after_retries}")
            lines.append(f"    failures: {stats.failed_after_retries}")
            lines.append(f"    retries: {stats.total_retries}")
            lines.append(f"    rate limit hits: {stats.rate_limit_hits}")
            lines.append(f"    circuit rejections: {stats.circuit_rejections}")
            lines.append(f"    token refreshes: {stats.token_refreshes}")
            lines.append(f"    avg success time: {stats.avg_success_time:.3f}s")
            if stats.errors_by_type:
                errors = ", ".join(f"{k}={v}" for k, v in sorted(stats.errors_by_type.items()))
                lines.append(f"    errors: {errors}")
        return "\n".join(lines)
