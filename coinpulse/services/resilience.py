"""
外部行情源调用的重试与熔断
- RetryPolicy: 指数退避重试
- CircuitBreaker: 连续失败达到阈值后快速失败, 冷却后放行一次试探调用
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitOpenError(RuntimeError):
    """熔断器打开, 调用未发出"""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"circuit '{name}' is open, retry after {retry_after:.1f}s")
        self.name = name
        self.retry_after = retry_after


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间 (attempt 从 1 开始)"""
        return min(self.base_delay * (self.factor ** (attempt - 1)), self.max_delay)


def _always_failure(exc: BaseException) -> bool:
    return True


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        call_timeout: Optional[float] = 10.0,
        is_failure: Callable[[BaseException], bool] = _always_failure,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_timeout = float(reset_timeout)
        self.call_timeout = call_timeout
        self._is_failure = is_failure
        self._clock = clock

        self._state = CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        if self._state == OPEN and self._cooldown_left() <= 0:
            return HALF_OPEN
        return self._state

    @property
    def failures(self) -> int:
        return self._failures

    def _cooldown_left(self) -> float:
        return self.reset_timeout - (self._clock() - self._opened_at)

    def _before_call(self) -> None:
        if self._state == CLOSED:
            return
        if self._state == OPEN:
            left = self._cooldown_left()
            if left > 0:
                raise CircuitOpenError(self.name, left)
            self._state = HALF_OPEN
            self._trial_in_flight = False
        # half-open: 只放行一次试探调用
        if self._trial_in_flight:
            raise CircuitOpenError(self.name, 0.0)
        self._trial_in_flight = True

    def _on_success(self) -> None:
        if self._state != CLOSED:
            logger.info(f"circuit '{self.name}' closed after successful trial call")
        self._state = CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def _on_failure(self, exc: BaseException) -> None:
        self._trial_in_flight = False
        if self._state == HALF_OPEN:
            self._open(exc)
            return
        self._failures += 1
        if self._failures >= self.failure_threshold:
            self._open(exc)

    def _open(self, exc: BaseException) -> None:
        self._state = OPEN
        self._opened_at = self._clock()
        logger.warning(
            f"circuit '{self.name}' opened after {self._failures} failures "
            f"(cooldown {self.reset_timeout:.0f}s): {exc!r}"
        )

    def _on_ignored(self) -> None:
        # 不计入失败的异常 (例如 4xx) 也说明对端可达
        if self._state == HALF_OPEN:
            self._on_success()

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        self._before_call()
        try:
            if self.call_timeout:
                result = await asyncio.wait_for(fn(*args, **kwargs), timeout=self.call_timeout)
            else:
                result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            self._trial_in_flight = False
            raise
        except Exception as exc:
            if self._is_failure(exc):
                self._on_failure(exc)
            else:
                self._on_ignored()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CLOSED
        self._failures = 0
        self._trial_in_flight = False


async def resilient_call(
    fn: Callable[..., Awaitable[Any]],
    *args,
    retry: RetryPolicy,
    breaker: Optional[CircuitBreaker] = None,
    is_retryable: Callable[[BaseException], bool] = _always_failure,
    description: str = "",
    **kwargs,
) -> Any:
    """
    每次尝试都经过熔断器; 熔断打开时立即失败, 不再重试
    """
    label = description or getattr(fn, "__name__", "call")
    attempt = 0
    while True:
        attempt += 1
        try:
            if breaker is not None:
                return await breaker.call(fn, *args, **kwargs)
            return await fn(*args, **kwargs)
        except CircuitOpenError:
            raise
        except Exception as exc:
            if attempt >= retry.max_attempts or not is_retryable(exc):
                raise
            delay = retry.delay_for(attempt)
            logger.info(f"[Retry] {label} attempt {attempt}/{retry.max_attempts} failed: {exc!r}; retry in {delay:.2f}s")
            await asyncio.sleep(delay)
