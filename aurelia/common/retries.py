import asyncio
import functools
import random
from typing import Callable, Optional

from aurelia.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from aurelia.common.custom_exceptions import AppError, GatewayError, GatewayUnavailableError
from aurelia.common.logging_setup import get_logger

logger = get_logger("aurelia.retries")


def is_transient_gateway_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, GatewayError):
        return exc.retryable
    return False


def counts_against_circuit(exc: BaseException) -> bool:
    # 4xx answers mean the gateway is up; only outages trip the breaker
    return isinstance(exc, GatewayUnavailableError) or not isinstance(exc, AppError)


async def _sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


def retry_with_circuit(
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    factor: float = 2.0,
    max_delay: float = 8.0,
    jitter: float = 0.15,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
    circuit: Optional[CircuitBreaker] = None,
):
    """Retry an async call on transient failures, guarded by an optional circuit breaker.

    `attempts`, `base_delay` and `circuit` may be overridden per call through
    attributes on the bound instance (`_max_attempts`, `_backoff_base`, `_circuit`),
    which lets one gateway class serve differently configured clients.
    """
    if if_retryable is None:
        if_retryable = is_transient_gateway_error

    def deco(fn: Callable):
        @functools.wraps(fn)
        async def wrapper(self, *args, **kwargs):
            max_attempts = getattr(self, "_max_attempts", attempts)
            backoff_base = getattr(self, "_backoff_base", base_delay)
            breaker = getattr(self, "_circuit", circuit)

            for attempt in range(1, max_attempts + 1):
                if breaker is not None:
                    try:
                        await breaker.before_call()
                    except CircuitOpenError as exc:
                        raise GatewayUnavailableError(str(exc)) from exc

                try:
                    result = await fn(self, *args, **kwargs)
                except asyncio.CancelledError:
                    if breaker is not None:
                        breaker.release_probe()
                    raise
                except Exception as exc:
                    if breaker is not None:
                        await breaker.after_call(not counts_against_circuit(exc))

                    if not if_retryable(exc) or attempt == max_attempts:
                        raise

                    delay = min(max_delay, backoff_base * (factor ** (attempt - 1)))
                    logger.warning(
                        "gateway.call.retry",
                        extra={"call": fn.__name__, "attempt": attempt, "delay": delay, "error": str(exc)},
                    )
                    await _sleep_with_jitter(delay, jitter)
                    continue

                if breaker is not None:
                    await breaker.after_call(True)
                return result

        return wrapper
    return deco
