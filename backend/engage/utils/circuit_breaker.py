# /engage/utils/circuit_breaker.py

import asyncio
import time
import logging
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CircuitOpenError(Exception):
    """Raised when a call is blocked because the breaker is open."""


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """In-process breaker, used where state does not need to be shared."""

    def __init__(self, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: float | None = None
        self.state = CircuitState.CLOSED
        self._lock = asyncio.Lock()

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        async with self._lock:
            if self.state == CircuitState.OPEN:
                if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
                    self.state = CircuitState.HALF_OPEN
                    self.success_count = 0
                else:
                    raise CircuitOpenError(f"Circuit breaker is OPEN for {getattr(func, '__name__', func)}")
        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._record(success=False)
            raise
        await self._record(success=True)
        return result

    async def _record(self, success: bool):
        async with self._lock:
            if success:
                if self.state == CircuitState.HALF_OPEN:
                    self.success_count += 1
                    if self.success_count >= self.success_threshold:
                        self.state = CircuitState.CLOSED
                        self.failure_count = 0
                        logger.info("Circuit breaker has been reset to CLOSED.")
                else:
                    self.failure_count = 0
                return
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                logger.error(f"Circuit breaker has OPENED after {self.failure_count} failures.")


class RedisCircuitBreaker:
    """
    Breaker whose state lives in Redis so the API workers and the scheduler
    process stop hammering a failing upstream (WhatsApp, Shopify) together.
    """

    def __init__(self, redis_client: Any, service_name: str, failure_threshold: int = 5, timeout: int = 60, success_threshold: int = 3):
        self.redis = redis_client
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_key = f"cb_failures:{service_name}"
        self.success_key = f"cb_success:{service_name}"
        self.state_key = f"cb_state:{service_name}"
        self.last_failure_key = f"cb_last_failure:{service_name}"

    async def is_open(self) -> bool:
        try:
            state = await self._get_state()
            if state != "OPEN":
                return False
            last_failure_raw = await self.redis.get(self.last_failure_key)
            if last_failure_raw and time.time() - float(last_failure_raw) > self.timeout:
                await self._set_state("HALF_OPEN")
                return False
            return True
        except Exception as e:
            # Redis being down must not take messaging down with it.
            logger.error(f"Could not check circuit breaker state for {self.service_name}: {e}")
            return False

    async def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        if not self.redis:
            return await func(*args, **kwargs)

        if await self.is_open():
            raise CircuitOpenError(f"Circuit breaker is OPEN for {self.service_name}")

        try:
            result = await func(*args, **kwargs)
        except Exception:
            await self._on_failure()
            raise
        await self._on_success()
        return result

    async def _get_state(self) -> str:
        state = await self.redis.get(self.state_key)
        return state.decode() if state else "CLOSED"

    async def _set_state(self, state: str):
        await self.redis.set(self.state_key, state, ex=self.timeout * 2)

    async def _on_success(self):
        try:
            if await self._get_state() == "HALF_OPEN":
                success_count = await self.redis.incr(self.success_key)
                if success_count >= self.success_threshold:
                    await self._set_state("CLOSED")
                    await self.redis.delete(self.failure_key, self.success_key)
                    logger.info(f"Circuit breaker reset to CLOSED for service: {self.service_name}")
            else:
                await self.redis.delete(self.failure_key)
        except Exception as e:
            logger.error(f"Error in circuit breaker success handler for {self.service_name}: {e}")

    async def _on_failure(self):
        try:
            failure_count = await self.redis.incr(self.failure_key)
            await self.redis.set(self.last_failure_key, str(time.time()), ex=self.timeout * 2)
            if failure_count >= self.failure_threshold:
                await self._set_state("OPEN")
                logger.error(f"Circuit breaker OPENED for '{self.service_name}' after {failure_count} failures.")
        except Exception as e:
            logger.error(f"Error in circuit breaker failure handler for {self.service_name}: {e}")
