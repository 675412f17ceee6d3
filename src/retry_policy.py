import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from loguru import logger


T = TypeVar("T")


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 0.25  # 遅延に対する±割合

    @classmethod
    def from_config(cls, cfg: dict) -> "RetryPolicy":
        r = cfg.get("retry", {})
        return cls(
            max_attempts=int(r.get("max_attempts", 3)),
            base_delay=float(r.get("base_delay", 0.5)),
            max_delay=float(r.get("max_delay", 8.0)),
            jitter=float(r.get("jitter", 0.25)),
        )

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        """attempt回目（1始まり）の失敗後に待つ秒数"""
        backoff = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        spread = backoff * self.jitter * (rand() * 2 - 1)
        return max(0.0, backoff + spread)


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...],
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    """retry_on の例外を指数バックオフ+ジッタで再試行する。

    例外に retryable=False が付いていれば即座に送出する。
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as e:
            if not getattr(e, "retryable", True) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "{label} failed (attempt {attempt}/{max}): {err}; retrying in {delay:.2f}s",
                label=label, attempt=attempt, max=policy.max_attempts, err=e, delay=delay,
            )
            sleep(delay)
