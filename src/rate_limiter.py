import threading
import time
from typing import Callable, Optional

from verification_errors import RateLimitTimeout


class TokenBucket:
    """外部抽出サービス向けトークンバケット。空のときは Condition で待機する"""

    def __init__(self, name: str, rate_per_sec: float, burst: int, clock: Callable[[], float] = time.monotonic):
        if rate_per_sec <= 0 or burst < 1:
            raise ValueError("rate_per_sec must be > 0 and burst >= 1")
        self.name = name
        self.rate = rate_per_sec
        self.capacity = float(burst)
        self._tokens = float(burst)
        self._clock = clock
        self._updated = clock()
        self._cond = threading.Condition()

    def _refill(self):
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    def try_acquire(self) -> bool:
        with self._cond:
            self._refill()
            if self._tokens >= 1:
                self._tokens -= 1
                return True
            return False

    def acquire(self, timeout: Optional[float] = None):
        """トークンを1つ取得する。timeout 秒以内に取れなければ RateLimitTimeout"""
        start = self._clock()
        with self._cond:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                wait = (1 - self._tokens) / self.rate
                if timeout is not None:
                    remaining = timeout - (self._clock() - start)
                    if remaining <= 0:
                        raise RateLimitTimeout(self.name, self._clock() - start)
                    wait = min(wait, remaining)
                self._cond.wait(wait)

    @classmethod
    def from_config(cls, name: str, cfg: dict) -> "TokenBucket":
        rl = cfg.get("rate_limits", {}).get(name, {})
        return cls(name, float(rl.get("rate_per_sec", 1.0)), int(rl.get("burst", 1)))
