"""
FaultInjector: simulate a bad network on the response path of a session.

Turn on gradually:
- delay_ms_min/max: extra latency (jitter) before each reply
- chunk_min/max: split each reply into several writes (fragmentation)
- drop_rate: silently drop a reply
- close_rate: close the connection after a reply

Everything is off by default. Pass `seed` for a repeatable sequence.
"""

from __future__ import annotations

import random
import time
from typing import Any, Dict, List, Optional

from modbus_tcp import ModbusError


class FaultInjector:
    def __init__(
        self,
        delay_ms_min: int = 0,
        delay_ms_max: int = 0,
        chunk_min: int = 1,
        chunk_max: int = 1,
        drop_rate: float = 0.0,
        close_rate: float = 0.0,
        seed: Optional[int] = None,
    ):
        if delay_ms_min < 0 or delay_ms_max < delay_ms_min:
            raise ModbusError(f"bad delay range {delay_ms_min}..{delay_ms_max}")
        if chunk_min < 1 or chunk_max < chunk_min:
            raise ModbusError(f"bad chunk range {chunk_min}..{chunk_max}")
        for name, rate in (("drop_rate", drop_rate), ("close_rate", close_rate)):
            if not 0.0 <= rate <= 1.0:
                raise ModbusError(f"{name} must be within 0..1, got {rate}")

        self.delay_ms_min = delay_ms_min
        self.delay_ms_max = delay_ms_max
        self.chunk_min = chunk_min
        self.chunk_max = chunk_max
        self.drop_rate = drop_rate
        self.close_rate = close_rate
        self._rng = random.Random(seed)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "FaultInjector":
        return cls(**cfg)

    @property
    def enabled(self) -> bool:
        return (
            self.delay_ms_max > 0
            or self.chunk_max > 1
            or self.drop_rate > 0.0
            or self.close_rate > 0.0
        )

    def maybe_sleep(self) -> None:
        if self.delay_ms_max <= 0:
            return
        ms = self._rng.randint(self.delay_ms_min, self.delay_ms_max)
        time.sleep(ms / 1000.0)

    def should_drop(self) -> bool:
        return self._rng.random() < self.drop_rate

    def should_close(self) -> bool:
        return self._rng.random() < self.close_rate

    def chunk_bytes(self, data: bytes) -> List[bytes]:
        if self.chunk_max <= 1:
            return [data]
        n = self._rng.randint(self.chunk_min, self.chunk_max)
        if n <= 1 or len(data) <= 1:
            return [data]
        n = min(n, len(data))

        chunks = []
        start = 0
        for i in range(n - 1):
            remaining = len(data) - start
            # leave at least one byte for each chunk still to come
            cut = self._rng.randint(1, max(1, remaining - (n - i - 1)))
            chunks.append(data[start : start + cut])
            start += cut
        chunks.append(data[start:])
        return [c for c in chunks if c]
