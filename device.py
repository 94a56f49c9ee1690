"""
RegisterStore: the holding-register table shared by every client session.

- Holding Registers are 16-bit unsigned words, read/write.
- Addresses are 0-based: 0..size-1. Size is fixed at construction.
- Storage is the pymodbus sequential datablock; every access goes through
  its getValues/setValues.
- One threading.RLock guards every read/write. The dispatcher takes the same
  lock around a whole request (validate + read/write), so a multi-register
  read never sees half of a concurrent multi-register write. RLock is
  reentrant, so the per-call locking inside get/set doesn't deadlock.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional

from pymodbus.datastore import ModbusSequentialDataBlock


class RegisterStore(ModbusSequentialDataBlock):
    """Thread-safe 0-based holding-register block."""

    def __init__(self, size: int, init_values: Optional[Dict[int, int]] = None):
        if size <= 0 or size > 0x10000:
            raise ValueError(f"register count must be 1..65536, got {size}")
        values = [0] * size
        if init_values:
            for addr, u16 in init_values.items():
                if not 0 <= addr < size:
                    raise ValueError(f"initial register {addr} outside 0..{size - 1}")
                values[addr] = u16 & 0xFFFF
        self.lock = threading.RLock()
        self._size = size
        super().__init__(0, values)

    @property
    def size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return self._size

    # --- single word access ---

    def get(self, index: int) -> int:
        with self.lock:
            self._check_index(index)
            return self.getValues(index, 1)[0]

    def set(self, index: int, word: int) -> None:
        with self.lock:
            self._check_index(index)
            self.setValues(index, [word & 0xFFFF])

    # --- bulk access (caller validates the range) ---

    def get_many(self, address: int, count: int) -> List[int]:
        with self.lock:
            self._check_range(address, count)
            return list(self.getValues(address, count))

    def set_many(self, address: int, words: List[int]) -> None:
        """Write words in ascending address order."""
        with self.lock:
            self._check_range(address, len(words))
            self.setValues(address, [word & 0xFFFF for word in words])

    def snapshot(self) -> List[int]:
        with self.lock:
            return list(self.getValues(0, self._size))

    # pymodbus datablock API, same lock
    def getValues(self, address: int, count: int = 1) -> List[int]:
        with self.lock:
            return super().getValues(address, count)

    def setValues(self, address: int, values) -> None:
        with self.lock:
            return super().setValues(address, values)

    def _check_index(self, index: int) -> None:
        if not 0 <= index < self._size:
            raise IndexError(f"register {index} outside 0..{self._size - 1}")

    def _check_range(self, address: int, count: int) -> None:
        if address < 0 or count < 0 or address + count > self._size:
            raise IndexError(f"registers {address}+{count} outside 0..{self._size - 1}")
