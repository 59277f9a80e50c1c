from __future__ import annotations

from typing import Callable, List, TypeVar

T = TypeVar("T")


class BcsError(ValueError):
    pass


class BcsReader:
    """
    Minimal cursor over BCS-encoded bytes (little-endian ints, ULEB128 lengths).
    """

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def position(self) -> int:
        return self._pos

    def remaining(self) -> int:
        return len(self._data) - self._pos

    def read(self, n: int) -> bytes:
        if n < 0 or self._pos + n > len(self._data):
            raise BcsError(f"unexpected end of input at offset {self._pos} (wanted {n} bytes)")
        out = self._data[self._pos : self._pos + n]
        self._pos += n
        return out

    def _uint(self, size: int) -> int:
        return int.from_bytes(self.read(size), "little")

    def u8(self) -> int:
        return self._uint(1)

    def u16(self) -> int:
        return self._uint(2)

    def u32(self) -> int:
        return self._uint(4)

    def u64(self) -> int:
        return self._uint(8)

    def u128(self) -> int:
        return self._uint(16)

    def u256(self) -> int:
        return self._uint(32)

    def bool(self) -> bool:
        b = self.u8()
        if b not in (0, 1):
            raise BcsError(f"invalid bool byte {b} at offset {self._pos - 1}")
        return b == 1

    def uleb128(self) -> int:
        value = 0
        shift = 0
        while True:
            b = self.u8()
            value |= (b & 0x7F) << shift
            if not b & 0x80:
                return value
            shift += 7
            if shift > 28:
                raise BcsError("ULEB128 length overflows u32")

    def bytes(self) -> bytes:
        return self.read(self.uleb128())

    def string(self) -> str:
        try:
            return self.bytes().decode("utf-8")
        except UnicodeDecodeError as e:
            raise BcsError(f"invalid utf-8 string: {e}") from e

    def address(self) -> bytes:
        return self.read(32)

    def vector(self, item: Callable[[], T]) -> List[T]:
        return [item() for _ in range(self.uleb128())]

    def variant(self, name: str, count: int) -> int:
        tag = self.uleb128()
        if tag >= count:
            raise BcsError(f"unknown {name} variant {tag}")
        return tag

    def finish(self) -> None:
        if self.remaining():
            raise BcsError(f"{self.remaining()} trailing bytes after offset {self._pos}")
