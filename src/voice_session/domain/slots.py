from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class SlotKey:
    index: int
    generation: int


class SlotMap(Generic[T]):
    """Index-stable registry with generation-checked keys.

    A removed slot bumps its generation, so keys held by late callbacks
    (e.g. a buffer reporting completion after it was force-stopped) no
    longer match and removing them is a no-op.
    """

    def __init__(self) -> None:
        self._values: list[T | None] = []
        self._generations: list[int] = []
        self._occupied: list[bool] = []
        self._free: list[int] = []
        self._len = 0

    def __len__(self) -> int:
        return self._len

    def insert(self, value: T) -> SlotKey:
        if self._free:
            index = self._free.pop()
            self._values[index] = value
            self._occupied[index] = True
        else:
            index = len(self._values)
            self._values.append(value)
            self._generations.append(0)
            self._occupied.append(True)
        self._len += 1
        return SlotKey(index=index, generation=self._generations[index])

    def remove(self, key: SlotKey) -> T | None:
        if not self._is_live(key):
            return None
        value = self._values[key.index]
        self._release(key.index)
        return value

    def values(self) -> list[T]:
        return [v for v, used in zip(self._values, self._occupied) if used]

    def drain(self) -> list[T]:
        drained = []
        for index, used in enumerate(self._occupied):
            if used:
                drained.append(self._values[index])
                self._release(index)
        return drained

    def _is_live(self, key: SlotKey) -> bool:
        return (
            0 <= key.index < len(self._values)
            and self._occupied[key.index]
            and self._generations[key.index] == key.generation
        )

    def _release(self, index: int) -> None:
        self._values[index] = None
        self._occupied[index] = False
        self._generations[index] += 1
        self._free.append(index)
        self._len -= 1
