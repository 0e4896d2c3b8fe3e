from collections.abc import AsyncIterator, Callable
from typing import Protocol

import numpy as np


class AudioCapturePort(Protocol):
    @property
    def sample_rate(self) -> int: ...
    @property
    def block_size(self) -> int: ...
    async def start(self) -> None: ...
    async def stop(self) -> None: ...
    async def close(self) -> None: ...
    def read_blocks(self) -> AsyncIterator[np.ndarray]: ...


class AudioPlaybackPort(Protocol):
    @property
    def sample_rate(self) -> int: ...
    @property
    def current_time(self) -> float: ...
    async def start(self) -> None: ...
    def schedule(
        self,
        samples: np.ndarray,
        start_time: float,
        on_ended: Callable[[], None],
    ) -> object: ...
    def stop(self, handle: object) -> None: ...
    async def close(self) -> None: ...
