import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from time import time

logger = logging.getLogger(__name__)


class ConversationRole(Enum):
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class TranscriptEntry:
    id: str
    role: ConversationRole
    text: str
    created_at: float = field(default_factory=time)

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "role": self.role.value, "text": self.text}


class TurnAccumulator:
    def __init__(self) -> None:
        self._input: list[str] = []
        self._output: list[str] = []
        self._ids = itertools.count(1)

    @property
    def pending_input(self) -> str:
        return "".join(self._input)

    @property
    def pending_output(self) -> str:
        return "".join(self._output)

    def append_input(self, text: str) -> None:
        self._input.append(text)

    def append_output(self, text: str) -> None:
        self._output.append(text)

    def complete_turn(self) -> list[TranscriptEntry]:
        full_input = self.pending_input.strip()
        full_output = self.pending_output.strip()
        self.clear()

        entries = []
        if full_input:
            entries.append(self._new_entry(ConversationRole.USER, full_input))
        if full_output:
            entries.append(self._new_entry(ConversationRole.MODEL, full_output))
        if not entries:
            logger.debug("Turn complete with no transcript text")
        return entries

    def clear(self) -> None:
        self._input.clear()
        self._output.clear()

    def _new_entry(self, role: ConversationRole, text: str) -> TranscriptEntry:
        return TranscriptEntry(id=f"{role.value}-{next(self._ids)}", role=role, text=text)
