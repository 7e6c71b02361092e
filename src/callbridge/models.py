from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

UTTERANCE_END = "UtteranceEnd"
RESULTS = "Results"


@dataclass(frozen=True)
class Utterance:
    """One finalized unit of caller speech."""
    text: str
    is_final: bool = True


@dataclass(frozen=True)
class TranscriptEvent:
    """A transcription provider event (interim/final result or end of segment)."""
    type: str = RESULTS
    is_final: bool = False
    speech_final: bool = False
    text: str = ""

    @property
    def is_utterance_end(self) -> bool:
        return self.type == UTTERANCE_END

    @classmethod
    def utterance_end(cls) -> "TranscriptEvent":
        return cls(type=UTTERANCE_END)


class Role(str, Enum):
    """Dialogue roles as sent to the chat completions API."""
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    # Tool results; the legacy `function` role only needs the tool name.
    FUNCTION = "function"


@dataclass(frozen=True)
class DialogueTurn:
    role: Role
    content: str
    name: Optional[str] = None

    def to_message(self) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.name:
            message["name"] = self.name
        return message


@dataclass
class ToolInvocation:
    """
    A tool call assembled from streamed deltas.

    Name fragments overwrite; argument fragments are concatenated because the
    model streams the arguments as one JSON string split across deltas.
    """
    name: str = ""
    raw_arguments: str = ""
    parsed_arguments: Optional[Dict[str, Any]] = None
    completed: bool = False

    def add_delta(self, name: Optional[str] = None, arguments: Optional[str] = None) -> None:
        if self.completed:
            raise RuntimeError("Tool invocation is already complete")
        if name:
            self.name = name
        if arguments:
            self.raw_arguments += arguments

    def complete(self, parsed_arguments: Optional[Dict[str, Any]]) -> None:
        self.parsed_arguments = parsed_arguments
        self.completed = True

    @property
    def is_empty(self) -> bool:
        return not self.name and not self.raw_arguments


@dataclass(frozen=True)
class ReplyFragment:
    sequence_index: int
    text: str

    def __post_init__(self) -> None:
        if self.sequence_index < 0:
            raise ValueError("sequence_index must be >= 0")


@dataclass(frozen=True)
class AudioChunk:
    """Synthesized mu-law audio for one reply fragment."""
    sequence_index: int
    audio_data: bytes
    label: str
    turn_id: int = 0
