from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import ClassVar, Union

from betbot import config

UINT64_MAX = 2**64 - 1


# ============================================================
# SESSION STATE
# One variant per lifecycle stage; dataclass equality compares
# the variant class and its payload.
# ============================================================
@dataclass(frozen=True)
class Idle:
    tag: ClassVar[str] = "idle"

    def to_dict(self) -> dict:
        return {"state": self.tag}


@dataclass(frozen=True)
class Chatting:
    tag: ClassVar[str] = "chatting"

    def to_dict(self) -> dict:
        return {"state": self.tag}


@dataclass(frozen=True)
class Monitoring:
    question: str
    deadline: float   # epoch seconds
    tag: ClassVar[str] = "monitoring"

    def to_dict(self) -> dict:
        return {"state": self.tag, "question": self.question, "deadline": self.deadline}


@dataclass(frozen=True)
class Resolved:
    outcome: bool
    tag: ClassVar[str] = "resolved"

    def to_dict(self) -> dict:
        return {"state": self.tag, "outcome": self.outcome}


SessionState = Union[Idle, Chatting, Monitoring, Resolved]


# ============================================================
# TRANSCRIPT
# ============================================================
@dataclass
class ChatMessage:
    role: str          # "user" | "assistant"
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


class StreamBuffer:
    """Reassembles streamed agent chunks into one completed reply."""

    def __init__(self):
        self.text = ""
        self.in_progress = False

    def append(self, chunk: str):
        self.text += chunk
        self.in_progress = True

    def take(self) -> str:
        text = self.text
        self.reset()
        return text

    def reset(self):
        self.text = ""
        self.in_progress = False


# ============================================================
# MARKET / SETTINGS
# ============================================================
@dataclass
class Market:
    id: int
    question: str
    deadline: float

    def __post_init__(self):
        if not 0 <= self.id <= UINT64_MAX:
            raise ValueError(f"market id {self.id} outside unsigned 64-bit range")


@dataclass
class GatewaySettings:
    host: str
    port: int
    token: str

    @property
    def ws_url(self) -> str | None:
        host = (self.host or "").strip()
        if not host or any(c.isspace() for c in host) or "/" in host:
            return None
        if not isinstance(self.port, int) or not 0 < self.port < 65536:
            return None
        return f"ws://{host}:{self.port}"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        return cls(host=config.GATEWAY_HOST, port=config.GATEWAY_PORT, token=config.GATEWAY_TOKEN)


@dataclass(frozen=True)
class ClassificationResult:
    label: str
    confidence: float

    def to_dict(self) -> dict:
        return {"label": self.label, "confidence": round(self.confidence, 3)}
