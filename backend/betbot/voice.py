import logging
from typing import Any, Callable, Optional, Protocol

from betbot.models import ClassificationResult

log = logging.getLogger(__name__)


# ============================================================
# COLLABORATOR CONTRACTS
# ============================================================
class CaptureSource(Protocol):
    last_frame: Optional[Any]

    def start(self, callback: Callable[[Any], None]) -> None: ...

    def stop(self) -> None: ...

    def encode_frame(self, frame: Any, max_width: int, quality: float) -> Optional[tuple[str, str]]:
        """Returns (media type, base64 payload) or None when the frame can't be encoded."""
        ...


class Classifier(Protocol):
    async def classify(self, frame: Any, top_k: int) -> list[ClassificationResult]: ...


class SpeechOutput(Protocol):
    def speak(self, text: str) -> None: ...


# ============================================================
# CONSOLE SPEECH OUTPUT
# ============================================================
class ConsoleSpeaker:
    """Stands in for a TTS engine: prints each utterance to the console."""

    def __init__(self, echo: bool = True):
        self.echo = echo
        self.last_utterance = ""

    def speak(self, text: str):
        self.last_utterance = text
        log.info(f"[VOICE] {text}")
        if self.echo:
            print(f"\n  🔊 {text}\n", flush=True)
