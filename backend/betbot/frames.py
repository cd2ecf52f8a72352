import asyncio
import base64
import io
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

import numpy as np

from betbot import config
from betbot.models import ClassificationResult

log = logging.getLogger(__name__)

NPY_MEDIA_TYPE = "application/x-npy"


# ============================================================
# FRAME MATH
# ============================================================
def downscale(frame: np.ndarray, max_width: int) -> np.ndarray:
    width = frame.shape[1]
    if width <= max_width:
        return frame
    step = int(np.ceil(width / max_width))
    return frame[::step, ::step]


def frame_to_base64(frame: np.ndarray, max_width: int = config.FRAME_MAX_WIDTH) -> str:
    small = np.ascontiguousarray(downscale(frame, max_width), dtype=np.uint8)
    buf = io.BytesIO()
    np.save(buf, small, allow_pickle=False)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def load_frames(frame_dir: str) -> list[np.ndarray]:
    paths = sorted(Path(frame_dir).glob("*.npy"))
    frames = [np.load(p, allow_pickle=False) for p in paths]
    log.info(f"[CAMERA] Loaded {len(frames)} frames from {frame_dir}")
    return frames


# ============================================================
# CAPTURE SOURCE
# ============================================================
class ArrayCaptureSource:
    """Replays pre-recorded RGB frames as if they came off a camera."""

    def __init__(self, frames: Iterable[np.ndarray], interval: float = config.FRAME_INTERVAL_SECONDS):
        self.frames = list(frames)
        self.interval = interval
        self.last_frame: Optional[np.ndarray] = None
        self.is_streaming = False
        self._callback: Optional[Callable] = None
        self._task: asyncio.Task | None = None

    def start(self, callback: Callable[[np.ndarray], None]):
        if not self.frames:
            log.warning("[CAMERA] No frames to replay")
            return
        self._callback = callback
        self.is_streaming = True
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    def stop(self):
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self._callback = None
        self.is_streaming = False

    async def _run(self):
        i = 0
        while True:
            frame = self.frames[i % len(self.frames)]
            self.last_frame = frame
            if self._callback is not None:
                self._callback(frame)
            i += 1
            await asyncio.sleep(self.interval)

    def encode_frame(self, frame: np.ndarray, max_width: int = config.FRAME_MAX_WIDTH,
                     quality: float = config.FRAME_QUALITY) -> Optional[tuple[str, str]]:
        # quality only applies to lossy encoders
        if frame is None or frame.ndim < 2:
            return None
        return NPY_MEDIA_TYPE, frame_to_base64(frame, max_width)


# ============================================================
# ON-DEVICE CLASSIFIER
# Cheap colour/brightness/motion labels. Advisory only.
# ============================================================
class ColorClassifier:
    def __init__(self, min_confidence: float = config.CLASSIFY_MIN_CONFIDENCE):
        self.min_confidence = min_confidence
        self._previous: Optional[np.ndarray] = None

    async def classify(self, frame: np.ndarray, top_k: int = config.CLASSIFY_TOP_K) -> list[ClassificationResult]:
        return await asyncio.to_thread(self._classify, frame, top_k)

    def _classify(self, frame: np.ndarray, top_k: int) -> list[ClassificationResult]:
        if frame is None or frame.ndim != 3 or frame.shape[2] < 3:
            return []
        rgb = frame[..., :3].astype(np.float32) / 255.0
        luma = float(rgb.mean())
        channel_means = rgb.reshape(-1, 3).mean(axis=0)
        total = float(channel_means.sum()) or 1.0

        scores = {
            "bright": luma,
            "dark": 1.0 - luma,
            "red": float(channel_means[0]) / total,
            "green": float(channel_means[1]) / total,
            "blue": float(channel_means[2]) / total,
        }
        if self._previous is not None and self._previous.shape == rgb.shape:
            scores["motion"] = float(np.abs(rgb - self._previous).mean()) * 4.0
        self._previous = rgb

        ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
        return [ClassificationResult(label, min(conf, 1.0))
                for label, conf in ranked if conf > self.min_confidence][:top_k]
