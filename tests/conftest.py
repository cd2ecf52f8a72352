import asyncio

import pytest

from betbot.core import BetOrchestrator
from betbot.gateway import GatewayConnectionError, TransportError
from betbot.models import ClassificationResult


class FakeGateway:
    def __init__(self, fail_connect=False):
        self.on_message = None
        self.is_connected = False
        self.last_error = None
        self.fail_connect = fail_connect
        self.settings = None
        self.sent = []
        self.connects = 0
        self.disconnects = 0

    async def connect(self, settings=None):
        if self.fail_connect:
            self.last_error = "Connection refused"
            raise GatewayConnectionError(self.last_error)
        if self.is_connected:
            return
        self.connects += 1
        self.is_connected = True
        self.last_error = None

    async def disconnect(self):
        if not self.is_connected:
            return
        self.disconnects += 1
        self.is_connected = False

    async def update_settings(self, settings):
        self.settings = settings
        if self.is_connected:
            await self.disconnect()
            await self.connect()

    async def send_message(self, text, image_base64=None, media_type="image/jpeg"):
        if not self.is_connected:
            self.last_error = "Not connected"
            raise TransportError(self.last_error)
        self.sent.append({"text": text, "image": image_base64, "media_type": media_type})

    def texts(self):
        return [s["text"] for s in self.sent]


class FakeCamera:
    def __init__(self, frame=None):
        self.last_frame = frame
        self.starts = 0
        self.stops = 0
        self.running = False

    def start(self, callback):
        self.starts += 1
        self.running = True

    def stop(self):
        self.stops += 1
        self.running = False

    def encode_frame(self, frame, max_width, quality):
        return "image/jpeg", "ZnJhbWU="


class FakeClassifier:
    def __init__(self, labels=("hand", "apple")):
        self.labels = labels
        self.calls = 0

    async def classify(self, frame, top_k):
        self.calls += 1
        return [ClassificationResult(label, 0.9 - i * 0.1) for i, label in enumerate(self.labels)][:top_k]


class FakeSpeaker:
    def __init__(self):
        self.spoken = []

    def speak(self, text):
        self.spoken.append(text)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


async def wait_until(predicate, timeout=2.0, interval=0.005):
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while not predicate():
        if loop.time() > end:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_session(clock):
    def _make(frame=None, gateway=None, **kwargs):
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("history_path", None)
        return BetOrchestrator(
            gateway=gateway or FakeGateway(),
            camera=FakeCamera(frame),
            classifier=FakeClassifier(),
            speaker=FakeSpeaker(),
            **kwargs,
        )
    return _make
