import asyncio
import csv
import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable

from betbot import config
from betbot.gateway import GatewayClient, GatewayConnectionError, GatewayError
from betbot.models import (
    ChatMessage, Chatting, GatewaySettings, Idle, Market, Monitoring, Resolved,
    SessionState, StreamBuffer,
)
from betbot.parser import (
    Resolution, build_check_prompt, build_resolve_message, classify_resolution,
    is_relevant, parse_market,
)
from betbot.voice import CaptureSource, Classifier, SpeechOutput

log = logging.getLogger(__name__)


# ============================================================
# BET HISTORY CSV
# ============================================================
BET_HISTORY_HEADER = ["Timestamp (UTC)", "Market ID", "Question", "Outcome", "Reason", "Seconds Left"]


def log_bet_to_csv(path, market_id, question, outcome, reason, seconds_left):
    file_exists = os.path.isfile(path)
    try:
        with open(path, mode='a', newline='', encoding='utf-8') as f:
            writer = csv.writer(f)
            if not file_exists:
                writer.writerow(BET_HISTORY_HEADER)
            timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')
            writer.writerow([timestamp, market_id, question, "YES" if outcome else "NO",
                             reason, f"{seconds_left:.1f}"])
    except OSError as e:
        log.error(f"[CSV ERROR] {e}")


# ============================================================
# ORCHESTRATOR
# ============================================================
class BetOrchestrator:
    """
    Owns one session: Idle -> Chatting -> Monitoring -> Resolved (-> Chatting on reset).

    Three event sources mutate the session: the gateway receive loop, the
    countdown timer and the frame-check timer. Every mutation happens while
    holding ``_lock``, so a countdown expiry and an agent YES can never both
    resolve the same market.
    """

    PUBLISHED = ("state", "is_streaming", "stream_preview", "monitoring_status", "time_remaining",
                 "active_market_id", "classifications", "check_in_flight")

    def __init__(self, gateway: GatewayClient, camera: CaptureSource, classifier: Classifier,
                 speaker: SpeechOutput, bet_window: float = config.BET_WINDOW_SECONDS,
                 countdown_interval: float = config.COUNTDOWN_TICK_SECONDS,
                 check_interval: float = config.CHECK_TICK_SECONDS,
                 clock: Callable[[], float] = time.time,
                 history_path: str | None = config.BET_HISTORY_CSV):
        self.gateway = gateway
        self.camera = camera
        self.classifier = classifier
        self.speaker = speaker
        self.bet_window = bet_window
        self.countdown_interval = countdown_interval
        self.check_interval = check_interval
        self.history_path = history_path
        self._clock = clock

        self.state: SessionState = Idle()
        self.messages: list[ChatMessage] = []
        self.is_streaming = False
        self.stream_preview = ""
        self.monitoring_status = "Waiting..."
        self.time_remaining = bet_window
        self.active_market_id: int | None = None
        self.market: Market | None = None
        self.classifications: list = []
        self.check_in_flight = False

        self._buffer = StreamBuffer()
        self._lock = asyncio.Lock()
        self._episode = 0
        self._countdown_task: asyncio.Task | None = None
        self._check_task: asyncio.Task | None = None
        self._subscribers: list[asyncio.Queue] = []
        self._connection_seen = (False, None)

        self.gateway.on_message = self.handle_agent_response
        self.gateway.on_closed = self._publish_connection

    # ---------- Published state ----------
    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def snapshot(self) -> dict:
        data = {name: _serialize(name, getattr(self, name)) for name in self.PUBLISHED}
        data["is_connected"] = self.gateway.is_connected
        data["last_error"] = self.gateway.last_error
        data["messages"] = [m.to_dict() for m in self.messages]
        return data

    def _set(self, **changes):
        diff = {}
        for name, value in changes.items():
            if getattr(self, name) != value:
                setattr(self, name, value)
                diff[name] = _serialize(name, value)
        if diff:
            self._broadcast(diff)

    def _append_message(self, message: ChatMessage):
        self.messages.append(message)
        self._broadcast({"message": message.to_dict()})

    def _publish_connection(self):
        current = (self.gateway.is_connected, self.gateway.last_error)
        if current != self._connection_seen:
            self._connection_seen = current
            self._broadcast({"is_connected": current[0], "last_error": current[1]})

    def _broadcast(self, diff: dict):
        for queue in self._subscribers:
            queue.put_nowait(diff)

    # ---------- Connection ----------
    async def connect(self) -> bool:
        async with self._lock:
            try:
                await self.gateway.connect()
            except GatewayConnectionError as e:
                log.error(f"[SESSION] Connect failed: {e}")
                return False
            finally:
                self._publish_connection()
            if isinstance(self.state, Idle):
                self._set(state=Chatting())
                log.info("[SESSION] Idle -> Chatting")
            return True

    async def update_settings(self, settings: GatewaySettings) -> bool:
        async with self._lock:
            try:
                await self.gateway.update_settings(settings)
            except GatewayConnectionError as e:
                log.error(f"[SESSION] Reconnect with new settings failed: {e}")
                return False
            finally:
                self._publish_connection()
            return True

    async def shutdown(self):
        async with self._lock:
            self._cancel_timers()
            self.camera.stop()
            await self.gateway.disconnect()
            self._publish_connection()

    # ---------- Messaging ----------
    async def send_text(self, text: str):
        trimmed = text.strip()
        if not trimmed:
            return
        async with self._lock:
            self._append_message(ChatMessage(role="user", content=trimmed))
            await self._send(trimmed)

    async def _send(self, text: str, image_base64: str | None = None, media_type: str = "image/jpeg"):
        # fire-and-forget: the reply comes back through handle_agent_response
        self._buffer.reset()
        self._set(is_streaming=True, stream_preview="")
        try:
            await self.gateway.send_message(text, image_base64=image_base64, media_type=media_type)
        except GatewayError as e:
            log.warning(f"[SESSION] Send failed ({type(e).__name__}): {e}")
            self._set(is_streaming=False)
        finally:
            self._publish_connection()

    # ---------- Agent replies ----------
    async def handle_agent_response(self, text: str, done: bool):
        async with self._lock:
            self._buffer.append(text)
            if not done:
                self._set(is_streaming=True, stream_preview=self._buffer.text)
                return

            response = self._buffer.take()
            self._append_message(ChatMessage(role="assistant", content=response))
            self._set(is_streaming=False, stream_preview="")
            self._speak(response)

            if isinstance(self.state, Chatting):
                market = parse_market(response)
                if market is None:
                    log.debug("[PARSE] No market id in reply")
                    return
                self._start_monitoring(*market)
            elif isinstance(self.state, Monitoring):
                await self._check_for_resolution(response)

    # ---------- Monitoring ----------
    def _start_monitoring(self, market_id: int, question: str):
        self._episode += 1
        deadline = self._clock() + self.bet_window
        self.market = Market(id=market_id, question=question, deadline=deadline)
        self._set(state=Monitoring(question=question, deadline=deadline),
                  active_market_id=market_id, time_remaining=self.bet_window,
                  monitoring_status="Monitoring...", check_in_flight=False, classifications=[])

        self.camera.start(self._on_frame)
        self._countdown_task = asyncio.create_task(self._countdown_loop(self._episode))
        self._check_task = asyncio.create_task(self._check_loop(self._episode))
        log.info(f"[BET] Market {market_id} opened: '{question}' | window={self.bet_window:.0f}s")

    def _on_frame(self, frame):
        # frames are pulled from camera.last_frame on each check tick
        pass

    async def _countdown_loop(self, episode: int):
        while True:
            await asyncio.sleep(self.countdown_interval)
            async with self._lock:
                if not self._is_current(episode):
                    return
                remaining = max(0.0, self.state.deadline - self._clock())
                self._set(time_remaining=min(self.time_remaining, remaining))
                if self.time_remaining <= 0:
                    log.info(f"[BET] Deadline reached for market {self.active_market_id}")
                    await self._resolve(False, reason="deadline")
                    return

    async def _check_loop(self, episode: int):
        while True:
            await asyncio.sleep(self.check_interval)
            if not await self._check_frame(episode):
                return

    async def _check_frame(self, episode: int) -> bool:
        """One check tick. Returns False once the monitoring episode is over."""
        async with self._lock:
            if not self._is_current(episode):
                return False
            frame = self.camera.last_frame
            if self.check_in_flight or frame is None:
                return True
            question = self.state.question

        # classification runs without the lock: the countdown and agent replies never wait on it
        try:
            results = await self.classifier.classify(frame, config.CLASSIFY_TOP_K)
        except Exception as e:
            log.warning(f"[VISION] Classification failed: {e}")
            results = []

        async with self._lock:
            if not self._is_current(episode):
                return False
            if self.check_in_flight:
                return True

            labels = [r.label for r in results]
            summary = ", ".join(labels[:3])
            self._set(classifications=results,
                      monitoring_status=f"Detected: {summary or 'analyzing...'}")
            log.debug(f"[VISION] {summary or '-'} | relevant={is_relevant(labels, question)}")

            encoded = self.camera.encode_frame(frame, config.FRAME_MAX_WIDTH, config.FRAME_QUALITY)
            if encoded is None:
                log.warning("[CHECK] Frame could not be encoded -- skipping tick")
                return True
            media_type, payload = encoded

            self._set(check_in_flight=True)
            log.info(f"[CHECK] Asking agent about market {self.active_market_id}")
            await self._send(build_check_prompt(question), image_base64=payload, media_type=media_type)
        return True

    def _is_current(self, episode: int) -> bool:
        return episode == self._episode and isinstance(self.state, Monitoring)

    async def _check_for_resolution(self, response: str):
        self._set(check_in_flight=False)
        verdict = classify_resolution(response)
        log.info(f"[CHECK] Agent verdict: {verdict.value}")
        # only a clean YES ends the bet early; NO and ambiguity wait for the deadline
        if verdict is Resolution.AFFIRMATIVE:
            await self._resolve(True, reason="agent confirmed")

    # ---------- Resolution ----------
    async def _resolve(self, outcome: bool, reason: str):
        if not isinstance(self.state, Monitoring):
            return
        seconds_left = max(0.0, self.state.deadline - self._clock())
        self._exit_monitoring()
        verdict = "YES" if outcome else "NO"
        self._set(state=Resolved(outcome=outcome), monitoring_status=f"Resolved: {verdict}")
        log.info(f"[RESOLVE] Market {self.active_market_id} -> {verdict} ({reason})")

        if self.market is not None:
            await self._send(build_resolve_message(self.market.id, outcome))
            if self.history_path:
                log_bet_to_csv(self.history_path, self.market.id, self.market.question,
                               outcome, reason, seconds_left)
        self._speak(f"Bet resolved: {verdict}")

    def _exit_monitoring(self):
        self._cancel_timers()
        self.camera.stop()
        self._set(check_in_flight=False)

    def _cancel_timers(self):
        current = asyncio.current_task()
        for task in (self._countdown_task, self._check_task):
            # the calling timer exits on its own once the state has moved on
            if task is not None and task is not current and not task.done():
                task.cancel()
        self._countdown_task = None
        self._check_task = None

    # ---------- Reset ----------
    async def reset_to_chat(self) -> bool:
        async with self._lock:
            if not isinstance(self.state, Resolved):
                log.debug(f"[SESSION] reset ignored in state {self.state.tag}")
                return False
            self._cancel_timers()
            self.camera.stop()
            self.market = None
            self._set(state=Chatting(), active_market_id=None, check_in_flight=False,
                      time_remaining=self.bet_window, monitoring_status="Waiting...",
                      classifications=[])
            log.info("[SESSION] Resolved -> Chatting")
            return True

    # ---------- helpers ----------
    def _speak(self, text: str):
        try:
            self.speaker.speak(text)
        except Exception:
            log.exception("[VOICE] Speech output failed")


def _serialize(name: str, value):
    if name == "state":
        return value.to_dict()
    if name == "classifications":
        return [r.to_dict() for r in value]
    return value
