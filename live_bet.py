import asyncio
import logging
import sys

from betbot import config
from betbot.core import BetOrchestrator
from betbot.frames import ArrayCaptureSource, ColorClassifier, load_frames
from betbot.gateway import GatewayClient
from betbot.models import GatewaySettings
from betbot.voice import ConsoleSpeaker
from logger import setup_logging

log = logging.getLogger("live_bet")


# ============================================================
# CONSOLE OUTPUT
# ============================================================
def print_resolution(state: dict, market_id):
    verdict = "YES" if state.get("outcome") else "NO"
    icon = "✅" if state.get("outcome") else "❌"
    print("\n" + "═" * 58)
    print(f"  🏁  MARKET RESOLVED")
    print("═" * 58)
    print(f"  {icon}  Market {market_id}  →  {verdict}")
    print("═" * 58 + "\n", flush=True)

def print_opened(state: dict, market_id):
    print("\n" + "═" * 58)
    print(f"  🎯  BET LIVE  (market {market_id})")
    print("═" * 58)
    print(f"  Question  : {state.get('question')}")
    print(f"  Window    : {config.BET_WINDOW_SECONDS:.0f}s  |  frame check every {config.CHECK_TICK_SECONDS:.0f}s")
    print("═" * 58 + "\n", flush=True)

async def console_feed(session: BetOrchestrator):
    queue = session.subscribe()
    try:
        while True:
            diff = await queue.get()
            state = diff.get("state")
            if state and state["state"] == "monitoring":
                print_opened(state, session.active_market_id)
            elif state and state["state"] == "resolved":
                print_resolution(state, session.active_market_id)
            if "time_remaining" in diff:
                print(f"\r  ⏱  {diff['time_remaining']:4.0f}s  |  {session.monitoring_status}   ", end="", flush=True)
            if diff.get("last_error"):
                print(f"\n[GATEWAY] {diff['last_error']}", flush=True)
    finally:
        session.unsubscribe(queue)


# ============================================================
# MAIN
# ============================================================
async def main():
    frames = load_frames(config.FRAME_DIR) if config.FRAME_DIR else []
    session = BetOrchestrator(
        gateway=GatewayClient(GatewaySettings.from_env()),
        camera=ArrayCaptureSource(frames),
        classifier=ColorClassifier(),
        speaker=ConsoleSpeaker(),
    )
    feed = asyncio.create_task(console_feed(session))

    if not await session.connect():
        print(f"[ERROR] Could not reach gateway: {session.gateway.last_error}")
        feed.cancel()
        return

    try:
        while True:
            # each typed line stands in for one finalized speech transcript
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            text = line.strip()
            if text == "/quit":
                break
            elif text == "/reset":
                if not await session.reset_to_chat():
                    print(f"[SESSION] Nothing to reset ({session.state.tag})")
            elif text == "/status":
                print(session.snapshot())
            else:
                await session.send_text(text)
    finally:
        feed.cancel()
        await session.shutdown()


if __name__ == "__main__":
    setup_logging()
    settings = GatewaySettings.from_env()

    print("\n" + "="*60)
    print("  Live Bet Client")
    print("="*60)
    print(f"\n  Gateway:            {settings.ws_url or '⚠️  invalid host/port'}")
    print(f"  Token set:          {'Yes' if settings.token else 'No (set GATEWAY_TOKEN in .env)'}")
    print(f"  Agent:              {config.AGENT_ID}")
    print(f"  Frames:             {config.FRAME_DIR or 'none (checks skip until a frame exists)'}")
    print(f"\n  Bet lifecycle:")
    print(f"    Window:           {config.BET_WINDOW_SECONDS:.0f}s (unresolved → NO)")
    print(f"    Frame checks:     every {config.CHECK_TICK_SECONDS:.0f}s, one in flight at a time")
    print(f"\n  Commands: /reset  /status  /quit  -- anything else is sent to the agent\n")

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n[SYSTEM] Client stopped.")
