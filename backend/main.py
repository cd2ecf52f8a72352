import pandas as pd
import numpy as np
import os
import asyncio
import math
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from betbot import config
from betbot.core import BetOrchestrator
from betbot.frames import ArrayCaptureSource, ColorClassifier, load_frames
from betbot.gateway import GatewayClient
from betbot.models import GatewaySettings, Resolved
from betbot.voice import ConsoleSpeaker
from logger import BetLogger, setup_logging

app = FastAPI(title="Live Bet Client", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

HISTORY_CSV = config.BET_HISTORY_CSV

session: Optional[BetOrchestrator] = None
_journal_task: Optional[asyncio.Task] = None

cache_df = None
last_csv_mtime = 0


# ---------- Pydantic IO models ----------
class MessageIn(BaseModel):
    text: str = Field(..., examples=["Bet 5 MOVE that I'll touch the apple within a minute"])

class SettingsIn(BaseModel):
    host: str
    port: int = Field(..., ge=1, le=65535)
    token: str = ""

class ConnectionOut(BaseModel):
    connected: bool
    last_error: Optional[str] = None


def sanitize_data(data):
    if isinstance(data, dict):
        return {k: sanitize_data(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [sanitize_data(v) for v in data]
    elif isinstance(data, float):
        if math.isnan(data) or math.isinf(data):
            return 0.0
    return data

def get_optimized_df():
    global cache_df, last_csv_mtime
    if not os.path.exists(HISTORY_CSV):
        return None
    current_mtime = os.path.getmtime(HISTORY_CSV)
    if cache_df is None or current_mtime > last_csv_mtime:
        cache_df = pd.read_csv(HISTORY_CSV)
        last_csv_mtime = current_mtime
    return cache_df

def build_session() -> BetOrchestrator:
    frames = load_frames(config.FRAME_DIR) if config.FRAME_DIR else []
    return BetOrchestrator(
        gateway=GatewayClient(GatewaySettings.from_env()),
        camera=ArrayCaptureSource(frames),
        classifier=ColorClassifier(),
        speaker=ConsoleSpeaker(echo=False),
    )

async def journal_loop(orchestrator: BetOrchestrator):
    queue = orchestrator.subscribe()
    try:
        while True:
            diff = await queue.get()
            if "state" in diff:
                state = diff["state"]
                BetLogger.log_event("state", state)
                if state["state"] == Resolved.tag and orchestrator.market is not None:
                    BetLogger.log_bet({"market_id": orchestrator.market.id,
                                       "question": orchestrator.market.question,
                                       "outcome": state["outcome"]})
            if diff.get("last_error"):
                BetLogger.log_event("gateway", diff["last_error"], level="warning")
    finally:
        orchestrator.unsubscribe(queue)


@app.on_event("startup")
async def start_session():
    global session, _journal_task
    setup_logging()
    session = build_session()
    _journal_task = asyncio.create_task(journal_loop(session))
    BetLogger.log_event("system", f"Gateway target {session.gateway.settings.ws_url}")

@app.on_event("shutdown")
async def stop_session():
    if _journal_task is not None:
        _journal_task.cancel()
    if session is not None:
        await session.shutdown()


@app.get("/api/state")
async def get_state():
    return session.snapshot()

@app.get("/api/transcript")
async def get_transcript():
    return {"messages": [m.to_dict() for m in session.messages]}

@app.post("/api/connect", response_model=ConnectionOut)
async def connect():
    ok = await session.connect()
    return ConnectionOut(connected=ok and session.gateway.is_connected, last_error=session.gateway.last_error)

@app.post("/api/message")
async def send_message(payload: MessageIn):
    await session.send_text(payload.text)
    return {"sent": session.gateway.last_error is None, "last_error": session.gateway.last_error}

@app.post("/api/reset")
async def reset():
    return {"reset": await session.reset_to_chat(), "state": session.state.to_dict()}

@app.put("/api/settings", response_model=ConnectionOut)
async def update_settings(payload: SettingsIn):
    await session.update_settings(GatewaySettings(host=payload.host, port=payload.port, token=payload.token))
    return ConnectionOut(connected=session.gateway.is_connected, last_error=session.gateway.last_error)

@app.get("/api/metrics")
async def get_bet_metrics():
    df = get_optimized_df()
    if df is None or df.empty:
        return {"metrics": {"total_bets": 0, "yes_rate": 0, "early_resolution_rate": 0,
                            "avg_seconds_left": 0, "current_streak": 0},
                "heatmap": [], "journal": []}

    try:
        df = df.copy()
        df['dt'] = pd.to_datetime(df['Timestamp (UTC)'])
        df['hour'] = df['dt'].dt.hour
        df['is_yes'] = (df['Outcome'] == 'YES').astype(int)
        df['early'] = (df['Seconds Left'] > 0).astype(int)

        df['streak'] = df['is_yes'].groupby((df['is_yes'] != df['is_yes'].shift()).cumsum()).cumcount() + 1
        hourly = df.groupby('hour')['is_yes'].agg(['mean', 'count'])
        heatmap = [{"hour": int(h), "yes_rate": round(float(r) * 100, 1), "bets": int(c)}
                   for h, r, c in zip(hourly.index, hourly['mean'], hourly['count'])]

        response_data = {
            "metrics": {
                "total_bets": int(len(df)),
                "yes_rate": round(float(df['is_yes'].mean()) * 100, 2),
                "early_resolution_rate": round(float(df['early'].mean()) * 100, 2),
                "avg_seconds_left": round(float(np.mean(df['Seconds Left'])), 2),
                "p90_seconds_left": round(float(np.percentile(df['Seconds Left'], 90)), 2),
                "current_streak": int(df['streak'].iloc[-1]),
                "streak_outcome": "YES" if df['is_yes'].iloc[-1] == 1 else "NO",
            },
            "heatmap": sorted(heatmap, key=lambda x: x['hour']),
            "journal": df.drop(columns=['dt']).tail(50).iloc[::-1].to_dict(orient="records"),
        }
        return sanitize_data(response_data)
    except (KeyError, ValueError) as e:
        return {"error": str(e)}

@app.websocket("/ws/live")
async def live_state_feed(websocket: WebSocket):
    await websocket.accept()
    queue = session.subscribe()
    try:
        await websocket.send_json({"snapshot": session.snapshot()})
        while True:
            diff = await queue.get()
            await websocket.send_json(diff)
    except WebSocketDisconnect:
        pass
    finally:
        session.unsubscribe(queue)
