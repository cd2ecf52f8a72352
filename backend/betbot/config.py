import os

from dotenv import load_dotenv

load_dotenv()   # loads .env from cwd; safe no-op if absent

# ============================================================
# GATEWAY
# ============================================================
GATEWAY_HOST  = os.getenv("GATEWAY_HOST", "127.0.0.1")
GATEWAY_PORT  = int(os.getenv("GATEWAY_PORT", "18789"))
# Bearer token sent on the websocket handshake -- keep it in .env
GATEWAY_TOKEN = os.getenv("GATEWAY_TOKEN", "")
AGENT_ID      = os.getenv("AGENT_ID", "main")

# ============================================================
# BET LIFECYCLE
# ============================================================
BET_WINDOW_SECONDS     = float(os.getenv("BET_WINDOW_SECONDS", "60"))
COUNTDOWN_TICK_SECONDS = 1.0
CHECK_TICK_SECONDS     = float(os.getenv("CHECK_TICK_SECONDS", "3"))

# ── Frame checks ─────────────────────────────────────────────
FRAME_MAX_WIDTH         = 512
FRAME_QUALITY           = 0.4
CLASSIFY_TOP_K          = 5
CLASSIFY_MIN_CONFIDENCE = 0.1
FRAME_DIR               = os.getenv("FRAME_DIR", "")
FRAME_INTERVAL_SECONDS  = 1.0

# ============================================================
# STORAGE / LOGS
# ============================================================
BET_HISTORY_CSV = os.getenv("BET_HISTORY_CSV", "bet_history.csv")
LOG_DIR         = os.getenv("LOG_DIR", "data")
