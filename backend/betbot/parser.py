"""
Heuristic extraction over completed agent replies.

Best-effort only: ordered regex rules, first match wins. A miss is a normal
outcome ("keep waiting"), never an error.
"""
import re
from enum import Enum

from betbot.models import UINT64_MAX

MARKET_ID_PATTERNS = [
    re.compile(r"[Mm]arket\s+(?:created|ID)[!:]?\s*(?:ID[:\s]*)?\s*(\d+)"),
    re.compile(r"market_id[:\s]+(\d+)"),
    re.compile(r"Market #(\d+)"),
]

QUESTION_PATTERNS = [
    re.compile(r"[\"']([^\"']+\?)[\"']"),   # quoted question
    re.compile(r"question[:\s]+(.+\?)"),     # "question: ..."
]

DEFAULT_QUESTION = "Will the condition be met?"

AFFIRMATIVE_TOKEN = "YES"
NEGATIVE_TOKEN    = "NO"

ACTIVITY_INDICATORS = {"person", "hand", "food", "eating", "picking_up", "holding", "reaching"}


class Resolution(Enum):
    AFFIRMATIVE = "affirmative"
    NEGATIVE    = "negative"
    AMBIGUOUS   = "ambiguous"
    NONE        = "none"


# ============================================================
# MARKET EXTRACTION
# ============================================================
def extract_market_id(text: str) -> int | None:
    for pattern in MARKET_ID_PATTERNS:
        match = pattern.search(text)
        if match:
            market_id = int(match.group(1))
            # first matching rule decides, even when its number is unusable
            return market_id if market_id <= UINT64_MAX else None
    return None


def extract_question(text: str) -> str:
    for pattern in QUESTION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return DEFAULT_QUESTION


def parse_market(text: str) -> tuple[int, str] | None:
    market_id = extract_market_id(text)
    if market_id is None:
        return None
    return market_id, extract_question(text)


# ============================================================
# RESOLUTION
# ============================================================
def classify_resolution(text: str) -> Resolution:
    upper = text.strip().upper()
    yes = AFFIRMATIVE_TOKEN in upper
    no = NEGATIVE_TOKEN in upper
    if yes and no:
        return Resolution.AMBIGUOUS
    if yes:
        return Resolution.AFFIRMATIVE
    if no:
        return Resolution.NEGATIVE
    return Resolution.NONE


def is_affirmative(text: str) -> bool:
    return classify_resolution(text) is Resolution.AFFIRMATIVE


# ============================================================
# FRAME-CHECK HELPERS
# ============================================================
def is_relevant(labels: list[str], question: str) -> bool:
    """Advisory: does any on-device label overlap with the bet question?"""
    keywords = [w for w in re.findall(r"[a-z]+", question.lower()) if len(w) > 3]
    for label in labels:
        normalized = label.lower().replace("_", " ")
        if any(k in normalized for k in keywords):
            return True
    return any(label.lower() in ACTIVITY_INDICATORS for label in labels)


def build_check_prompt(question: str) -> str:
    return (f"The bet is: '{question}'. Based on this image, has the condition been met? "
            f"Reply ONLY 'YES' or 'NO'.")


def build_resolve_message(market_id: int, outcome: bool) -> str:
    return f"Resolve market {market_id} as {'YES' if outcome else 'NO'}"
