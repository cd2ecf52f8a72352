import logging
import json
import os
from datetime import datetime, timezone

from betbot import config

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


def setup_logging(log_dir=config.LOG_DIR, level=logging.INFO):
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=[
            logging.FileHandler(os.path.join(log_dir, "system_events.log"), encoding="utf-8"),
            logging.StreamHandler()
        ]
    )


class BetLogger:
    log_dir = config.LOG_DIR

    @staticmethod
    def log_bet(bet_data):
        # one line per resolved market
        with open(os.path.join(BetLogger.log_dir, "bet_journal.jsonl"), "a", encoding="utf-8") as f:
            f.write(json.dumps({
                "timestamp": datetime.now(timezone.utc).isoformat(),
                **bet_data
            }) + "\n")

    @staticmethod
    def log_event(event_type, details, level="info"):
        msg = f"[{event_type.upper()}] {details}"
        if level == "error": logging.error(msg)
        elif level == "warning": logging.warning(msg)
        else: logging.info(msg)
