import os
import logging
import json
from datetime import datetime, timezone
from typing import Optional, Any, Dict

LOG_DIR = os.getenv('BREWLEDGER_LOG_DIR', os.path.join(os.path.dirname(os.path.dirname(__file__)), 'logs'))
LOG_FILE = os.path.join(LOG_DIR, 'activity.log')

# Configure file logger
logger = logging.getLogger('activity')
logger.setLevel(logging.INFO)
if not logger.handlers:
    try:
        os.makedirs(LOG_DIR, exist_ok=True)
        fh = logging.FileHandler(LOG_FILE, encoding='utf-8')
        fmt = logging.Formatter('%(asctime)s %(levelname)s %(message)s')
        fh.setFormatter(fmt)
        logger.addHandler(fh)
    except Exception:
        # fallback to default
        logging.basicConfig()


def format_activity(brewery_id: Optional[str], user_display: Optional[str], operation: str, when: Optional[datetime] = None) -> str:
    """Return the one-line activity prefix.
    Example:
    brewery #northside | user #anna | op: append INVENTORY_IN #12 | at: 2024-01-01 10:32 UTC
    """
    when = when or datetime.now(timezone.utc)
    brewery_part = f"#{brewery_id}" if brewery_id else '#-'
    user_part = f"#{user_display}" if user_display else '#anonymous'
    return f"brewery {brewery_part} | user {user_part} | op: {operation} | at: {when.strftime('%Y-%m-%d %H:%M')} UTC"


def log_activity(brewery_id: Optional[str], user_display: Optional[str], operation: str, detail: Optional[Dict[str, Any]] = None, level: int = logging.INFO):
    """Write a formatted activity entry to activity.log. Never raises."""
    try:
        message = format_activity(brewery_id, user_display, operation)
        try:
            logger.log(level, message + ' | ' + json.dumps(detail or {}, ensure_ascii=False, default=str))
        except Exception:
            logger.log(level, message)
    except Exception:
        # never raise from logger
        pass
