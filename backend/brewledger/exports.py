import os
import re
import csv
import uuid
from typing import Optional

from . import crud
from .blockchain import normalize_action

EXPORT_DIR = os.getenv('BREWLEDGER_EXPORT_DIR', os.path.join(os.path.dirname(__file__), '..', 'exports'))

LEDGER_COLUMNS = ['index', 'timestamp', 'action', 'kind', 'details', 'user', 'previous_hash', 'hash']


def _sanitize_filename(name: str) -> str:
    sanitized = re.sub(r'[^A-Za-z0-9._-]+', '_', name or '')
    return sanitized or 'brewery'


def export_ledger_csv(db_session, brewery_id: str, filename: Optional[str] = None) -> str:
    """Write the brewery's chain, oldest first, to a CSV file and return its path.

    Stored values are written unchanged; `kind` is the normalized action for
    ledgers that still carry legacy labels.
    """
    crud.require_brewery(db_session, brewery_id)
    chain = crud.get_chain(db_session, brewery_id)
    os.makedirs(EXPORT_DIR, exist_ok=True)
    fn = filename or f"ledger-{_sanitize_filename(brewery_id)}-{uuid.uuid4().hex[:8]}.csv"
    path = os.path.join(EXPORT_DIR, fn)
    with open(path, 'w', newline='', encoding='utf-8') as f:
        writer = csv.writer(f)
        writer.writerow(LEDGER_COLUMNS)
        for block in chain:
            kind = normalize_action(block.data.action, block.data.details)
            writer.writerow([
                block.index,
                block.timestamp,
                block.data.action,
                kind.value if kind else '',
                block.data.details,
                block.data.user,
                block.previous_hash,
                block.hash,
            ])
    return path
