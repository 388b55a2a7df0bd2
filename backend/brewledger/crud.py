import os
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import blockchain, models
from .activity_logger import log_activity
from .schemas import ActionData, Block, ValidationResult

APPEND_RETRIES = int(os.getenv('LEDGER_APPEND_RETRIES', '3'))


class ConflictError(Exception):
    """The block does not extend the stored tail (another writer got there first)."""


class LedgerIntegrityError(ValueError):
    """A submitted block is malformed: bad link, bad hash or bad genesis."""


class BreweryNotFound(LookupError):
    pass


# ==================== Per-brewery write fencing ====================

_locks_guard = threading.Lock()
_tenant_locks: Dict[str, threading.Lock] = {}


def tenant_lock(brewery_id: str) -> threading.Lock:
    """In-process mutex serialising ledger writes for one brewery."""
    with _locks_guard:
        lock = _tenant_locks.get(brewery_id)
        if lock is None:
            lock = threading.Lock()
            _tenant_locks[brewery_id] = lock
        return lock


# ==================== Row <-> Block ====================

def row_to_block(row: models.LedgerBlock) -> Block:
    return Block(
        index=row.index,
        timestamp=row.timestamp,
        data=ActionData(**row.data),
        previous_hash=row.previous_hash,
        hash=row.hash,
    )


def block_to_row(brewery_id: str, block: Block) -> models.LedgerBlock:
    return models.LedgerBlock(
        brewery_id=brewery_id,
        index=block.index,
        timestamp=block.timestamp,
        data=block.data.model_dump(),
        previous_hash=block.previous_hash,
        hash=block.hash,
    )


# ==================== Brewery CRUD ====================

def get_brewery(session: Session, brewery_id: str) -> Optional[models.Brewery]:
    return session.query(models.Brewery).filter(models.Brewery.id == brewery_id).first()


def require_brewery(session: Session, brewery_id: str) -> models.Brewery:
    brewery = get_brewery(session, brewery_id)
    if brewery is None:
        raise BreweryNotFound(f'Brewery {brewery_id!r} not found')
    return brewery


def create_brewery(session: Session, brewery_id: str, name: Optional[str] = None, timestamp: Optional[str] = None) -> Tuple[models.Brewery, Block]:
    """Create a brewery together with its genesis block in one transaction."""
    if get_brewery(session, brewery_id):
        raise ValueError('Brewery already exists')
    genesis = blockchain.create_genesis(timestamp)
    brewery = models.Brewery(id=brewery_id, name=name)
    session.add(brewery)
    session.add(block_to_row(brewery_id, genesis))
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ValueError('Brewery already exists') from exc
    session.refresh(brewery)
    log_activity(brewery_id, 'SYSTEM', 'create brewery', detail={'genesis_hash': genesis.hash})
    return brewery, genesis


# ==================== Ledger reads ====================

def get_chain(session: Session, brewery_id: str) -> List[Block]:
    rows = (
        session.query(models.LedgerBlock)
        .filter(models.LedgerBlock.brewery_id == brewery_id)
        .order_by(models.LedgerBlock.index.asc())
        .all()
    )
    return [row_to_block(r) for r in rows]


def get_tail(session: Session, brewery_id: str) -> Optional[Block]:
    row = (
        session.query(models.LedgerBlock)
        .filter(models.LedgerBlock.brewery_id == brewery_id)
        .order_by(models.LedgerBlock.index.desc())
        .first()
    )
    return row_to_block(row) if row else None


def get_timeline(session: Session, brewery_id: str, limit: Optional[int] = None) -> List[Block]:
    """Blocks most-recent-first, as the activity feed shows them."""
    qs = (
        session.query(models.LedgerBlock)
        .filter(models.LedgerBlock.brewery_id == brewery_id)
        .order_by(models.LedgerBlock.index.desc())
    )
    if limit:
        qs = qs.limit(int(limit))
    return [row_to_block(r) for r in qs.all()]


# ==================== Ledger writes ====================

def _expected_link(tail: Optional[Block]) -> Tuple[int, str]:
    if tail is None:
        return 0, blockchain.GENESIS_PREVIOUS_HASH
    return tail.index + 1, tail.hash


def persist_block(session: Session, brewery_id: str, block: Block) -> Block:
    """Durably store `block` as the new tail.

    Raises ConflictError when the block was computed off a stale tail, either
    seen here or reported by the (brewery_id, index) key on insert. The
    session is rolled back on any failure so the tail does not advance.
    """
    expected_index, expected_prev = _expected_link(get_tail(session, brewery_id))
    if block.index != expected_index or block.previous_hash != expected_prev:
        raise ConflictError(
            f'Block {block.index} does not extend tail (expected index {expected_index}, previous hash {expected_prev})'
        )
    session.add(block_to_row(brewery_id, block))
    try:
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise ConflictError(f'Block {block.index} already exists for brewery {brewery_id}') from exc
    except SQLAlchemyError:
        session.rollback()
        raise
    return block


def record_action(session: Session, brewery_id: str, payload: ActionData, retries: Optional[int] = None) -> Block:
    """Append one action to the brewery's ledger and persist it.

    Writes are serialised per brewery; a conflict from another process
    re-reads the tail and retries up to `retries` times.
    """
    require_brewery(session, brewery_id)
    attempts = max(1, retries if retries is not None else APPEND_RETRIES)
    last_error: Optional[ConflictError] = None
    with tenant_lock(brewery_id):
        for attempt in range(1, attempts + 1):
            try:
                tail = get_tail(session, brewery_id)
                if tail is None:
                    tail = persist_block(session, brewery_id, blockchain.create_genesis())
                block = blockchain.append(tail, payload)
                persist_block(session, brewery_id, block)
            except ConflictError as exc:
                session.rollback()
                last_error = exc
                log_activity(brewery_id, payload.user, f'append conflict, attempt {attempt}/{attempts}', detail={'error': str(exc)}, level=logging.WARNING)
                continue
            log_activity(brewery_id, payload.user, f'append {payload.action} #{block.index}', detail={'hash': block.hash, 'details': payload.details})
            return block
    raise ConflictError(f'Could not append to ledger of {brewery_id} after {attempts} attempts') from last_error


def import_blocks(session: Session, brewery_id: str, blocks: Iterable[Block]) -> Tuple[int, int]:
    """Store client-computed blocks in order; returns (inserted, skipped).

    A block already stored with the same hash is skipped. Anything else must
    extend the tail and carry a hash that recomputes. The batch is atomic.
    """
    require_brewery(session, brewery_id)
    inserted = skipped = 0
    with tenant_lock(brewery_id):
        stored = {b.index: b for b in get_chain(session, brewery_id)}
        tail = stored[max(stored)] if stored else None
        try:
            for block in blocks:
                existing = stored.get(block.index)
                if existing is not None:
                    if existing.hash != block.hash:
                        raise ConflictError(f'Block {block.index} already stored with a different hash')
                    skipped += 1
                    continue
                expected_index, expected_prev = _expected_link(tail)
                if block.index != expected_index or block.previous_hash != expected_prev:
                    raise LedgerIntegrityError(f'Block {block.index} does not extend the chain at index {expected_index}')
                if block.index == 0 and block.data.action != blockchain.GENESIS_DATA['action']:
                    raise LedgerIntegrityError('Block 0 must be a GENESIS block')
                if not blockchain.block_hash_matches(block):
                    raise LedgerIntegrityError(f'Block {block.index} hash does not match its content')
                session.add(block_to_row(brewery_id, block))
                stored[block.index] = block
                tail = block
                inserted += 1
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f'Concurrent write to ledger of {brewery_id}') from exc
        except (ConflictError, LedgerIntegrityError, SQLAlchemyError):
            session.rollback()
            raise
    log_activity(brewery_id, None, 'import blocks', detail={'inserted': inserted, 'skipped': skipped})
    return inserted, skipped


def verify_brewery_chain(session: Session, brewery_id: str) -> ValidationResult:
    result = blockchain.verify(get_chain(session, brewery_id))
    if not result.valid:
        log_activity(brewery_id, None, 'ledger verification failed', detail={'broken_at_index': result.broken_at_index}, level=logging.WARNING)
    return result
