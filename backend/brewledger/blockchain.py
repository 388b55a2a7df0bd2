"""
Hash-chained audit ledger for brewery inventory events.

Every block binds its index, predecessor hash, timestamp and action payload
through a DJB2-style rolling digest. The digest is not cryptographic: it is a
tamper-evidence marker that has to stay bit-compatible with ledgers already
stored, so it must not be swapped for a stronger hash.
"""
import re
import json
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional, Union

from .schemas import ActionData, ActionKind, Block, ValidationResult

GENESIS_PREVIOUS_HASH = '0'
GENESIS_DATA = {'action': ActionKind.GENESIS.value, 'details': 'Blockchain Started', 'user': 'SYSTEM'}

_DJB2_SEED = 5381
_MASK32 = 0xFFFFFFFF

# a high+low pair is one astral character to JSON.stringify; anything else is lone
_SURROGATES = re.compile(r"([\ud800-\udbff][\udc00-\udfff])|[\ud800-\udfff]")


def now_iso() -> str:
    """Current UTC time as `YYYY-MM-DDTHH:MM:SS.mmmZ`."""
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def canonical_json(data: Union[ActionData, Mapping[str, Any]]) -> str:
    """Compact JSON with keys in insertion order (action, details, user)."""
    if isinstance(data, ActionData):
        data = data.model_dump()
    text = json.dumps(dict(data), ensure_ascii=False, separators=(',', ':'))
    return _SURROGATES.sub(_escape_lone_surrogate, text)


def _escape_lone_surrogate(match) -> str:
    if match.group(1):
        return match.group(1)
    return '\\u%04x' % ord(match.group(0))


def _utf16_units(text: str) -> Iterable[int]:
    raw = text.encode('utf-16-le', 'surrogatepass')
    for i in range(0, len(raw), 2):
        yield raw[i] | (raw[i + 1] << 8)


def digest(index: int, previous_hash: str, timestamp: str, data: Union[ActionData, Mapping[str, Any]]) -> str:
    """DJB2 over index + previous_hash + timestamp + canonical JSON of data.

    Characters are consumed as UTF-16 code units and the accumulator wraps at
    32 bits after every step; the result is the unsigned value in lowercase hex.
    """
    text = f"{int(index)}{previous_hash}{timestamp}{canonical_json(data)}"
    acc = _DJB2_SEED
    for unit in _utf16_units(text):
        acc = ((acc << 5) + acc + unit) & _MASK32
    return format(acc, 'x')


def create_genesis(timestamp: Optional[str] = None) -> Block:
    ts = timestamp or now_iso()
    data = ActionData(**GENESIS_DATA)
    return Block(
        index=0,
        timestamp=ts,
        data=data,
        previous_hash=GENESIS_PREVIOUS_HASH,
        hash=digest(0, GENESIS_PREVIOUS_HASH, ts, data),
    )


def append(last_block: Block, payload: ActionData, timestamp: Optional[str] = None) -> Block:
    """Compute the block following `last_block`.

    Nothing is persisted and `last_block` is left untouched; the caller owns
    the tail and must serialise appends per brewery.
    """
    next_index = last_block.index + 1
    ts = timestamp or now_iso()
    return Block(
        index=next_index,
        timestamp=ts,
        data=payload,
        previous_hash=last_block.hash,
        hash=digest(next_index, last_block.hash, ts, payload),
    )


def block_hash_matches(block: Block) -> bool:
    return block.hash == digest(block.index, block.previous_hash, block.timestamp, block.data)


def verify(chain: Iterable[Block]) -> ValidationResult:
    """Linear scan reporting the first position whose link or hash is broken.

    Position 0 must be a GENESIS block and every block's index must equal its
    position in the sequence.
    """
    previous: Optional[Block] = None
    for position, block in enumerate(chain):
        if block.index != position:
            ok = False
        elif previous is None:
            ok = (
                block.previous_hash == GENESIS_PREVIOUS_HASH
                and block.data.action == ActionKind.GENESIS.value
                and block_hash_matches(block)
            )
        else:
            ok = block.previous_hash == previous.hash and block_hash_matches(block)
        if not ok:
            return ValidationResult(valid=False, broken_at_index=position)
        previous = block
    return ValidationResult(valid=True, broken_at_index=None)


# Labels written by the original Russian-language client. Stored payloads keep
# them verbatim (they are part of the hash); this table is for reporting only.
LEGACY_ACTION_LABELS = {
    'ПРИХОД': ActionKind.INVENTORY_IN,
    'РАСХОД': ActionKind.INVENTORY_OUT,
    'КОРРЕКЦИЯ': ActionKind.ADJUSTMENT,
    'НОВАЯ ПОЗИЦИЯ': ActionKind.NEW_ITEM,
    'УДАЛЕНИЕ': ActionKind.DELETE_ITEM,
    'ПРОИЗВОДСТВО': ActionKind.PRODUCTION,
}
_LEGACY_EMPLOYEE_LABEL = 'СОТРУДНИКИ'
_LEGACY_EMPLOYEE_REMOVED_PREFIX = 'Удален'


def normalize_action(label: str, details: Optional[str] = None) -> Optional[ActionKind]:
    """Map a stored action label (current or legacy) to ActionKind, or None."""
    try:
        return ActionKind(label)
    except ValueError:
        pass
    if label == _LEGACY_EMPLOYEE_LABEL:
        if details and details.startswith(_LEGACY_EMPLOYEE_REMOVED_PREFIX):
            return ActionKind.EMPLOYEE_REMOVE
        return ActionKind.EMPLOYEE_ADD
    return LEGACY_ACTION_LABELS.get(label)
