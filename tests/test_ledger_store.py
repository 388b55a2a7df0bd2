import os
import sys
import csv
import threading

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError

# Ensure backend package importable when running tests from repo root
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
BACKEND = os.path.join(ROOT, 'backend')
if BACKEND not in sys.path:
    sys.path.insert(0, BACKEND)

from brewledger import db as app_db
from brewledger import blockchain, crud, events, exports, models
from brewledger.schemas import ActionData


@pytest.fixture
def session():
    # fresh in-memory SQLite database per test
    engine = app_db.create_test_engine()
    s = app_db.create_test_session(engine)
    try:
        yield s
    finally:
        s.close()
        engine.dispose()


@pytest.fixture
def brewery(session):
    brewery, genesis = crud.create_brewery(session, 'northside', name='Northside Brewing')
    return brewery


def test_create_brewery_persists_genesis(session):
    brewery, genesis = crud.create_brewery(session, 'northside', name='Northside Brewing')
    assert brewery.id == 'northside'
    chain = crud.get_chain(session, 'northside')
    assert chain == [genesis]
    assert genesis.previous_hash == '0'
    assert genesis.data.action == 'GENESIS'
    assert crud.verify_brewery_chain(session, 'northside').valid is True


def test_create_brewery_twice_fails(session, brewery):
    with pytest.raises(ValueError):
        crud.create_brewery(session, 'northside')
    assert len(crud.get_chain(session, 'northside')) == 1


def test_record_action_extends_chain(session, brewery):
    b1 = crud.record_action(session, 'northside', events.new_item('Citra', 'anna'))
    b2 = crud.record_action(session, 'northside', events.inventory_change('Citra', 5, 'delivery', 'anna'))
    b3 = crud.record_action(session, 'northside', events.production('IPA', 300, 'ivan'))
    chain = crud.get_chain(session, 'northside')
    assert [b.index for b in chain] == [0, 1, 2, 3]
    assert chain[1:] == [b1, b2, b3]
    assert b2.previous_hash == b1.hash
    assert crud.get_tail(session, 'northside') == b3
    assert blockchain.verify(chain).valid is True


def test_timeline_is_most_recent_first(session, brewery):
    for n in range(4):
        crud.record_action(session, 'northside', events.inventory_change('Malt', n + 1, 'delivery', 'anna'))
    timeline = crud.get_timeline(session, 'northside')
    assert [b.index for b in timeline] == [4, 3, 2, 1, 0]
    assert [b.index for b in crud.get_timeline(session, 'northside', limit=2)] == [4, 3]


def test_breweries_have_independent_chains(session, brewery):
    crud.create_brewery(session, 'southside')
    crud.record_action(session, 'northside', events.new_item('Citra', 'anna'))
    crud.record_action(session, 'northside', events.new_item('Mosaic', 'anna'))
    s1 = crud.record_action(session, 'southside', events.new_item('Saaz', 'petr'))
    assert s1.index == 1
    assert len(crud.get_chain(session, 'northside')) == 3
    assert len(crud.get_chain(session, 'southside')) == 2
    assert crud.verify_brewery_chain(session, 'northside').valid is True
    assert crud.verify_brewery_chain(session, 'southside').valid is True


def test_record_action_unknown_brewery(session):
    with pytest.raises(crud.BreweryNotFound):
        crud.record_action(session, 'ghost', events.new_item('Citra', 'anna'))


def test_record_action_writes_missing_genesis(session):
    # breweries created before the ledger existed have no blocks at all
    session.add(models.Brewery(id='legacy', name='Legacy'))
    session.commit()
    block = crud.record_action(session, 'legacy', events.new_item('Citra', 'anna'))
    chain = crud.get_chain(session, 'legacy')
    assert block.index == 1
    assert chain[0].data.action == 'GENESIS'
    assert blockchain.verify(chain).valid is True


def test_persist_block_rejects_stale_tail(session, brewery):
    genesis = crud.get_tail(session, 'northside')
    crud.record_action(session, 'northside', events.new_item('Citra', 'anna'))
    fork = blockchain.append(genesis, events.new_item('Mosaic', 'bob'))
    with pytest.raises(crud.ConflictError):
        crud.persist_block(session, 'northside', fork)
    chain = crud.get_chain(session, 'northside')
    assert len(chain) == 2
    assert chain[1].data.details == 'Added: Citra'


def test_unique_key_turns_race_into_conflict(session, brewery, monkeypatch):
    genesis = crud.get_tail(session, 'northside')
    crud.record_action(session, 'northside', events.new_item('Citra', 'anna'))
    # a second writer that still sees the genesis block as the tail
    monkeypatch.setattr(crud, 'get_tail', lambda s, bid: genesis)
    fork = blockchain.append(genesis, events.new_item('Mosaic', 'bob'))
    with pytest.raises(crud.ConflictError):
        crud.persist_block(session, 'northside', fork)
    monkeypatch.undo()
    assert len(crud.get_chain(session, 'northside')) == 2
    assert crud.verify_brewery_chain(session, 'northside').valid is True


def test_raw_duplicate_index_is_rejected_by_database(session, brewery):
    genesis = crud.get_tail(session, 'northside')
    session.add(crud.block_to_row('northside', blockchain.create_genesis()))
    with pytest.raises(IntegrityError):
        session.commit()
    session.rollback()
    assert crud.get_chain(session, 'northside') == [genesis]


def test_record_action_retries_after_conflict(session, brewery, monkeypatch):
    genesis = crud.get_tail(session, 'northside')
    crud.record_action(session, 'northside', events.new_item('Citra', 'anna'))
    real_get_tail = crud.get_tail
    calls = {'n': 0}

    def stale_once(s, bid):
        calls['n'] += 1
        if calls['n'] == 1:
            return genesis
        return real_get_tail(s, bid)

    monkeypatch.setattr(crud, 'get_tail', stale_once)
    block = crud.record_action(session, 'northside', events.new_item('Mosaic', 'bob'))
    assert block.index == 2
    assert crud.verify_brewery_chain(session, 'northside').valid is True


def test_record_action_gives_up_after_retries(session, brewery, monkeypatch):
    genesis = crud.get_tail(session, 'northside')
    crud.record_action(session, 'northside', events.new_item('Citra', 'anna'))
    monkeypatch.setattr(crud, 'get_tail', lambda s, bid: genesis)
    with pytest.raises(crud.ConflictError):
        crud.record_action(session, 'northside', events.new_item('Mosaic', 'bob'), retries=2)
    monkeypatch.undo()
    assert len(crud.get_chain(session, 'northside')) == 2


def test_concurrent_writers_keep_chain_linear(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={'check_same_thread': False, 'timeout': 30})
    Session = app_db.create_test_sessionmaker(engine)
    setup = Session()
    crud.create_brewery(setup, 'busy')
    setup.close()
    errors = []

    def writer(n):
        s = Session()
        try:
            for i in range(5):
                crud.record_action(s, 'busy', events.inventory_change(f'Item {n}', i + 1, 'delivery', f'worker{n}'))
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)
        finally:
            s.close()

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    check = Session()
    try:
        chain = crud.get_chain(check, 'busy')
        assert errors == []
        assert [b.index for b in chain] == list(range(21))
        assert blockchain.verify(chain).valid is True
    finally:
        check.close()
        engine.dispose()


def _client_chain(length):
    blocks = [blockchain.create_genesis('2024-01-01T00:00:00.000Z')]
    for n in range(1, length):
        blocks.append(blockchain.append(blocks[-1], events.inventory_change('Malt', n, 'delivery', 'anna'), timestamp=f'2024-01-01T00:0{n}:00.000Z'))
    return blocks


def test_import_blocks_into_empty_brewery(session):
    session.add(models.Brewery(id='legacy'))
    session.commit()
    blocks = _client_chain(4)
    assert crud.import_blocks(session, 'legacy', blocks) == (4, 0)
    assert crud.get_chain(session, 'legacy') == blocks
    # resending is a no-op
    assert crud.import_blocks(session, 'legacy', blocks) == (0, 4)


def test_import_blocks_extends_existing_chain(session, brewery):
    tail = crud.get_tail(session, 'northside')
    b1 = blockchain.append(tail, events.new_item('Citra', 'anna'))
    b2 = blockchain.append(b1, events.delete_item('Citra', 'anna'))
    assert crud.import_blocks(session, 'northside', [tail, b1, b2]) == (2, 1)
    assert crud.verify_brewery_chain(session, 'northside').valid is True


def test_import_rejects_bad_hash_atomically(session):
    session.add(models.Brewery(id='legacy'))
    session.commit()
    blocks = _client_chain(3)
    blocks[2] = blocks[2].model_copy(update={'data': ActionData(action='INVENTORY_IN', details='Malt: +9000 (gift)', user='anna')})
    with pytest.raises(crud.LedgerIntegrityError):
        crud.import_blocks(session, 'legacy', blocks)
    assert crud.get_chain(session, 'legacy') == []


def test_import_rejects_gap_and_fork(session, brewery):
    tail = crud.get_tail(session, 'northside')
    b1 = blockchain.append(tail, events.new_item('Citra', 'anna'))
    b2 = blockchain.append(b1, events.new_item('Mosaic', 'anna'))
    with pytest.raises(crud.LedgerIntegrityError):
        crud.import_blocks(session, 'northside', [b2])
    crud.import_blocks(session, 'northside', [b1])
    fork = blockchain.append(tail, events.new_item('Simcoe', 'bob'))
    with pytest.raises(crud.ConflictError):
        crud.import_blocks(session, 'northside', [fork])
    assert len(crud.get_chain(session, 'northside')) == 2


def test_import_requires_genesis_action(session):
    session.add(models.Brewery(id='legacy'))
    session.commit()
    ts = '2024-01-01T00:00:00.000Z'
    data = ActionData(action='PRODUCTION', details='x', user='y')
    fake = blockchain.create_genesis(ts).model_copy(update={'data': data, 'hash': blockchain.digest(0, '0', ts, data)})
    with pytest.raises(crud.LedgerIntegrityError):
        crud.import_blocks(session, 'legacy', [fake])


def test_legacy_labels_verify_unchanged(session):
    session.add(models.Brewery(id='legacy'))
    session.commit()
    g = blockchain.create_genesis('2024-01-01T00:00:00.000Z')
    b1 = blockchain.append(g, ActionData(action='ПРИХОД', details='Солод: +25 (поставка)', user='ivan'))
    crud.import_blocks(session, 'legacy', [g, b1])
    stored = crud.get_chain(session, 'legacy')
    assert stored[1].data.action == 'ПРИХОД'
    assert blockchain.verify(stored).valid is True


def test_verify_detects_tampered_row(session, brewery):
    for n in range(3):
        crud.record_action(session, 'northside', events.inventory_change('Malt', n + 1, 'delivery', 'anna'))
    row = (
        session.query(models.LedgerBlock)
        .filter(models.LedgerBlock.brewery_id == 'northside', models.LedgerBlock.index == 2)
        .one()
    )
    row.data = {'action': 'INVENTORY_IN', 'details': 'Malt: +200 (delivery)', 'user': 'anna'}
    session.commit()
    result = crud.verify_brewery_chain(session, 'northside')
    assert result.valid is False
    assert result.broken_at_index == 2


def test_export_ledger_csv(session, brewery, tmp_path, monkeypatch):
    monkeypatch.setattr(exports, 'EXPORT_DIR', str(tmp_path))
    crud.record_action(session, 'northside', events.inventory_change('Malt', -4, 'brew day', 'ivan'))
    path = exports.export_ledger_csv(session, 'northside')
    assert os.path.dirname(path) == str(tmp_path)
    with open(path, newline='', encoding='utf-8') as fh:
        rows = list(csv.DictReader(fh))
    assert [r['index'] for r in rows] == ['0', '1']
    assert rows[0]['action'] == 'GENESIS'
    assert rows[1]['kind'] == 'INVENTORY_OUT'
    assert rows[1]['details'] == 'Malt: -4 (brew day)'
    assert rows[1]['previous_hash'] == rows[0]['hash']


def test_export_unknown_brewery(session, tmp_path, monkeypatch):
    monkeypatch.setattr(exports, 'EXPORT_DIR', str(tmp_path))
    with pytest.raises(crud.BreweryNotFound):
        exports.export_ledger_csv(session, 'ghost')
