import json

import pytest

from services.crypto_core.keys import view_keypair_from_seed
from services.crypto_core.merkle import build_tree
from services.database.kv import JsonFileStore, MemoryStore, Namespace, SqliteStore, open_store
from services.database.notes import NoteStore, create_note
from services.database.txlog import TransactionLog, TransactionRecord
from services.protocol.errors import Desync, InsufficientFunds

DEPTH = 8
VK = view_keypair_from_seed(b"\x05" * 32)


class Boom(Exception):
    pass


# ---- kv ----
@pytest.mark.parametrize("backend", ["memory", "json", "sqlite"])
def test_transaction_rolls_back_on_error(tmp_path, backend):
    store = open_store(tmp_path, backend)
    store.set("a", 1)
    with pytest.raises(Boom):
        with store.transaction():
            store.set("a", 2)
            store.set("b", [1, 2])
            raise Boom()
    assert store.get("a") == 1
    assert store.get("b") is None
    with store.transaction():
        store.set("b", {"x": "y"})
        store.delete("a")
    assert store.get("b") == {"x": "y"}
    assert store.get("a", "gone") == "gone"


def test_json_store_persists_atomically(tmp_path):
    path = tmp_path / "state.json"
    store = JsonFileStore(path)
    with store.transaction():
        store.set("k", [str(2 ** 200)])
    assert json.loads(path.read_text()) == {"k": [str(2 ** 200)]}
    assert JsonFileStore(path).get("k") == [str(2 ** 200)]


def test_sqlite_store_survives_reopen(tmp_path):
    store = SqliteStore(tmp_path / "kv.db")
    store.set("k", {"v": 1})
    store.close()
    reopened = SqliteStore(tmp_path / "kv.db")
    assert reopened.get("k") == {"v": 1}
    reopened.close()


def test_memory_store_returns_copies():
    store = MemoryStore()
    store.set("k", [1])
    store.get("k").append(2)
    assert store.get("k") == [1]


def test_namespace_keys_by_owner_and_asset():
    store = MemoryStore()
    Namespace(store, "owner", "mint").set("notes", [])
    assert store.keys() == ["veilpay.notes.owner.mint"]


def test_open_store_rejects_unknown_backend(tmp_path):
    with pytest.raises(ValueError):
        open_store(tmp_path, "redis")


# ---- txlog ----
def test_txlog_appends_and_filters(tmp_path):
    log = TransactionLog(tmp_path / "tx.db")
    rid = log.append(TransactionRecord(flow="deposit", signature="s1", details={"amount": 5}))
    log.append(TransactionRecord(flow="withdraw", signature="s2", relayer="unsigned"))
    log.append(TransactionRecord(id=rid, flow="deposit", signature="dup"))
    deposits = log.records("deposit")
    assert [r.signature for r in deposits] == ["s1"]
    assert deposits[0].details == {"amount": 5}
    assert len(log.records()) == 2
    log.close()


# ---- notes ----
def _store_with_notes(amounts):
    notes = NoteStore(MemoryStore(), "owner", "mint", DEPTH)
    for i, amount in enumerate(amounts):
        note, _ = create_note("mint", amount, VK.pubkey, i)
        notes.commit_flow([], [note], [note.commitment], i)
    return notes


def test_commit_flow_appends_leaves_and_keeps_notes():
    notes = _store_with_notes([70, 80])
    assert notes.balance() == 150
    assert [n.id for n in notes.list_spendable()] == ["mint:0", "mint:1"]
    assert len(notes.commitments()) == 2


def test_commit_flow_detects_moved_list():
    notes = _store_with_notes([70])
    note, _ = create_note("mint", 5, VK.pubkey, 3)
    with pytest.raises(Desync):
        notes.commit_flow([], [note], [note.commitment], 3)
    assert notes.balance() == 70


def test_commit_flow_spend_is_atomic():
    notes = _store_with_notes([70, 80])
    with pytest.raises(KeyError):
        notes.commit_flow(["mint:0", "mint:9"], [], [123], 2)
    assert notes.balance() == 150
    assert len(notes.commitments()) == 2


def test_select_raises_insufficient_funds():
    notes = _store_with_notes([70, 80])
    with pytest.raises(InsufficientFunds) as ei:
        notes.select_for_amount(151, 4)
    assert ei.value.available == 150
    assert ei.value.requested == 151


def test_reconcile_drops_surplus_leaves_and_their_notes():
    notes = _store_with_notes([70, 80, 90])
    on_chain = build_tree(notes.commitments()[:2], DEPTH)[0]
    assert notes.reconcile(2, on_chain) == 1
    assert len(notes.commitments()) == 2
    assert notes.balance() == 150


def test_reconcile_raises_when_behind_or_diverged():
    notes = _store_with_notes([70])
    with pytest.raises(Desync):
        notes.reconcile(2, 0)
    with pytest.raises(Desync):
        notes.reconcile(1, 12345)
    assert notes.reconcile(1, notes.root()) == 0


def test_rescan_requires_matching_root():
    source = _store_with_notes([70, 80])
    fresh = NoteStore(MemoryStore(), "owner", "mint", DEPTH)
    with pytest.raises(Desync):
        fresh.rescan(source.commitments()[:1], [], source.root())
    added = fresh.rescan(source.commitments(), source.load(), source.root())
    assert added == 2
    assert fresh.balance() == 150
