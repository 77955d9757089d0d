import json
import os
import threading

import pytest

from pac_blocklist import JSONStore, LocalBlocklist, PersistenceError


def test_missing_file_returns_default(store):
    assert store.get("domains") is None
    assert store.get("blockedDomains", []) == []


def test_set_and_get(store):
    store.set("domains", {'domains': ["a.com"], 'timestamp': 1})
    store.set("blockedDomains", [])
    assert store.get("domains") == {'domains': ["a.com"], 'timestamp': 1}

    with open(store.path, encoding='utf-8') as f:
        assert set(json.load(f)) == {"domains", "blockedDomains"}


def test_no_temp_files_left_behind(store, tmp_path):
    store.set("key", "value")
    assert [name for name in os.listdir(tmp_path) if name.startswith(".tmp-")] == []


def test_corrupt_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding='utf-8')
    with pytest.raises(PersistenceError):
        JSONStore(str(path)).get("domains")


def test_non_object_file_raises(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("[1, 2]", encoding='utf-8')
    with pytest.raises(PersistenceError):
        JSONStore(str(path)).get("domains")


def test_unreadable_location_raises(tmp_path):
    path = tmp_path / "state.json"
    path.mkdir()
    with pytest.raises(PersistenceError):
        JSONStore(str(path)).set("domains", {})


def test_transaction_is_reentrant(store):
    with store.transaction():
        with store.transaction():
            store.set("key", 1)
        assert store.get("key") == 1


def test_separate_stores_on_one_file_do_not_lose_updates(tmp_path, clock):
    # Each store has its own in-process lock; only the file lock is shared,
    # as it would be between a daemon and a one-off CLI process.
    path = str(tmp_path / "state.json")
    first = LocalBlocklist(JSONStore(path), clock=clock)
    second = LocalBlocklist(JSONStore(path), clock=clock)

    hosts = ["host%02d.com" % i for i in range(40)]
    threads = [
        threading.Thread(target=(first if i % 2 else second).add_domain, args=(host,))
        for i, host in enumerate(hosts)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(LocalBlocklist(JSONStore(path)).domains()) == hosts
