"""Tests for storage.py - SQLite-backed local storage."""

from wallet_engine.storage import LocalStorage


def test_items_round_trip(storage):
    assert storage.get_item("missing") is None
    assert storage.get_item("missing", "fallback") == "fallback"

    storage.set_item("theme", "dark")
    storage.set_item("theme", "light")
    assert storage.get_item("theme") == "light"

    storage.remove_item("theme")
    assert storage.get_item("theme") is None


def test_json_documents_keep_unicode(storage):
    storage.set_json("settings-cache", {"settings": {"category": "Їжа"}})
    assert storage.get_json("settings-cache") == {"settings": {"category": "Їжа"}}


def test_corrupt_json_reads_as_missing(storage):
    storage.set_item("settings-cache", "{not json")
    assert storage.get_json("settings-cache") is None


def test_documents_survive_reopening(tmp_path):
    path = tmp_path / "local.db"
    first = LocalStorage(path)
    first.set_json("settings-cache", {"user_id": "u1"})
    first.close()

    second = LocalStorage(path)
    assert second.get_json("settings-cache") == {"user_id": "u1"}
    second.close()
