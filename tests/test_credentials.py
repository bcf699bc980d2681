"""Tests for the persisted credential store."""
from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest
from pydantic import ValidationError

from extensions.cloudflare_bypass.credentials import Credentials, CredentialStore


def test_load_missing_file_starts_empty(tmp_path: Path) -> None:
    store = CredentialStore.load(str(tmp_path / "missing.json"))
    assert store.snapshot() == Credentials()


def test_load_corrupt_file_starts_empty(tmp_path: Path) -> None:
    path = tmp_path / "creds.json"
    path.write_text("{not json", encoding="utf-8")
    assert CredentialStore.load(str(path)).snapshot().cf_clearance is None


def test_update_persists_and_reloads(tmp_path: Path) -> None:
    path = tmp_path / "settings" / "creds.json"
    store = CredentialStore.load(str(path))
    store.update({"cf_clearance_cookie": " token-1 ", "user_agent_override": "UA/1"})

    saved = json.loads(path.read_text(encoding="utf-8"))
    assert saved == {"cf_clearance_cookie": "token-1", "user_agent_override": "UA/1"}

    reloaded = CredentialStore.load(str(path)).snapshot()
    assert reloaded.cf_clearance == "token-1"
    assert reloaded.user_agent == "UA/1"


def test_partial_update_keeps_other_value(credentials: CredentialStore) -> None:
    credentials.update({"user_agent_override": "Other/2"})
    snapshot = credentials.snapshot()
    assert snapshot.cf_clearance == "abc123"
    assert snapshot.user_agent == "Other/2"


def test_snapshot_is_not_affected_by_later_updates(credentials: CredentialStore) -> None:
    before = credentials.snapshot()
    credentials.update({"cf_clearance_cookie": "changed"})
    assert before.cf_clearance == "abc123"
    with pytest.raises(ValidationError):
        before.cf_clearance_cookie = "mutated"


def test_unknown_key_is_rejected(credentials: CredentialStore) -> None:
    with pytest.raises(ValueError):
        credentials.update({"session_id": "nope"})
    assert credentials.snapshot().cf_clearance == "abc123"


def test_readers_never_see_mixed_pairs() -> None:
    store = CredentialStore(initial=Credentials(cf_clearance_cookie="token-0", user_agent_override="ua-0"))
    stop = threading.Event()
    mismatches = []

    def writer():
        for i in range(1, 300):
            store.update({"cf_clearance_cookie": f"token-{i}", "user_agent_override": f"ua-{i}"})
        stop.set()

    def reader():
        while not stop.is_set():
            snapshot = store.snapshot()
            if snapshot.cf_clearance.split("-")[1] != snapshot.user_agent.split("-")[1]:
                mismatches.append(snapshot)

    readers = [threading.Thread(target=reader) for _ in range(4)]
    for t in readers:
        t.start()
    writer()
    for t in readers:
        t.join()

    assert not mismatches
    assert store.snapshot().cf_clearance == "token-299"
