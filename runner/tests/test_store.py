from __future__ import annotations

import json
from pathlib import Path

import pytest

from arachnid_runner.errors import StoreUnavailableError
from arachnid_runner.records import AgentRecord, derive_codename
from arachnid_runner.store import AgentRepository, JsonFileStore, MemoryStore, agent_key


def test_codename_precedence() -> None:
    assert derive_codename(handle="@@Spinner", token="tok", first="Ann") == "@Spinner"
    assert derive_codename(handle="  ", token="@tok", first="Ann") == "@tok"
    assert derive_codename(first="Ann") == "@Ann"
    assert derive_codename() == "@tester"


def test_record_round_trip_normalizes_missing_and_unknown_values() -> None:
    record = AgentRecord.from_dict(
        {
            "token": "Agent-1",
            "introAccepted": True,
            "missions": {"m1": {"status": "DONE"}, "m2": {"status": "LOCKED", "data": {"videoUrl": "https://x"}}},
            "visitCount": -4,
        }
    )
    assert record.intro_viewed is True
    assert record.missions["m1"] == {"status": "NOT_STARTED"}
    assert record.missions["m2"]["status"] == "LOCKED"
    assert record.missions["m3"] == {"status": "NOT_STARTED"}
    assert record.visit_count == 0
    assert record.codename == "@Agent-1"

    payload = record.to_dict()
    assert set(payload["missions"]) == {"m1", "m2", "m3"}
    assert payload["introAccepted"] is True


def test_record_without_token_is_rejected() -> None:
    with pytest.raises(ValueError):
        AgentRecord.from_dict({"first": "Ann"})


def test_memory_store_copies_values() -> None:
    store = MemoryStore()
    value = {"nested": {"count": 1}}
    store.put("agent:a", value)
    value["nested"]["count"] = 99
    loaded = store.get("agent:a")
    assert loaded == {"nested": {"count": 1}}
    loaded["nested"]["count"] = 5
    assert store.get("agent:a") == {"nested": {"count": 1}}


def test_file_store_keeps_case_sensitive_tokens_apart(tmp_path: Path) -> None:
    repo = AgentRepository(JsonFileStore(tmp_path / "agents"))
    repo.save(AgentRecord.new("Agent", first="Upper"))
    repo.save(AgentRecord.new("agent", first="Lower"))

    assert repo.get("Agent").first == "Upper"
    assert repo.get("agent").first == "Lower"
    assert repo.get("AGENT") is None
    assert sorted(record.token for record in repo.list_all()) == ["Agent", "agent"]


def test_file_store_writes_wrapped_documents(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path)
    store.put(agent_key("tok"), {"token": "tok"})
    files = list(tmp_path.glob("*.json"))
    assert len(files) == 1
    wrapper = json.loads(files[0].read_text(encoding="utf-8"))
    assert wrapper == {"key": "agent:tok", "value": {"token": "tok"}}
    assert not list(tmp_path.glob(".*.tmp"))


def test_file_store_corrupt_document_raises(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path)
    store.put("agent:tok", {"token": "tok"})
    next(tmp_path.glob("*.json")).write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreUnavailableError):
        store.get("agent:tok")


def test_list_by_prefix_filters_and_sorts(tmp_path: Path) -> None:
    store = JsonFileStore(tmp_path)
    store.put("agent:b", {"token": "b"})
    store.put("agent:a", {"token": "a"})
    store.put("other:c", {"token": "c"})
    assert [row["token"] for row in store.list_by_prefix("agent:")] == ["a", "b"]
    assert JsonFileStore(tmp_path / "missing").list_by_prefix("agent:") == []


def test_codename_is_recomputed_on_every_identity_update() -> None:
    record = AgentRecord.new("Agent-1", handle="@spinner")
    assert record.codename == "@spinner"
    record.apply_identity(handle="@@weaver")
    assert record.codename == "@weaver"
    record.apply_identity(first="Ann")
    assert record.codename == "@Agent-1"
    assert record.first == "Ann"
