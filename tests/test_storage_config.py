from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.constants import DEFAULT_CONFIG
from app.services.storage import FlowRepository, LocalDynamoStorage


@pytest.fixture
def repo(tmp_path: Path) -> FlowRepository:
    return FlowRepository(LocalDynamoStorage(tmp_path / "db.json"))


@pytest.mark.unit
def test_defaults_are_served_before_any_write(repo: FlowRepository) -> None:
    config = repo.get_config()
    assert config == DEFAULT_CONFIG


@pytest.mark.unit
def test_setters_validate_and_persist(tmp_path: Path, repo: FlowRepository) -> None:
    repo.set_max_concurrent_items(8)
    repo.set_poll_interval_seconds(2.5)
    repo.set_profile_dir("  profiles/main  ")

    reloaded = FlowRepository(LocalDynamoStorage(tmp_path / "db.json")).get_config()
    assert reloaded["max_concurrent_items"] == 8
    assert reloaded["poll_interval_seconds"] == 2.5
    assert reloaded["profile_dir"] == "profiles/main"

    with pytest.raises(ValueError):
        repo.set_max_concurrent_items(0)
    with pytest.raises(ValueError):
        repo.set_max_concurrent_items(33)
    with pytest.raises(ValueError):
        repo.set_poll_interval_seconds(0)
    with pytest.raises(ValueError):
        repo.set_profile_dir("   ")
    with pytest.raises(ValueError):
        repo.set_poll_timeout_seconds(-1)


@pytest.mark.unit
def test_update_config_is_all_or_nothing(repo: FlowRepository) -> None:
    with pytest.raises(ValueError):
        repo.update_config({"max_concurrent_items": 10, "poll_interval_seconds": -1})
    assert repo.get_config()["max_concurrent_items"] == DEFAULT_CONFIG["max_concurrent_items"]

    with pytest.raises(ValueError, match="Unknown configuration keys"):
        repo.update_config({"bogus": 1})

    updated = repo.update_config({"max_concurrent_items": 10, "headless": True, "poll_timeout_seconds": 600})
    assert updated["max_concurrent_items"] == 10
    assert updated["headless"] is True
    assert updated["poll_timeout_seconds"] == 600


@pytest.mark.unit
def test_older_state_files_gain_new_defaults(tmp_path: Path) -> None:
    path = tmp_path / "db.json"
    path.write_text(json.dumps({"runs": {}, "config": {"max_concurrent_items": 3}}), encoding="utf-8")

    config = FlowRepository(LocalDynamoStorage(path)).get_config()

    assert config["max_concurrent_items"] == 3
    assert config["poll_interval_seconds"] == DEFAULT_CONFIG["poll_interval_seconds"]


@pytest.mark.unit
def test_items_keep_input_order_and_update_in_place(repo: FlowRepository) -> None:
    run = repo.create_run({"limit": 2})
    repo.create_items(run["id"], [{"id": "z", "text": "last"}, {"id": "a", "text": "first"}])

    repo.update_item(run["id"], "a", {"state": "polling", "scene_id": "s-a"})

    items = repo.list_items(run["id"])
    assert [item["item_id"] for item in items] == ["z", "a"]
    assert items[1]["state"] == "polling"
    assert items[1]["scene_id"] == "s-a"
    assert repo.update_item(run["id"], "missing", {"state": "failed"}) is None


@pytest.mark.unit
def test_events_are_sequenced_per_run(repo: FlowRepository) -> None:
    first = repo.create_run({"limit": 1})
    second = repo.create_run({"limit": 1})

    for index in range(3):
        repo.append_event(first["id"], {"item_id": "a", "message": f"m{index}"})
    repo.append_event(second["id"], {"item_id": "b", "message": "other"})

    events = repo.list_events(first["id"])
    assert [event["sequence"] for event in events] == [0, 1, 2]
    assert all(event["run_id"] == first["id"] for event in events)
    assert [event["message"] for event in repo.list_events(first["id"], since=2)] == ["m2"]
    assert repo.list_events(second["id"])[0]["sequence"] == 0


@pytest.mark.unit
def test_runs_filter_by_status(repo: FlowRepository) -> None:
    queued = repo.create_run({"limit": 1})
    done = repo.create_run({"limit": 1})
    repo.update_run(done["id"], {"status": "finished"})

    assert [run["id"] for run in repo.list_runs(status="finished")] == [done["id"]]
    assert [run["id"] for run in repo.list_runs(status="queued")] == [queued["id"]]
    assert len(repo.list_runs()) == 2
