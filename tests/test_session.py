from __future__ import annotations

import json

import pytest

from app.services.errors import SessionError
from app.services.session import SessionProvider, project_id_from_url, project_url


@pytest.mark.unit
@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://labs.google/fx/tools/flow/project/abc123", "abc123"),
        ("https://labs.google/fx/tools/flow/project/abc123?tab=1", "abc123"),
        ("https://labs.google/fx/tools/flow/project/abc123/scenes#top", "abc123"),
        ("https://labs.google/fx/tools/flow", None),
        ("https://labs.google/fx/tools/flow/project/", None),
    ],
)
def test_project_id_from_url(url: str, expected) -> None:
    assert project_id_from_url(url) == expected


@pytest.mark.unit
def test_project_url_round_trips_id() -> None:
    url = project_url("abc123", "https://labs.google/fx/tools/flow/")
    assert url == "https://labs.google/fx/tools/flow/project/abc123"
    assert project_id_from_url(url) == "abc123"


@pytest.mark.unit
def test_created_project_id_is_read_from_trpc_envelope() -> None:
    text = json.dumps({"result": {"data": {"json": {"result": {"projectId": "p-42"}}}}})
    assert SessionProvider._parse_created_project({"ok": True, "status": 200, "text": text}) == "p-42"


@pytest.mark.unit
@pytest.mark.parametrize(
    "result",
    [
        None,
        {"ok": False, "status": 403, "text": "forbidden"},
        {"ok": True, "status": 200, "text": "<html>"},
        {"ok": True, "status": 200, "text": json.dumps({"result": {"data": {"json": {}}}})},
    ],
)
def test_project_creation_failures_raise_session_error(result) -> None:
    with pytest.raises(SessionError):
        SessionProvider._parse_created_project(result)


@pytest.mark.unit
def test_unstarted_session_is_disconnected() -> None:
    session = SessionProvider()
    assert not session.is_connected()
    with pytest.raises(SessionError):
        session.page
    session.stop()
    session.stop()
