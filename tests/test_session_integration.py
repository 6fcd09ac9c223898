from __future__ import annotations

import itertools
import json
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Tuple

import pytest

from app.constants import GENERATE_ENDPOINT_PATTERN, PROMPT_INPUT_SELECTOR
from app.schemas import AuthContext
from app.services.correlator import OperationCorrelator
from app.services.errors import SessionError
from app.services.orchestrator import BatchOrchestrator
from app.services.poller import StatusPoller
from app.services.session import SessionProvider
from app.services.storage import FlowRepository, LocalDynamoStorage
from app.services.submission import SubmissionDriver

STATUS_PATH = "/v1/video:batchCheckAsyncVideoGenerationStatus"

PROJECT_PAGE = """
<html>
  <body>
    <textarea id="PINHOLE_TEXT_AREA_ELEMENT_ID"></textarea>
    <button id="go"><i class="google-symbols">arrow_forward</i></button>
    <script>
      document.getElementById("go").addEventListener("click", () => {
        const prompt = document.getElementById("PINHOLE_TEXT_AREA_ELEMENT_ID").value;
        fetch("/v1/%s", { method: "POST", body: JSON.stringify({ prompt }) });
      });
    </script>
  </body>
</html>
""" % GENERATE_ENDPOINT_PATTERN


class FlowSiteHandler(BaseHTTPRequestHandler):
    counter = itertools.count(1)

    def log_message(self, format: str, *args) -> None:  # noqa: A002 - signature fixed by base class
        return None

    def _write(self, status: int, body: str, content_type: str = "application/json") -> None:
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def do_GET(self) -> None:  # noqa: N802 - mandated by BaseHTTPRequestHandler
        if self.path.startswith("/project/"):
            self._write(200, PROJECT_PAGE, "text/html")
            return
        self._write(404, "{}")

    def do_POST(self) -> None:  # noqa: N802 - mandated by BaseHTTPRequestHandler
        length = int(self.headers.get("Content-Length", "0"))
        payload = json.loads(self.rfile.read(length) or b"{}")
        if GENERATE_ENDPOINT_PATTERN in self.path:
            number = next(self.__class__.counter)
            body = {
                "operations": [
                    {
                        "operation": {"name": f"operations/{number}"},
                        "sceneId": f"scene-{number}",
                        "status": "MEDIA_GENERATION_STATUS_PENDING",
                    }
                ]
            }
            self._write(200, json.dumps(body))
            return
        if self.path == STATUS_PATH:
            operations = [
                {
                    "operation": {
                        "name": entry["operation"]["name"],
                        "metadata": {
                            "sceneId": entry["sceneId"],
                            "video": {"fifeUrl": f"https://cdn.test/{entry['sceneId']}.mp4"},
                        },
                    },
                    "status": "MEDIA_GENERATION_STATUS_SUCCESSFUL",
                }
                for entry in payload.get("operations", [])
            ]
            self._write(200, json.dumps({"operations": operations}))
            return
        self._write(404, "{}")


def _start_site() -> Tuple[ThreadingHTTPServer, int]:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    server = ThreadingHTTPServer(("127.0.0.1", port), FlowSiteHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, port


@pytest.fixture
def site():
    server, port = _start_site()
    try:
        yield f"http://127.0.0.1:{port}"
    finally:
        server.shutdown()
        server.server_close()


def _launch(session: SessionProvider, profile_dir: Path) -> None:
    try:
        session.start(profile_dir)
    except SessionError as exc:
        pytest.skip(f"Chromium is not available: {exc}")


@pytest.mark.integration
def test_submission_is_confirmed_through_network_traffic(tmp_path: Path, site: str) -> None:
    session = SessionProvider(headless=True, login_timeout=5, start_url=f"{site}/project/demo")
    _launch(session, tmp_path / "profile")
    with session:
        session.ensure_authenticated()
        assert session.ensure_work_context() == "demo"

        driver = SubmissionDriver(session, type_delay_ms=0)
        driver.ensure_ready(10)
        correlator = OperationCorrelator()
        correlator.attach(session)

        driver.submit("a red kite over the dunes")
        handles = []
        for _ in range(20):
            session.wait(0.25)
            handles.extend(correlator.drain())
            if handles:
                break

        assert len(handles) == 1
        assert handles[0].operation_name.startswith("operations/")
        assert session.page.input_value(PROMPT_INPUT_SELECTOR) == ""

    assert not session.is_connected()


@pytest.mark.integration
def test_batch_runs_end_to_end_against_local_site(tmp_path: Path, site: str) -> None:
    preflight = SessionProvider(headless=True, start_url=f"{site}/project/demo")
    _launch(preflight, tmp_path / "preflight")
    preflight.stop()

    repo = FlowRepository(LocalDynamoStorage(tmp_path / "db.json"))
    repo.update_config(
        {
            "profile_dir": str(tmp_path / "profile"),
            "headless": True,
            "poll_interval_seconds": 0.2,
            "type_delay_ms": 0,
            "input_timeout_seconds": 10,
        }
    )
    orchestrator = BatchOrchestrator(
        repo=repo,
        session_factory=lambda config: SessionProvider(
            headless=config["headless"],
            login_timeout=5,
            start_url=f"{site}/project/demo",
        ),
        poller=StatusPoller(endpoint=f"{site}{STATUS_PATH}"),
        auto_start=False,
    )
    auth = AuthContext(session_cookie="SID=local")
    items = [{"id": f"item-{index}", "text": f"prompt number {index}"} for index in range(3)]

    run = orchestrator.start(items, auth, limit=2)
    orchestrator.execute_now(run["id"])

    finished = repo.get_run(run["id"])
    assert finished["status"] == "finished"
    assert finished["project_id"] == "demo"
    records = repo.list_items(run["id"])
    assert [record["state"] for record in records] == ["succeeded"] * 3
    assert all(record["result_url"].startswith("https://cdn.test/scene-") for record in records)
    assert len({record["scene_id"] for record in records}) == 3
