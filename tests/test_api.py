"""
HTTP-level tests for the FastAPI app in `main.py`.

Every external dependency is swapped through `app.dependency_overrides`, so
no GitHub, model or MongoDB access happens here.
"""
import asyncio
import json
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

import main
from services import (
    DiscoveredFile,
    DiscoveryError,
    DiscoveryReport,
    FetchError,
    FileContentResult,
    GenerationError,
    StrategyAttempt,
)
from store import InMemoryStore


class _FakeReviewer:
    def __init__(self):
        self.fail = False
        self.calls: List[Dict[str, Any]] = []

    async def review_code(self, code, file_name=None):
        self.calls.append({"op": "review", "file_name": file_name})
        if self.fail:
            raise GenerationError("model unavailable")
        return f"Review of {file_name}\n## Refactor Suggestions\n1. Simplify {file_name}"

    async def generate_unit_tests(self, code, analysis, file_name=None):
        self.calls.append({"op": "tests", "analysis": analysis})
        return "def test_it(): pass"

    async def apply_refactor(self, code, suggestions, file_name=None, target_path=None):
        self.calls.append({"op": "refactor", "suggestions": suggestions, "target_path": target_path})
        return "refactored = True"

    async def chat(self, system_prompt, context, user_message):
        self.calls.append({"op": "chat", "context": context})
        return f"echo: {user_message}"


class _FakeFetcher:
    def __init__(self, files: Dict[str, str]):
        self.files = files

    def fetch_content(self, owner, repo, path, token=None, ref=None):
        if path not in self.files:
            raise FetchError("GitHub request failed with status 404", status_code=404, body='{"message": "Not Found"}')
        content = self.files[path]
        return FileContentResult(path=path, name=path.rsplit("/", 1)[-1], content=content, size_bytes=len(content))

    def list_branches(self, owner, repo, token=None):
        return []

    def get_current_user(self, token=None):
        return "octocat" if token else None


class _FakeDiscovery:
    def __init__(self, report=None, error=None):
        self.report = report
        self.error = error

    async def discover_with_report(self, owner, repo, token=None, ref=None):
        if self.error:
            raise self.error
        return self.report


@pytest.fixture
def deps():
    store = InMemoryStore()
    reviewer = _FakeReviewer()
    fetcher = _FakeFetcher({"src/a.py": "a = 1", "src/b.py": "b = 2"})
    discovery = _FakeDiscovery(report=DiscoveryReport(files=[DiscoveredFile.from_path("src/a.py", 5)], strategy="contents"))
    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_ai_reviewer] = lambda: reviewer
    main.app.dependency_overrides[main.get_github_fetcher] = lambda: fetcher
    main.app.dependency_overrides[main.get_discovery] = lambda: discovery
    yield {"store": store, "reviewer": reviewer, "fetcher": fetcher, "discovery": discovery}
    main.app.dependency_overrides.clear()
    main.analysis_jobs.clear()


@pytest.fixture
def client(deps):
    return TestClient(main.app)


def _upload(client, name="calc.py", content="def add(a, b):\n    return a + b", **extra):
    body = {"name": name, "content": content, **extra}
    response = client.put("/files", json=body)
    assert response.status_code == 200
    return response.json()["fileId"]


def test_file_upload_lookup_and_cascade_delete(client, deps):
    assert client.post("/files").json()["uploadId"]
    file_id = _upload(client, userId="u1")

    file = client.get("/files", params={"fileId": file_id}).json()["file"]
    assert file["metadata"] == {"language": "python", "extension": "py", "lines": 2, "characters": 31}

    analysis_id = client.post("/analyses", json={"fileId": file_id, "fileName": "calc.py", "status": "completed"}).json()["analysisId"]
    deps["store"].create_unit_test(file_id, analysis_id, "calc.py", "tests", "completed")

    assert client.delete("/files", params={"fileId": file_id}).json() == {"success": True}
    assert client.get("/files", params={"fileId": file_id}).status_code == 404
    assert client.get("/analyses", params={"fileId": file_id}).json() == {"analyses": []}
    assert client.get("/unit-tests", params={"fileId": file_id}).json() == {"unitTests": []}
    assert client.delete("/files", params={"fileId": file_id}).status_code == 404


def test_missing_fields_are_400(client):
    assert client.put("/files", json={"name": "x.py"}).status_code == 400
    assert client.post("/code-reviewer", json={}).status_code == 400
    assert client.post("/refactor", json={"code": "x"}).status_code == 400
    assert client.post("/github/analyze", json={"owner": "o", "repo": "r", "selectedFiles": "a.py"}).status_code == 400
    assert client.post("/chat", json={"context": "x"}).status_code == 400
    assert client.delete("/files").status_code == 400
    response = client.post("/code-reviewer", content="not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400


def test_file_search_and_listing(client):
    _upload(client, "alpha.py", userId="u1")
    _upload(client, "beta.ts", userId="u2")

    assert [f["name"] for f in client.get("/files", params={"query": "ALP"}).json()["files"]] == ["alpha.py"]
    assert [f["name"] for f in client.get("/files", params={"userId": "u2"}).json()["files"]] == ["beta.ts"]
    assert len(client.get("/files").json()["files"]) == 2


def test_invalid_analysis_status_is_400(client):
    file_id = _upload(client)
    response = client.post("/analyses", json={"fileId": file_id, "fileName": "calc.py", "status": "done"})
    assert response.status_code == 400


def test_session_lifecycle(client):
    session_id = client.post("/sessions", json={
        "name": "Review", "userId": "u1", "metadata": {"sourceType": "github", "githubRepo": "o/r"},
    }).json()["sessionId"]
    file_id = _upload(client, sessionId=session_id)
    link = client.post("/sessions/files", json={"sessionId": session_id, "fileId": file_id}).json()["sessionFileId"]
    again = client.post("/sessions/files", json={"sessionId": session_id, "fileId": file_id}).json()["sessionFileId"]
    assert link == again

    detail = client.get(f"/sessions/{session_id}").json()
    assert detail["session"]["metadata"]["github_repo"] == "o/r"
    assert detail["session"]["metadata"]["file_count"] == 1
    assert [f["id"] for f in detail["files"]] == [file_id]

    assert client.put("/sessions", json={"sessionId": session_id, "status": "completed"}).json() == {"success": True}
    assert client.put("/sessions", json={"sessionId": session_id, "status": "bogus"}).status_code == 400
    assert [s["status"] for s in client.get("/sessions", params={"userId": "u1"}).json()["sessions"]] == ["completed"]

    assert client.post("/sessions/files", json={"sessionId": "missing", "fileId": file_id}).status_code == 404
    assert client.delete("/sessions/files", params={"sessionId": session_id, "fileId": file_id}).json() == {"success": True}
    assert client.delete("/sessions", params={"sessionId": session_id}).json() == {"success": True}
    assert client.get(f"/sessions/{session_id}").status_code == 404
    # Files survive their session
    assert client.get("/files", params={"fileId": file_id}).status_code == 200


def test_code_review_and_generation_failure(client, deps):
    response = client.post("/code-reviewer", json={"code": "x = 1", "fileName": "x.py"})
    assert response.status_code == 200
    assert response.json()["analysis"].startswith("Review of x.py")

    deps["reviewer"].fail = True
    response = client.post("/code-reviewer", json={"code": "x = 1", "fileName": "x.py"})
    assert response.status_code == 502
    assert "model unavailable" in response.json()["detail"]


def test_unit_tests_are_persisted_when_ids_are_given(client, deps):
    file_id = _upload(client)
    analysis_id = deps["store"].create_analysis(file_id, "calc.py", "fine", "completed")

    body = client.post("/unit-tests", json={
        "code": "x", "analysis": "fine", "fileName": "calc.py", "fileId": file_id, "analysisId": analysis_id,
    }).json()

    assert body["unitTests"] == "def test_it(): pass"
    assert deps["store"].get_unit_test(body["unitTestId"])["analysis_id"] == analysis_id
    assert "unitTestId" not in client.post("/unit-tests", json={"code": "x"}).json()


def test_refactor_names_the_output_next_to_the_original(client, deps):
    body = client.post("/refactor", json={
        "code": "x = 1", "fileName": "util.py", "filePath": "lib/util.py",
        "analysis": "Intro\n## Refactor Suggestions\n1. Rename x",
    }).json()

    assert body == {
        "success": True,
        "refactoredFileName": "util_refactored.py",
        "refactoredPath": "lib/util_refactored.py",
        "refactoredContents": "refactored = True",
    }
    assert deps["reviewer"].calls[-1] == {"op": "refactor", "suggestions": "1. Rename x", "target_path": "lib/util_refactored.py"}


def test_github_discover(client, deps):
    files = client.post("/github/discover", json={"owner": "o", "repo": "r"}).json()
    assert [f["path"] for f in files] == ["src/a.py"]
    assert files[0]["extension"] == ".py"

    deps["discovery"].error = DiscoveryError("nothing worked", attempts=[
        StrategyAttempt(strategy="contents", outcome="error", detail="404"),
    ])
    response = client.post("/github/discover", json={"owner": "o", "repo": "r"})
    assert response.status_code == 502
    assert response.json()["detail"]["attempts"][0]["strategy"] == "contents"


def test_github_file_maps_upstream_status(client):
    ok = client.post("/github/file", json={"owner": "o", "repo": "r", "path": "src/a.py"})
    assert ok.json() == {"path": "src/a.py", "name": "a.py", "content": "a = 1", "size": 5}

    missing = client.post("/github/file", json={"owner": "o", "repo": "r", "path": "nope.py"})
    assert missing.status_code == 404
    assert "Not Found" in missing.json()["detail"]["details"]


def test_github_me(client):
    assert client.get("/github/me", params={"token": "t"}).json() == {"login": "octocat"}
    assert client.get("/github/me").status_code == 401


def test_github_analyze_report(client):
    report = client.post("/github/analyze", json={
        "owner": "o", "repo": "r", "selectedFiles": ["src/a.py", "src/missing.py"],
    }).json()

    assert report["summary"] == "Analysis completed for 2 files in o/r. 1 files analyzed successfully."
    by_path = {f["path"]: f for f in report["files"]}
    assert by_path["src/a.py"]["recommendations"] == "1. Simplify a.py"
    assert by_path["src/missing.py"]["status"] == "error"


def _events(text: str) -> List[Dict[str, Any]]:
    return [json.loads(line[len("data: "):]) for line in text.splitlines() if line.startswith("data: ")]


def test_analysis_job_streams_progress_then_result(client):
    job_id = client.post("/github/analyze/jobs", json={
        "owner": "o", "repo": "r", "selectedFiles": ["src/a.py", "src/b.py"],
    }).json()["jobId"]

    response = client.get(f"/github/analyze/jobs/{job_id}/stream")

    assert response.headers["content-type"].startswith("text/event-stream")
    events = _events(response.text)
    assert events[-1] == {"type": "done"}
    assert any(e["type"] == "log" for e in events)
    result = next(e for e in events if e["type"] == "result")
    assert len(result["payload"]["files"]) == 2

    # Jobs are consumed by the first stream
    assert _events(client.get(f"/github/analyze/jobs/{job_id}/stream").text) == [{"type": "error", "msg": "Job not found"}]


def test_chat(client, deps):
    assert client.post("/chat", json={"message": "why?", "context": "x = 1"}).json() == {"response": "echo: why?"}
    assert deps["reviewer"].calls[-1] == {"op": "chat", "context": "x = 1"}


def test_closing_the_stream_cancels_the_running_analysis(deps):
    reviewer = deps["reviewer"]
    started: List[str] = []
    cancelled: List[str] = []

    async def hang(code, file_name=None):
        started.append(file_name)
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(file_name)
            raise

    reviewer.review_code = hang
    main.analysis_jobs["job-1"] = main._analysis_request({"owner": "o", "repo": "r", "selectedFiles": ["src/a.py"]})

    async def run():
        response = await main.stream_analysis_job("job-1", deps["fetcher"], reviewer, deps["store"])
        body = response.body_iterator
        first = await body.__anext__()
        assert json.loads(first[len("data: "):])["type"] == "log"
        while not started:
            await asyncio.sleep(0)

        # Client disconnect
        await body.aclose()
        for _ in range(20):
            if cancelled:
                break
            await asyncio.sleep(0)
        assert cancelled == ["a.py"]

    asyncio.run(run())

    assert started == ["a.py"]
    assert "job-1" not in main.analysis_jobs
