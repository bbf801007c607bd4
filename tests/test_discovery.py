"""
Offline tests for tiered repository discovery (`services.RepositoryDiscovery`).

A fake `requests.Session` serves canned GitHub REST payloads keyed by URL, and a
fake async OpenAI client scripts the agent tier, so no network is used.

Run with:
    pytest -q tests/test_discovery.py
"""
import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

import services
from services import AIReviewer, DiscoveryError, GitHubFetcher, RepositoryDiscovery

API = "https://api.github.com"


# ───────────────────────────── helper fakes ──────────────────────────────────
class _Obj:
    """Simple attribute container to mimic SDK objects (choices/message/tool_calls)."""

    def __init__(self, **kw):
        for k, v in kw.items():
            setattr(self, k, v)


class _Resp:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str = ""):
        self.status_code = status_code
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class _FakeSession:
    """Routes GET requests by full URL; unknown URLs answer 404."""

    def __init__(self, routes: Dict[str, Any]):
        self.routes = routes
        self.calls: List[str] = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append(url)
        route = self.routes.get(url)
        if callable(route):
            return route(params or {})
        return route or _Resp(404, {"message": "Not Found"})


class _FakeCompletions:
    def __init__(self, messages: List[Any]):
        self._messages = list(messages)
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        msg = self._messages.pop(0) if self._messages else _Obj(content="[]", tool_calls=[])
        return _Obj(choices=[_Obj(message=msg)])


class _FakeClient:
    def __init__(self, messages: List[Any]):
        self.chat = _Obj(completions=_FakeCompletions(messages))


def _tool_call(name: str, arguments: Dict[str, Any], call_id: str = "call_1"):
    return _Obj(id=call_id, function=_Obj(name=name, arguments=json.dumps(arguments)))


def _file(path: str, size: int = 10) -> Dict[str, Any]:
    return {"type": "file", "path": path, "name": path.rsplit("/", 1)[-1], "size": size}


def _dir(path: str) -> Dict[str, Any]:
    return {"type": "dir", "path": path, "name": path.rsplit("/", 1)[-1]}


def _repo_routes(default_branch: str = "main") -> Dict[str, Any]:
    return {f"{API}/repos/o/r": _Resp(200, {"full_name": "o/r", "default_branch": default_branch})}


SCENARIO_A_CONTENTS = {
    f"{API}/repos/o/r/contents": _Resp(200, [_file("README.md"), _dir("app"), _dir("node_modules")]),
    f"{API}/repos/o/r/contents/app": _Resp(200, [_file("app/main.py"), _file("app/utils.py")]),
    f"{API}/repos/o/r/contents/node_modules": _Resp(200, [_file("node_modules/x.js")]),
}


def _discovery(routes: Dict[str, Any], reviewer: Optional[AIReviewer] = None):
    session = _FakeSession(routes)
    fetcher = GitHubFetcher(session=session, max_retries=1)
    return RepositoryDiscovery(fetcher, reviewer), session


@pytest.fixture(autouse=True)
def _no_sleep(monkeypatch):
    monkeypatch.setattr(services.time, "sleep", lambda s: None)


# ────────────────────────────────── tests ────────────────────────────────────
def test_contents_walk_filters_by_extension_not_path():
    discovery, _ = _discovery({**_repo_routes(), **SCENARIO_A_CONTENTS})
    files = asyncio.run(discovery.discover("o", "r"))

    assert sorted(f.path for f in files) == [
        "README.md", "app/main.py", "app/utils.py", "node_modules/x.js",
    ]
    main = next(f for f in files if f.path == "app/main.py")
    assert main.name == "main.py"
    assert main.extension == ".py"
    assert main.size_bytes == 10


def test_contents_success_never_touches_trees_or_agent():
    client = _FakeClient([])
    reviewer = AIReviewer(client=client)
    discovery, session = _discovery({**_repo_routes(), **SCENARIO_A_CONTENTS}, reviewer)

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.strategy == "contents"
    assert not any("/git/" in url for url in session.calls)
    assert client.chat.completions.calls == []


def test_rediscovery_is_order_stable():
    discovery, _ = _discovery({**_repo_routes(), **SCENARIO_A_CONTENTS})
    first = [f.path for f in asyncio.run(discovery.discover("o", "r"))]
    second = [f.path for f in asyncio.run(discovery.discover("o", "r"))]
    assert first == second


def test_explicit_ref_is_passed_and_skips_repo_lookup():
    seen_refs = []

    def root(params):
        seen_refs.append(params.get("ref"))
        return _Resp(200, [_file("a.go")])

    discovery, session = _discovery({f"{API}/repos/o/r/contents": root})
    files = asyncio.run(discovery.discover("o", "r", ref="dev"))

    assert [f.path for f in files] == ["a.go"]
    assert seen_refs == ["dev"]
    assert f"{API}/repos/o/r" not in session.calls


def test_failed_subdirectory_is_skipped():
    routes = {**_repo_routes(), **SCENARIO_A_CONTENTS}
    routes[f"{API}/repos/o/r/contents/app"] = _Resp(500, text="boom")
    discovery, _ = _discovery(routes)

    files = asyncio.run(discovery.discover("o", "r"))

    assert sorted(f.path for f in files) == ["README.md", "node_modules/x.js"]


def test_trees_used_when_contents_root_fails():
    routes = {
        **_repo_routes(),
        f"{API}/repos/o/r/contents": _Resp(403, {"message": "Forbidden"}),
        f"{API}/repos/o/r/git/refs/heads/main": _Resp(200, {"object": {"sha": "abc123"}}),
        f"{API}/repos/o/r/git/trees/abc123": _Resp(200, {"tree": [
            {"path": "src", "type": "tree"},
            {"path": "src/a.py", "type": "blob", "size": 42},
            {"path": "src/b.exe", "type": "blob", "size": 9000},
        ]}),
    }
    discovery, _ = _discovery(routes)

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.strategy == "trees"
    assert [f.path for f in report.files] == ["src/a.py"]
    assert report.files[0].size_bytes == 42
    assert [a.outcome for a in report.attempts] == ["error", "files"]


def test_trees_falls_back_from_sha_to_branch_name():
    routes = {
        **_repo_routes(),
        f"{API}/repos/o/r/contents": _Resp(200, []),
        f"{API}/repos/o/r/git/refs/heads/main": _Resp(200, {"object": {"sha": "deadbeef"}}),
        f"{API}/repos/o/r/git/trees/deadbeef": _Resp(404, {"message": "Not Found"}),
        f"{API}/repos/o/r/git/trees/main": _Resp(200, {"tree": [{"path": "lib/x.rb", "type": "blob"}]}),
    }
    discovery, session = _discovery(routes)

    files = asyncio.run(discovery.discover("o", "r"))

    assert [f.path for f in files] == ["lib/x.rb"]
    tree_calls = [u for u in session.calls if "/git/trees/" in u]
    assert tree_calls == [f"{API}/repos/o/r/git/trees/deadbeef", f"{API}/repos/o/r/git/trees/main"]


def test_empty_repository_returns_empty_list_not_error():
    routes = {
        **_repo_routes(),
        f"{API}/repos/o/r/contents": _Resp(200, []),
        f"{API}/repos/o/r/git/refs/heads/main": _Resp(200, {"object": {"sha": "s1"}}),
        f"{API}/repos/o/r/git/trees/s1": _Resp(200, {"tree": []}),
    }
    discovery, _ = _discovery(routes)

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.files == []
    assert report.strategy is None
    assert [a.outcome for a in report.attempts] == ["empty", "empty", "skipped"]


def test_unresolvable_repository_raises_after_every_strategy():
    discovery, _ = _discovery({})

    with pytest.raises(DiscoveryError) as excinfo:
        asyncio.run(discovery.discover("o", "missing"))

    outcomes = [(a.strategy, a.outcome) for a in excinfo.value.attempts]
    assert outcomes == [("contents", "error"), ("trees", "error"), ("agent", "skipped")]


EMPTY_DETERMINISTIC = {
    **_repo_routes(),
    f"{API}/repos/o/r/contents": _Resp(200, []),
    f"{API}/repos/o/r/git/refs/heads/main": _Resp(200, {"object": {"sha": "s1"}}),
    f"{API}/repos/o/r/git/trees/s1": _Resp(200, {"tree": []}),
}


def test_agent_tier_parses_json_answer_after_tool_use():
    client = _FakeClient([
        _Obj(content="", tool_calls=[_tool_call("list_directory", {"path": ""})]),
        _Obj(content='```json\n[{"path": "src/a.py", "name": "a.py"}, {"path": "img/logo.png"}]\n```', tool_calls=[]),
    ])
    reviewer = AIReviewer(client=client, model="review-model", meta_model="meta-model")
    discovery, _ = _discovery(dict(EMPTY_DETERMINISTIC), reviewer)

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.strategy == "agent"
    assert [f.path for f in report.files] == ["src/a.py"]
    calls = client.chat.completions.calls
    assert len(calls) == 2
    assert calls[0]["model"] == "meta-model"
    assert {t["function"]["name"] for t in calls[0]["tools"]} >= {"list_directory", "search_code"}
    # The tool result is fed back with the id of the call that produced it
    tool_messages = [m for m in calls[1]["messages"] if m["role"] == "tool"]
    assert tool_messages[0]["tool_call_id"] == "call_1"


def test_agent_files_from_tool_output_take_precedence():
    routes = dict(EMPTY_DETERMINISTIC)
    routes[f"{API}/search/code"] = _Resp(200, {"items": [{"path": "pkg/mod.py"}, {"path": "pkg/data.bin"}]})
    client = _FakeClient([
        _Obj(content=None, tool_calls=[_tool_call("search_code", {"query": "extension:py"})]),
        _Obj(content='[{"path": "ignored.py"}]', tool_calls=[]),
    ])
    discovery, _ = _discovery(routes, AIReviewer(client=client))

    files = asyncio.run(discovery.discover("o", "r"))

    assert [f.path for f in files] == ["pkg/mod.py"]


def test_agent_error_runs_degraded_approaches_then_reports_error():
    client = _FakeClient([
        _Obj(content='{"error": "Unable to retrieve repository"}', tool_calls=[]),
        _Obj(content="[]", tool_calls=[]),
        _Obj(content="[]", tool_calls=[]),
        _Obj(content="[]", tool_calls=[]),
    ])
    reviewer = AIReviewer(client=client, meta_model="meta", fallback_model="fallback")
    discovery, _ = _discovery(dict(EMPTY_DETERMINISTIC), reviewer)

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.files == []
    assert report.attempts[-1].strategy == "agent"
    assert report.attempts[-1].outcome == "error"
    calls = client.chat.completions.calls
    assert len(calls) == 4
    assert [c["model"] for c in calls[1:]] == ["fallback"] * 3


def test_unresolvable_repository_raises_with_agent_enabled():
    client = _FakeClient([])
    discovery, _ = _discovery({}, AIReviewer(client=client))

    with pytest.raises(DiscoveryError) as excinfo:
        asyncio.run(discovery.discover_with_report("o", "missing"))

    outcomes = [(a.strategy, a.outcome) for a in excinfo.value.attempts]
    assert outcomes == [("contents", "error"), ("trees", "error"), ("agent", "error")]
    # One agent run plus the three degraded approaches
    assert len(client.chat.completions.calls) == 4


def test_tool_error_output_marks_the_agent_tier_as_failed():
    client = _FakeClient([
        _Obj(content="", tool_calls=[_tool_call("list_directory", {"path": "src"})]),
        _Obj(content="[]", tool_calls=[]),
    ])
    discovery, _ = _discovery(dict(EMPTY_DETERMINISTIC), AIReviewer(client=client))

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.files == []
    assert [(a.strategy, a.outcome) for a in report.attempts] == [
        ("contents", "empty"), ("trees", "empty"), ("agent", "error"),
    ]
    tool_messages = [m for m in client.chat.completions.calls[1]["messages"] if m["role"] == "tool"]
    assert "Unable to list src" in tool_messages[0]["content"]


def test_errors_from_tool_results_reads_json_and_text_blocks():
    results = [
        services.ToolResult(name="get_repository", content=[{"type": "json", "json": {"error": "404 Not Found"}}]),
        services.ToolResult(name="get_file_tree", content=[{"type": "text", "text": '{"error": "no tree"}'}]),
        services.ToolResult(name="list_directory", content=[{"type": "json", "json": [{"path": "a.py"}]}]),
    ]
    assert services.errors_from_tool_results(results) == [
        "get_repository: 404 Not Found",
        "get_file_tree: no tree",
    ]


def test_degraded_approach_can_recover_files():
    client = _FakeClient([
        _Obj(content="I could not find anything.", tool_calls=[]),
        _Obj(content='Here you go: ["web/index.ts", "web/readme.bin"]', tool_calls=[]),
    ])
    discovery, _ = _discovery(dict(EMPTY_DETERMINISTIC), AIReviewer(client=client))

    report = asyncio.run(discovery.discover_with_report("o", "r"))

    assert report.strategy == "agent"
    assert [f.path for f in report.files] == ["web/index.ts"]


def test_files_from_tool_results_accepts_newline_separated_paths():
    result = services.ToolResult(
        name="get_file_tree",
        content=[{"type": "text", "text": "a/b.py\nassets/logo.svg\nc/d.ts\n"}],
    )
    assert [f.path for f in services.files_from_tool_results([result])] == ["a/b.py", "c/d.ts"]
