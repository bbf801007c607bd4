# Copyright (C) 2025 Fabian Valle-simmons
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

import os
import json
import uuid
import asyncio
import logging
from functools import lru_cache
from typing import Optional, Dict, Any
from fastapi import FastAPI, Request, HTTPException, Depends
from fastapi.responses import StreamingResponse
from dotenv import load_dotenv

from services import (
    GitHubFetcher, AIReviewer, RepositoryDiscovery,
    DiscoveryError, FetchError, GenerationError,
)
from extraction import extract_refactor_suggestions
from store import BaseStore, IntelligentStore, file_metadata
from workflow import ReviewWorkflow, refactored_names

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="CodeMarshall")

# In-memory store for batch analysis jobs (job_id -> request data)
analysis_jobs: Dict[str, Dict[str, Any]] = {}

SESSION_METADATA_KEYS = {
    "fileCount": "file_count",
    "analysisCount": "analysis_count",
    "testCount": "test_count",
    "sourceType": "source_type",
    "githubRepo": "github_repo",
}


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        logger.warning(f"⚠️ {name} is not an integer, using {default}")
        return default


@lru_cache()
def get_github_fetcher() -> GitHubFetcher:
    # Requests without a token fall back to GITHUB_TOKEN, then to anonymous access
    return GitHubFetcher(os.getenv("GITHUB_TOKEN"))


@lru_cache()
def get_ai_reviewer() -> AIReviewer:
    review_model = os.getenv("REVIEW_MODEL", "gpt-4o-2024-08-06")
    meta_model = os.getenv("META_MODEL")
    fallback_model = os.getenv("FALLBACK_DISCOVERY_MODEL")

    # Check for Azure OpenAI Configuration
    azure_key = os.getenv("AZURE_OPENAI_KEY") or os.getenv("AZURE_OPENAI_API_KEY")
    azure_url = os.getenv("AZURE_OPENAI_URL")
    if azure_key and azure_url:
        deployment = os.getenv("AZURE_DEPLOYMENT_NAME", "gpt-4o")
        logger.info(f"🔹 Using Azure OpenAI Service (Deployment: {deployment})")
        return AIReviewer(
            api_key=azure_key,
            base_url=azure_url,
            is_azure=True,
            model=deployment,  # Azure needs deployment name
            meta_model=meta_model,
            fallback_model=fallback_model,
            api_version=os.getenv("AZURE_OPENAI_API_VERSION"),
        )

    api_key = os.getenv("OPENAI_API_KEY")
    base_url = os.getenv("OPENAI_BASE_URL")
    if not api_key and os.getenv("OPENROUTER_API_KEY"):
        api_key = os.getenv("OPENROUTER_API_KEY")
        base_url = base_url or "https://openrouter.ai/api/v1"
    if not api_key:
        raise HTTPException(status_code=500, detail="OPENAI_API_KEY, OPENROUTER_API_KEY or AZURE_OPENAI_KEY not configured")

    logger.info(f"🔹 Using OpenAI-compatible service ({base_url or 'api.openai.com'}, model {review_model})")
    return AIReviewer(
        api_key=api_key,
        base_url=base_url,
        model=review_model,
        meta_model=meta_model,
        fallback_model=fallback_model,
    )


@lru_cache()
def get_store() -> BaseStore:
    return IntelligentStore(os.getenv("MONGODB_URI"), os.getenv("MONGODB_DATABASE"))


def get_discovery(fetcher: GitHubFetcher = Depends(get_github_fetcher)) -> RepositoryDiscovery:
    reviewer = None
    if _env_flag("AGENT_DISCOVERY", True):
        try:
            reviewer = get_ai_reviewer()
        except HTTPException as e:
            logger.info(f"⚠️ Agent discovery disabled: {e.detail}")
    return RepositoryDiscovery(
        fetcher,
        reviewer,
        agent_enabled=reviewer is not None,
        max_entries=_env_int("DISCOVERY_MAX_ENTRIES", 20000),
    )


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return data


def _require(data: Dict[str, Any], *fields: str):
    missing = [f for f in fields if not data.get(f)]
    if missing:
        raise HTTPException(status_code=400, detail=f"{', '.join(missing)} {'is' if len(missing) == 1 else 'are'} required")


def _fetch_http_error(e: FetchError) -> HTTPException:
    return HTTPException(
        status_code=e.status_code or 502,
        detail={"error": str(e), "details": (e.body or "")[:1000]},
    )


def _generation_http_error(e: GenerationError) -> HTTPException:
    return HTTPException(status_code=502, detail=f"Model request failed: {e}")


def _session_metadata(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    return {SESSION_METADATA_KEYS.get(k, k): v for k, v in raw.items()}


def _limit(value: Optional[str], default: int) -> int:
    if value is None:
        return default
    try:
        return max(1, int(value))
    except ValueError:
        raise HTTPException(status_code=400, detail="limit must be an integer")


# --- Files ---

@app.post("/files")
async def reserve_upload():
    """Reserve an upload slot; the client then PUTs the file body with this id."""
    return {"success": True, "uploadId": uuid.uuid4().hex}


@app.put("/files")
async def save_file(request: Request, store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "name")
    content = data.get("content")
    if not isinstance(content, str):
        raise HTTPException(status_code=400, detail="content is required")

    name = data["name"]
    file_id = await asyncio.to_thread(
        store.create_file,
        name,
        data.get("type") or "text/plain",
        data.get("size") if isinstance(data.get("size"), int) else len(content),
        data.get("userId"),
        content,
        file_metadata(name, content),
    )
    if not file_id:
        raise HTTPException(status_code=500, detail="Failed to store file")
    logger.info(f"💾 Stored file {name} as {file_id} (upload {data.get('uploadId') or 'direct'})")

    if data.get("sessionId"):
        await asyncio.to_thread(store.add_file_to_session, data["sessionId"], file_id)
    return {"success": True, "fileId": file_id}


@app.get("/files")
async def get_files(fileId: Optional[str] = None, userId: Optional[str] = None, query: Optional[str] = None,
                    limit: Optional[str] = None, store: BaseStore = Depends(get_store)):
    if fileId:
        file = await asyncio.to_thread(store.get_file, fileId)
        if file is None:
            raise HTTPException(status_code=404, detail="File not found")
        return {"file": file}
    if query is not None:
        return {"files": await asyncio.to_thread(store.search_files, query, userId, _limit(limit, 20))}
    if userId:
        return {"files": await asyncio.to_thread(store.list_user_files, userId)}
    return {"files": await asyncio.to_thread(store.list_recent_files, _limit(limit, 50))}


@app.delete("/files")
async def delete_file(fileId: Optional[str] = None, store: BaseStore = Depends(get_store)):
    if not fileId:
        raise HTTPException(status_code=400, detail="fileId is required")
    if not await asyncio.to_thread(store.delete_file, fileId):
        raise HTTPException(status_code=404, detail="File not found")
    return {"success": True}


# --- Analyses ---

@app.post("/analyses")
async def create_analysis(request: Request, store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "fileId", "fileName")
    try:
        analysis_id = await asyncio.to_thread(
            store.create_analysis,
            data["fileId"], data["fileName"], data.get("analysis") or "",
            data.get("status") or "pending", data.get("userId"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not analysis_id:
        raise HTTPException(status_code=500, detail="Failed to store analysis")
    return {"success": True, "analysisId": analysis_id}


@app.get("/analyses")
async def get_analyses(analysisId: Optional[str] = None, fileId: Optional[str] = None,
                       userId: Optional[str] = None, limit: Optional[str] = None,
                       store: BaseStore = Depends(get_store)):
    if analysisId:
        analysis = await asyncio.to_thread(store.get_analysis, analysisId)
        if analysis is None:
            raise HTTPException(status_code=404, detail="Analysis not found")
        return {"analysis": analysis}
    if fileId:
        return {"analyses": await asyncio.to_thread(store.list_file_analyses, fileId)}
    if userId:
        return {"analyses": await asyncio.to_thread(store.list_user_analyses, userId)}
    return {"analyses": await asyncio.to_thread(store.list_recent_analyses, _limit(limit, 50))}


@app.put("/analyses")
async def update_analysis(request: Request, store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "analysisId")
    try:
        updated = await asyncio.to_thread(
            store.update_analysis, data["analysisId"], data.get("analysis"), data.get("status"),
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {"success": True}


@app.delete("/analyses")
async def delete_analysis(analysisId: Optional[str] = None, store: BaseStore = Depends(get_store)):
    if not analysisId:
        raise HTTPException(status_code=400, detail="analysisId is required")
    if not await asyncio.to_thread(store.delete_analysis, analysisId):
        raise HTTPException(status_code=404, detail="Analysis not found")
    return {"success": True}


# --- Review, tests, refactor ---

@app.post("/code-reviewer")
async def review_code(request: Request, reviewer: AIReviewer = Depends(get_ai_reviewer)):
    data = await _json_body(request)
    _require(data, "code")
    file_name = data.get("fileName")
    try:
        analysis = await reviewer.review_code(data["code"], file_name)
    except GenerationError as e:
        raise _generation_http_error(e)
    return {"success": True, "analysis": analysis, "fileName": file_name}


@app.post("/unit-tests")
async def generate_unit_tests(request: Request, reviewer: AIReviewer = Depends(get_ai_reviewer),
                              store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "code")
    file_name = data.get("fileName")
    try:
        unit_tests = await reviewer.generate_unit_tests(data["code"], data.get("analysis") or "", file_name)
    except GenerationError as e:
        raise _generation_http_error(e)

    response = {"success": True, "unitTests": unit_tests, "fileName": file_name}
    if data.get("fileId") and data.get("analysisId"):
        response["unitTestId"] = await asyncio.to_thread(
            store.create_unit_test,
            data["fileId"], data["analysisId"], file_name or "", unit_tests, "completed", data.get("userId"),
        )
    return response


@app.get("/unit-tests")
async def get_unit_tests(unitTestId: Optional[str] = None, analysisId: Optional[str] = None,
                         fileId: Optional[str] = None, userId: Optional[str] = None,
                         limit: Optional[str] = None, store: BaseStore = Depends(get_store)):
    if unitTestId:
        unit_test = await asyncio.to_thread(store.get_unit_test, unitTestId)
        if unit_test is None:
            raise HTTPException(status_code=404, detail="Unit test not found")
        return {"unitTest": unit_test}
    if analysisId:
        return {"unitTests": await asyncio.to_thread(store.list_analysis_unit_tests, analysisId)}
    if fileId:
        return {"unitTests": await asyncio.to_thread(store.list_file_unit_tests, fileId)}
    if userId:
        return {"unitTests": await asyncio.to_thread(store.list_user_unit_tests, userId)}
    return {"unitTests": await asyncio.to_thread(store.list_recent_unit_tests, _limit(limit, 50))}


@app.delete("/unit-tests")
async def delete_unit_test(unitTestId: Optional[str] = None, store: BaseStore = Depends(get_store)):
    if not unitTestId:
        raise HTTPException(status_code=400, detail="unitTestId is required")
    if not await asyncio.to_thread(store.delete_unit_test, unitTestId):
        raise HTTPException(status_code=404, detail="Unit test not found")
    return {"success": True}


@app.post("/refactor")
async def refactor(request: Request, reviewer: AIReviewer = Depends(get_ai_reviewer)):
    data = await _json_body(request)
    _require(data, "code", "fileName")
    names = refactored_names(data["fileName"], data.get("filePath"))
    suggestions = extract_refactor_suggestions(data.get("analysis") or "")
    try:
        contents = await reviewer.apply_refactor(
            data["code"], suggestions, data["fileName"], names["refactored_path"],
        )
    except GenerationError as e:
        raise _generation_http_error(e)
    return {
        "success": True,
        "refactoredFileName": names["refactored_file_name"],
        "refactoredPath": names["refactored_path"],
        "refactoredContents": contents,
    }


# --- Sessions ---

@app.post("/sessions")
async def create_session(request: Request, store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "name")
    session_id = await asyncio.to_thread(
        store.create_session,
        data["name"], data.get("description"), data.get("userId"), _session_metadata(data.get("metadata")),
    )
    if not session_id:
        raise HTTPException(status_code=500, detail="Failed to create session")
    return {"success": True, "sessionId": session_id}


@app.get("/sessions")
async def get_sessions(sessionId: Optional[str] = None, userId: Optional[str] = None,
                       status: Optional[str] = None, limit: Optional[str] = None,
                       store: BaseStore = Depends(get_store)):
    if sessionId:
        session = await asyncio.to_thread(store.get_session, sessionId)
        if session is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return {"session": session}
    if userId:
        return {"sessions": await asyncio.to_thread(store.list_user_sessions, userId, status)}
    return {"sessions": await asyncio.to_thread(store.list_recent_sessions, _limit(limit, 50))}


@app.put("/sessions")
async def update_session(request: Request, store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "sessionId")
    metadata = _session_metadata(data["metadata"]) if isinstance(data.get("metadata"), dict) else None
    try:
        updated = await asyncio.to_thread(
            store.update_session,
            data["sessionId"], data.get("name"), data.get("description"), data.get("status"), metadata,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True}


@app.delete("/sessions")
async def delete_session(sessionId: Optional[str] = None, store: BaseStore = Depends(get_store)):
    if not sessionId:
        raise HTTPException(status_code=400, detail="sessionId is required")
    if not await asyncio.to_thread(store.delete_session, sessionId):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"success": True}


@app.post("/sessions/files")
async def add_session_file(request: Request, store: BaseStore = Depends(get_store)):
    data = await _json_body(request)
    _require(data, "sessionId", "fileId")
    if await asyncio.to_thread(store.get_session, data["sessionId"]) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    link_id = await asyncio.to_thread(store.add_file_to_session, data["sessionId"], data["fileId"])
    if not link_id:
        raise HTTPException(status_code=500, detail="Failed to add file to session")
    return {"success": True, "sessionFileId": link_id}


@app.delete("/sessions/files")
async def remove_session_file(sessionId: Optional[str] = None, fileId: Optional[str] = None,
                              store: BaseStore = Depends(get_store)):
    if not sessionId or not fileId:
        raise HTTPException(status_code=400, detail="sessionId and fileId are required")
    if not await asyncio.to_thread(store.remove_file_from_session, sessionId, fileId):
        raise HTTPException(status_code=404, detail="File is not part of this session")
    return {"success": True}


@app.get("/sessions/{session_id}")
async def get_session_with_files(session_id: str, store: BaseStore = Depends(get_store)):
    result = await asyncio.to_thread(store.get_session_with_files, session_id)
    if result is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return result


# --- GitHub ---

@app.post("/github/discover")
async def discover_files(request: Request, discovery: RepositoryDiscovery = Depends(get_discovery)):
    data = await _json_body(request)
    _require(data, "owner", "repo")
    try:
        report = await discovery.discover_with_report(data["owner"], data["repo"], data.get("token"), data.get("ref"))
    except DiscoveryError as e:
        raise HTTPException(
            status_code=502,
            detail={"error": str(e), "attempts": [a.model_dump() for a in e.attempts]},
        )
    return [f.model_dump() for f in report.files]


@app.post("/github/file")
async def get_github_file(request: Request, fetcher: GitHubFetcher = Depends(get_github_fetcher)):
    data = await _json_body(request)
    _require(data, "owner", "repo", "path")
    try:
        result = await asyncio.to_thread(
            fetcher.fetch_content, data["owner"], data["repo"], data["path"], data.get("token"), data.get("ref"),
        )
    except FetchError as e:
        raise _fetch_http_error(e)
    return {"path": result.path, "name": result.name, "content": result.content, "size": result.size_bytes}


@app.post("/github/branches")
async def get_branches(request: Request, fetcher: GitHubFetcher = Depends(get_github_fetcher)):
    data = await _json_body(request)
    _require(data, "owner", "repo")
    branches = await asyncio.to_thread(fetcher.list_branches, data["owner"], data["repo"], data.get("token"))
    return [b.model_dump() for b in branches]


@app.get("/github/repos")
async def get_repositories(token: Optional[str] = None, fetcher: GitHubFetcher = Depends(get_github_fetcher)):
    repos = await asyncio.to_thread(fetcher.list_repositories, token)
    return [
        {
            "id": r.get("id"),
            "name": r.get("name"),
            "full_name": r.get("full_name"),
            "owner": (r.get("owner") or {}).get("login"),
            "private": r.get("private", False),
            "default_branch": r.get("default_branch"),
            "updated_at": r.get("updated_at"),
        }
        for r in repos
    ]


@app.get("/github/me")
async def get_me(token: Optional[str] = None, fetcher: GitHubFetcher = Depends(get_github_fetcher)):
    login = await asyncio.to_thread(fetcher.get_current_user, token)
    if not login:
        raise HTTPException(status_code=401, detail="Could not resolve the current GitHub user")
    return {"login": login}


def _analysis_request(data: Dict[str, Any]) -> Dict[str, Any]:
    _require(data, "owner", "repo", "selectedFiles")
    if not isinstance(data["selectedFiles"], list):
        raise HTTPException(status_code=400, detail="selectedFiles must be a list of paths")
    return {
        "owner": data["owner"],
        "repo": data["repo"],
        "selected_files": [str(p) for p in data["selectedFiles"]],
        "token": data.get("token"),
        "ref": data.get("ref"),
        "user_id": data.get("userId"),
        "session_id": data.get("sessionId"),
    }


async def _run_analysis(job: Dict[str, Any], fetcher: GitHubFetcher, reviewer: AIReviewer, store: BaseStore,
                        on_progress=None) -> Dict[str, Any]:
    workflow = ReviewWorkflow(
        fetcher, reviewer, store,
        concurrency=_env_int("ANALYZE_CONCURRENCY", 3),
        user_id=job["user_id"],
        session_id=job["session_id"],
        on_progress=on_progress,
    )
    await workflow.load_selection(job["owner"], job["repo"], job["selected_files"], job["token"], job["ref"])
    await workflow.analyze()
    return workflow.analysis_report(job["owner"], job["repo"])


@app.post("/github/analyze")
async def analyze_files(request: Request, fetcher: GitHubFetcher = Depends(get_github_fetcher),
                        reviewer: AIReviewer = Depends(get_ai_reviewer), store: BaseStore = Depends(get_store)):
    job = _analysis_request(await _json_body(request))
    logger.info(f"--- 🔬 Analyzing {len(job['selected_files'])} files for {job['owner']}/{job['repo']} ---")
    return await _run_analysis(job, fetcher, reviewer, store)


@app.post("/github/analyze/jobs")
async def create_analysis_job(request: Request):
    job = _analysis_request(await _json_body(request))
    job_id = str(uuid.uuid4())
    analysis_jobs[job_id] = job
    return {"jobId": job_id}


@app.get("/github/analyze/jobs/{job_id}/stream")
async def stream_analysis_job(
    job_id: str,
    fetcher: GitHubFetcher = Depends(get_github_fetcher),
    reviewer: AIReviewer = Depends(get_ai_reviewer),
    store: BaseStore = Depends(get_store),
):
    job = analysis_jobs.pop(job_id, None)
    if not job:
        # Return a stream that immediately errors
        async def error_generator():
            yield f"data: {json.dumps({'type': 'error', 'msg': 'Job not found'})}\n\n"
        return StreamingResponse(error_generator(), media_type="text/event-stream")

    async def event_generator():
        queue: asyncio.Queue = asyncio.Queue()

        def on_progress(msg: str):
            queue.put_nowait({"type": "log", "msg": msg})

        async def worker():
            try:
                report = await _run_analysis(job, fetcher, reviewer, store, on_progress)
                queue.put_nowait({"type": "result", "payload": report})
                queue.put_nowait({"type": "done"})
            except asyncio.CancelledError:
                logger.info(f"🛑 Analysis job {job_id} cancelled")
                raise
            except Exception as e:
                logger.error(f"❌ Analysis job {job_id} failed: {e}", exc_info=True)
                queue.put_nowait({"type": "error", "msg": str(e)})

        task = asyncio.create_task(worker())
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15.0)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
                if event["type"] in ("done", "error"):
                    break
        finally:
            # Client went away: stop the remaining files
            if not task.done():
                task.cancel()

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# --- Chat ---

@app.post("/chat")
async def chat(request: Request, reviewer: AIReviewer = Depends(get_ai_reviewer)):
    """Conversation about code that was reviewed in this app"""
    data = await _json_body(request)
    user_message = data.get("message", "")
    if not user_message:
        raise HTTPException(status_code=400, detail="Message is required")

    system_prompt = (
        "You are a helpful AI assistant for code review. You can discuss the reviewed code, its analysis, "
        "generated unit tests and refactor suggestions. Answer questions clearly and concisely and reference "
        "specific functions or lines when relevant."
    )
    try:
        response = await reviewer.chat(system_prompt, data.get("context") or "", user_message)
    except GenerationError as e:
        raise _generation_http_error(e)
    return {"response": response}
