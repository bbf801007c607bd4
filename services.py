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

import json
import re
import time
import base64
import asyncio
import logging
import posixpath
import requests
from urllib.parse import quote
from typing import Optional, List, Dict, Any, Callable, Union, Tuple
from pydantic import BaseModel, Field, ValidationError
from openai import AsyncOpenAI, AsyncAzureOpenAI

from languages import is_code_file, file_extension, infer_test_language, TEST_FRAMEWORKS
from extraction import extract_test_code, extract_refactored_contents

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
DEFAULT_MAX_ENTRIES = 20000
AGENT_MAX_STEPS = 20
FALLBACK_AGENT_MAX_STEPS = 8


# --- ERRORS ---

class DiscoveryError(Exception):
    """A discovery strategy failed outright (as opposed to finding nothing)."""

    def __init__(self, message: str, attempts: Optional[List["StrategyAttempt"]] = None):
        super().__init__(message)
        self.attempts = attempts or []


class FetchError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GenerationError(Exception):
    pass


# --- DOMAIN MODELS ---

class FileSummary(BaseModel):
    line_count: int = Field(0, description="Number of lines, 0 when unknown.")
    functions: List[str] = Field(default=[], description="Function names found in the file, if the source reported any.")
    imports: List[str] = Field(default=[], description="Imported modules, if the source reported any.")


class DiscoveredFile(BaseModel):
    path: str = Field(..., description="Repository-relative, slash-separated path.")
    name: str = Field(..., description="Basename of the path.")
    extension: str = Field("", description="Dotted extension of the basename, e.g. '.py'.")
    size_bytes: int = Field(0, description="Size reported by the host, 0 when unknown.")
    summary: Optional[FileSummary] = None

    @classmethod
    def from_path(cls, path: str, size: Optional[int] = 0, summary: Optional[FileSummary] = None) -> "DiscoveredFile":
        name = posixpath.basename(path)
        return cls(
            path=path,
            name=name,
            extension=file_extension(name),
            size_bytes=size if isinstance(size, int) else 0,
            summary=summary or FileSummary(),
        )


class FileContentResult(BaseModel):
    path: str
    name: str
    content: str
    size_bytes: int


class Branch(BaseModel):
    name: str
    commit_sha: Optional[str] = None
    protected: bool = False


class StrategyAttempt(BaseModel):
    strategy: str = Field(..., description="contents, trees or agent")
    outcome: str = Field(..., description="files, empty, error or skipped")
    detail: str = ""
    file_count: int = 0


class DiscoveryReport(BaseModel):
    files: List[DiscoveredFile] = []
    strategy: Optional[str] = Field(None, description="The strategy whose result was used, None when nothing was found.")
    attempts: List[StrategyAttempt] = []


# --- UPSTREAM PAYLOADS ---
# GitHub responses are narrowed into these right after the request so that
# discovery logic never handles raw JSON.

class RepoInfo(BaseModel):
    full_name: Optional[str] = None
    default_branch: Optional[str] = None
    private: bool = False


class ContentsEntry(BaseModel):
    type: str
    path: str
    name: str
    size: Optional[int] = 0


class DirectoryListing(BaseModel):
    entries: List[ContentsEntry] = []


class FileContent(BaseModel):
    type: str = "file"
    name: str = ""
    path: str = ""
    size: Optional[int] = None
    encoding: Optional[str] = None
    content: Optional[str] = None
    download_url: Optional[str] = None


class ContentsUnavailable(BaseModel):
    status_code: Optional[int] = None
    message: str = ""


ContentsResponse = Union[DirectoryListing, FileContent, ContentsUnavailable]


class TreeEntry(BaseModel):
    path: str
    type: str
    size: Optional[int] = None


def encode_path(path: str) -> str:
    """URL encode a file path, encoding each segment separately"""
    if not path:
        return ""
    segments = path.replace('\\', '/').strip('/').split('/')
    return '/'.join(quote(segment, safe='') for segment in segments)


def parse_contents_payload(payload: Any) -> ContentsResponse:
    if isinstance(payload, list):
        entries = []
        for raw in payload:
            try:
                entries.append(ContentsEntry.model_validate(raw))
            except ValidationError:
                # Entries without a path or name are useless for discovery
                continue
        return DirectoryListing(entries=entries)
    if isinstance(payload, dict) and payload.get("type") == "file":
        try:
            return FileContent.model_validate(payload)
        except ValidationError as e:
            return ContentsUnavailable(message=f"Malformed file payload: {e}")
    return ContentsUnavailable(message="Unexpected contents payload")


class GitHubFetcher:
    def __init__(self, token: Optional[str] = None, session: Optional[requests.Session] = None,
                 base_url: str = GITHUB_API_URL, max_retries: int = 3, timeout: int = 30):
        self.token = token
        self.session = session or requests.Session()
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout = timeout

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "codemarshall",
        }
        token = token or self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None,
             token: Optional[str] = None) -> Optional[requests.Response]:
        """
        GET with exponential backoff retry logic.
        Retries rate limits and gateway errors; any other status is returned as-is.
        Returns None only when the network itself kept failing.
        """
        retryable_status_codes = [504, 502, 503, 429]  # Gateway timeout, bad gateway, service unavailable, rate limit

        for attempt in range(self.max_retries):
            try:
                response = self.session.get(url, params=params, headers=self._headers(token), timeout=self.timeout)

                if response.status_code in retryable_status_codes and attempt < self.max_retries - 1:
                    wait_time = (2 ** attempt) + (attempt * 0.5)  # Exponential backoff: 1s, 2.5s, 5s
                    status_name = {
                        504: "Gateway Timeout",
                        502: "Bad Gateway",
                        503: "Service Unavailable",
                        429: "Rate Limit"
                    }.get(response.status_code, f"HTTP {response.status_code}")
                    logger.warning(f"⚠️ {status_name} for {url} (attempt {attempt + 1}/{self.max_retries}), retrying in {wait_time:.1f}s...")
                    time.sleep(wait_time)
                    continue

                return response

            except requests.exceptions.RequestException as e:
                if attempt < self.max_retries - 1:
                    wait_time = (2 ** attempt) + (attempt * 0.5)
                    logger.warning(f"⚠️ Network error (attempt {attempt + 1}/{self.max_retries}): {e}, retrying in {wait_time:.1f}s...")
                    time.sleep(wait_time)
                    continue
                logger.error(f"❌ Network error after {self.max_retries} attempts: {e}")
                return None

        return None

    @staticmethod
    def _json(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    # --- Repository metadata ---

    def get_repository(self, owner: str, repo: str, token: Optional[str] = None) -> RepoInfo:
        response = self._get(f"{self.base_url}/repos/{owner}/{repo}", token=token)
        if response is None:
            raise FetchError(f"Network error looking up {owner}/{repo}", status_code=None)
        if response.status_code != 200:
            raise FetchError(
                f"Repository lookup failed for {owner}/{repo}: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        try:
            return RepoInfo.model_validate(self._json(response) or {})
        except ValidationError as e:
            raise FetchError(f"Malformed repository payload for {owner}/{repo}: {e}", status_code=response.status_code)

    def resolve_ref_sha(self, owner: str, repo: str, branch: str, token: Optional[str] = None) -> Optional[str]:
        response = self._get(f"{self.base_url}/repos/{owner}/{repo}/git/refs/heads/{branch}", token=token)
        if response is None or response.status_code != 200:
            status = response.status_code if response is not None else "network"
            logger.warning(f"⚠️ Ref lookup failed for {owner}/{repo}@{branch}: {status}")
            return None
        data = self._json(response)
        if isinstance(data, dict):
            return (data.get("object") or {}).get("sha")
        return None

    def get_contents(self, owner: str, repo: str, path: str = "", token: Optional[str] = None,
                     ref: Optional[str] = None) -> ContentsResponse:
        url = f"{self.base_url}/repos/{owner}/{repo}/contents"
        if path:
            url = f"{url}/{encode_path(path)}"
        response = self._get(url, params={"ref": ref} if ref else None, token=token)
        if response is None:
            return ContentsUnavailable(message="network error")
        if response.status_code != 200:
            return ContentsUnavailable(status_code=response.status_code, message=response.text[:500])
        return parse_contents_payload(self._json(response))

    # --- Discovery strategies ---

    def list_files_via_contents(self, owner: str, repo: str, token: Optional[str] = None,
                                ref: Optional[str] = None, max_entries: int = DEFAULT_MAX_ENTRIES) -> List[DiscoveredFile]:
        """
        Walk the repository with the Contents API, one directory listing per request.

        Uses an explicit stack rather than recursion. Sub-directories that fail to
        list are skipped; only an unresolvable repository or root raises DiscoveryError.
        """
        logger.info(f"--- 🔍 Contents API discovery for {owner}/{repo} ---")
        resolved_ref = ref
        if not resolved_ref:
            try:
                resolved_ref = self.get_repository(owner, repo, token).default_branch
            except FetchError as e:
                raise DiscoveryError(f"Contents API could not resolve {owner}/{repo}: {e}") from e

        stack: List[str] = [""]
        visited = set()
        results: List[DiscoveredFile] = []

        while stack and len(results) < max_entries:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)

            listing = self.get_contents(owner, repo, current, token=token, ref=resolved_ref)

            if isinstance(listing, ContentsUnavailable):
                if not current:
                    raise DiscoveryError(
                        f"Contents API root listing failed for {owner}/{repo}: {listing.status_code} {listing.message}"
                    )
                logger.warning(f"⚠️ Contents API: skipping {current} ({listing.status_code}): {listing.message[:200]}")
                continue

            if isinstance(listing, FileContent):
                if is_code_file(listing.path):
                    results.append(DiscoveredFile.from_path(listing.path, listing.size))
                continue

            for entry in listing.entries:
                if entry.type == "dir":
                    stack.append(entry.path)
                elif entry.type == "file" and is_code_file(entry.path):
                    results.append(DiscoveredFile.from_path(entry.path, entry.size))
                    if len(results) >= max_entries:
                        logger.warning(f"⚠️ Contents API: hit the {max_entries} entry cap for {owner}/{repo}")
                        break

        logger.info(f"✅ Contents API discovered {len(results)} files for {owner}/{repo}{'@' + resolved_ref if resolved_ref else ''}")
        return results

    def list_files_via_trees(self, owner: str, repo: str, token: Optional[str] = None,
                             ref: Optional[str] = None) -> List[DiscoveredFile]:
        logger.info(f"--- 🔍 Git Trees API discovery for {owner}/{repo} ---")
        try:
            info = self.get_repository(owner, repo, token)
        except FetchError as e:
            raise DiscoveryError(f"Git Trees API could not resolve {owner}/{repo}: {e}") from e

        default_branch = info.default_branch or "main"
        requested_ref = ref or default_branch
        commit_sha = self.resolve_ref_sha(owner, repo, requested_ref, token)

        # Some hosts accept a branch name directly as the tree ref, so try all of them
        refs_to_try: List[str] = []
        for candidate in (commit_sha, requested_ref, default_branch):
            if candidate and candidate not in refs_to_try:
                refs_to_try.append(candidate)

        for tree_ref in refs_to_try:
            response = self._get(
                f"{self.base_url}/repos/{owner}/{repo}/git/trees/{tree_ref}",
                params={"recursive": "1"},
                token=token,
            )
            if response is None or response.status_code != 200:
                status = response.status_code if response is not None else "network"
                logger.warning(f"⚠️ Git Trees API: tree fetch failed for {tree_ref}: {status}")
                continue

            data = self._json(response) or {}
            raw_entries = data.get("tree") if isinstance(data, dict) else None
            if not isinstance(raw_entries, list) or not raw_entries:
                logger.warning(f"⚠️ Git Trees API: tree empty for ref {tree_ref}")
                continue
            if data.get("truncated"):
                logger.warning(f"⚠️ Git Trees API: listing for {owner}/{repo}@{tree_ref} was truncated by the host")

            files = []
            for raw in raw_entries:
                try:
                    entry = TreeEntry.model_validate(raw)
                except ValidationError:
                    continue
                if entry.type == "blob" and is_code_file(entry.path):
                    files.append(DiscoveredFile.from_path(entry.path, entry.size))

            logger.info(f"✅ Git Trees API found {len(files)} files for {owner}/{repo} on ref {tree_ref}")
            if files:
                return files

        return []

    # --- Single files ---

    def fetch_content(self, owner: str, repo: str, path: str, token: Optional[str] = None,
                      ref: Optional[str] = None) -> FileContentResult:
        logger.info(f"--- 📄 Fetching {owner}/{repo}:{path}{'@' + ref if ref else ''} ---")
        url = f"{self.base_url}/repos/{owner}/{repo}/contents/{encode_path(path)}"
        response = self._get(url, params={"ref": ref} if ref else None, token=token)
        if response is None:
            raise FetchError(f"Network error fetching {path}", status_code=502, body="network error")
        if response.status_code != 200:
            logger.error(f"❌ API Error fetching {path}: {response.status_code}\n{response.text[:500]}")
            raise FetchError(
                f"Failed to fetch {path}: {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        payload = self._json(response)
        if isinstance(payload, list):
            raise FetchError(f"{path} is a directory, not a file", status_code=400, body="")
        if not isinstance(payload, dict):
            raise FetchError(f"Unexpected payload fetching {path}", status_code=502, body=response.text)
        try:
            meta = FileContent.model_validate(payload)
        except ValidationError as e:
            raise FetchError(f"Malformed file payload for {path}: {e}", status_code=502, body=response.text)

        if meta.encoding == "base64" and meta.content:
            content = base64.b64decode(meta.content).decode("utf-8", errors="replace")
        elif meta.download_url:
            raw = self._get(meta.download_url, token=token)
            if raw is None or raw.status_code != 200:
                status = raw.status_code if raw is not None else 502
                raise FetchError(
                    f"Failed to download raw content for {path}: {status}",
                    status_code=status,
                    body=raw.text if raw is not None else "network error",
                )
            content = raw.text
        else:
            content = meta.content if isinstance(meta.content, str) else ""

        return FileContentResult(
            path=path,
            name=meta.name or posixpath.basename(path) or path,
            content=content,
            size_bytes=meta.size if isinstance(meta.size, int) else len(content),
        )

    # --- Account-level helpers ---

    def list_branches(self, owner: str, repo: str, token: Optional[str] = None) -> List[Branch]:
        response = self._get(
            f"{self.base_url}/repos/{owner}/{repo}/branches", params={"per_page": 100}, token=token
        )
        if response is None or response.status_code != 200:
            status = response.status_code if response is not None else "network"
            logger.warning(f"⚠️ Branches API: fetch failed for {owner}/{repo}: {status}")
            return []

        data = self._json(response)
        if not isinstance(data, list):
            return []
        branches = []
        for item in data:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            branches.append(Branch(
                name=item["name"],
                commit_sha=(item.get("commit") or {}).get("sha"),
                protected=bool(item.get("protected")),
            ))
        return branches

    def list_repositories(self, token: Optional[str] = None, max_pages: int = 20) -> List[Dict[str, Any]]:
        """All repositories visible to the token, de-duplicated by id."""
        by_id: Dict[Any, Dict[str, Any]] = {}
        page = 1
        while page <= max_pages:
            response = self._get(
                f"{self.base_url}/user/repos",
                params={
                    "per_page": 100,
                    "page": page,
                    "sort": "updated",
                    "affiliation": "owner,collaborator,organization_member",
                },
                token=token,
            )
            if response is None or response.status_code != 200:
                status = response.status_code if response is not None else "network"
                logger.warning(f"⚠️ Repository listing failed on page {page}: {status}")
                break
            batch = self._json(response)
            if not isinstance(batch, list):
                break
            for repo in batch:
                if isinstance(repo, dict):
                    by_id[repo.get("id", repo.get("full_name"))] = repo
            if len(batch) < 100:
                break
            page += 1
        return list(by_id.values())

    def get_current_user(self, token: Optional[str] = None) -> Optional[str]:
        """Get the current authenticated user's login"""
        response = self._get(f"{self.base_url}/user", token=token)
        if response is None or response.status_code != 200:
            status = response.status_code if response is not None else "network"
            logger.error(f"❌ API Error getting current user: {status}")
            return None
        data = self._json(response)
        return data.get("login") if isinstance(data, dict) else None

    def search_code(self, owner: str, repo: str, query: str, token: Optional[str] = None) -> List[str]:
        response = self._get(
            f"{self.base_url}/search/code",
            params={"q": f"{query} repo:{owner}/{repo}".strip(), "per_page": 100},
            token=token,
        )
        if response is None or response.status_code != 200:
            status = response.status_code if response is not None else None
            raise FetchError(f"Code search failed for {owner}/{repo}: {status or 'network'}", status_code=status)
        data = self._json(response) or {}
        return [item.get("path") for item in data.get("items", []) if isinstance(item, dict) and item.get("path")]


# --- AI ---

class ToolResult(BaseModel):
    name: str
    arguments: Dict[str, Any] = {}
    content: List[Dict[str, Any]] = Field(default=[], description="Content blocks: {'type': 'json', 'json': ...} or {'type': 'text', 'text': ...}")


class AgentTranscript(BaseModel):
    text: str = ""
    tool_results: List[ToolResult] = []
    steps: int = 0


def _content_block(output: Any) -> Dict[str, Any]:
    if isinstance(output, str):
        return {"type": "text", "text": output}
    return {"type": "json", "json": output}


def _block_text(block: Dict[str, Any]) -> str:
    if block.get("type") == "text":
        return block.get("text", "")
    return json.dumps(block.get("json"), default=str)


def build_review_prompts(code: str, file_name: Optional[str] = None) -> Tuple[str, str]:
    system_prompt = (
        "You are an expert code reviewer. Analyze the provided code and provide a comprehensive review "
        "organized into these numbered sections:\n\n"
        "1. **Code Quality & Structure**\n"
        "   - Code organization and readability\n"
        "   - Naming conventions\n"
        "   - Function/class design\n"
        "   - Code complexity\n\n"
        "2. **Potential Issues**\n"
        "   - Bugs or logical errors\n"
        "   - Security vulnerabilities\n"
        "   - Performance concerns\n"
        "   - Error handling\n\n"
        "3. **Best Practices**\n"
        "   - Language-specific best practices\n"
        "   - Design patterns usage\n"
        "   - Code maintainability\n\n"
        "4. **Suggestions for Improvement**\n"
        "   - Optimization opportunities\n"
        "   - Better approaches\n\n"
        "5. **Refactor Suggestions** (MANDATORY)\n"
        "   - End the review with a section headed exactly '## Refactor Suggestions'.\n"
        "   - List 2-5 prioritized, concrete, actionable refactor items, most important first.\n"
        "   - Include this section even when the code quality is high; pick the most valuable improvements.\n\n"
        "Provide a clear, actionable analysis that would help a developer improve the code."
    )
    user_prompt = (
        f"Please analyze the following code{f' from file: {file_name}' if file_name else ''}:\n\n"
        f"```\n{code}\n```\n\n"
        "Provide a comprehensive code review with specific, actionable feedback, "
        "finishing with the mandatory '## Refactor Suggestions' section."
    )
    return system_prompt, user_prompt


def build_unit_test_prompts(code: str, analysis: str, file_name: Optional[str] = None) -> Tuple[str, str]:
    language = infer_test_language(file_name)
    if language:
        framework_line = (
            f"The code is {language}. Write the tests with {TEST_FRAMEWORKS[language]}.\n"
            f"Tag the code block as ```{language}.\n"
        )
    else:
        framework_line = "Use the most widely adopted testing framework for the code's language.\n"

    system_prompt = (
        "You are an expert test engineer. Generate unit tests based on the provided code and its analysis.\n\n"
        f"{framework_line}\n"
        "OUTPUT FORMAT (STRICT): respond with EXACTLY ONE fenced code block containing the complete test file. "
        "No prose, no headings, no explanations before or after the block.\n\n"
        "Your task is to:\n"
        "1. Analyze the code structure and identify all testable functions/methods\n"
        "2. Use the analysis notes to understand potential edge cases and issues\n"
        "3. Generate comprehensive unit tests that cover:\n"
        "   - Happy path scenarios\n"
        "   - Edge cases and boundary conditions\n"
        "   - Error handling\n"
        "   - Any issues mentioned in the analysis\n"
        "4. Include proper setup, teardown, imports, and assertions\n"
        "5. Use descriptive test names"
    )
    user_prompt = (
        f"Generate unit tests for the following code{f' from file: {file_name}' if file_name else ''}:\n\n"
        f"**Original Code:**\n```\n{code}\n```\n\n"
        f"**Code Analysis Notes:**\n{analysis}\n\n"
        "Return ONLY one fenced code block with the complete test file."
    )
    return system_prompt, user_prompt


def build_refactor_prompts(code: str, suggestions: str, file_name: Optional[str] = None,
                           target_path: Optional[str] = None) -> Tuple[str, str]:
    system_prompt = "\n".join([
        "You can use an edit_file tool to perform precise code edits.",
        "When using edit_file:",
        "- Provide target_file (string): which file to modify.",
        "- Provide instructions (string): a single first-person sentence explaining what you are changing to disambiguate.",
        "- Provide code_edit (string): the code to write.",
        "When creating a new refactored file, set target_file to the provided path and include the FULL file contents "
        "in one code_edit block. Never abbreviate unchanged sections.",
        "If tools are unavailable, output ONLY the full refactored file contents: no headings, no steps, no explanations.",
    ])
    parts = [
        f"Refactor the provided source code{f' from file: {file_name}' if file_name else ''} "
        "by applying the explicit refactor suggestions below.",
        "Return ONLY one of the following:",
        "1) A single edit_file call creating a new refactored file (code_edit = \"\"\"<full file>\"\"\"); or",
        "2) ONLY the full refactored file contents in one fenced code block.",
    ]
    if target_path:
        parts.append(f"\nMANDATORY: Use edit_file.target_file = {target_path}")
    parts.extend([
        "\n---\nRefactor Suggestions (authoritative):\n",
        suggestions,
        "\n---\nOriginal Code:\n",
        code,
    ])
    return system_prompt, "\n".join(parts)


class AIReviewer:
    def __init__(self, api_key: Optional[str] = None, base_url: str = None, api_version: str = None,
                 is_azure: bool = False, model: str = "gpt-4o-2024-08-06", meta_model: Optional[str] = None,
                 fallback_model: Optional[str] = None, client: Any = None):
        self.model_name = model
        self.meta_model = meta_model or model
        self.fallback_model = fallback_model or self.meta_model
        if client is not None:
            self.client = client
        elif is_azure:
            self.client = AsyncAzureOpenAI(
                api_key=api_key,
                azure_endpoint=base_url,
                api_version=api_version or "2024-08-01-preview"
            )
        else:
            self.client = AsyncOpenAI(api_key=api_key, base_url=base_url)

    async def run_agent(self, system_prompt: str, user_prompt: str, tools: Optional[List[Dict[str, Any]]] = None,
                        tool_handlers: Optional[Dict[str, Callable[..., Any]]] = None, max_steps: int = 1,
                        model: Optional[str] = None, temperature: float = 0) -> AgentTranscript:
        """
        Run a (possibly tool-augmented) conversation for at most `max_steps` model round trips.

        Tool calls are executed locally through `tool_handlers` and fed back as
        tool messages. The loop ends when the model answers without calling a
        tool. Upstream failures raise GenerationError; nothing is retried.
        """
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        transcript = AgentTranscript()

        for step in range(max(1, max_steps)):
            kwargs: Dict[str, Any] = {
                "model": model or self.model_name,
                "messages": messages,
                "temperature": temperature,
            }
            if tools:
                kwargs["tools"] = tools
                kwargs["tool_choice"] = "auto"

            try:
                completion = await self.client.chat.completions.create(**kwargs)
            except Exception as e:
                logger.error(f"❌ Completion request failed: {e}")
                raise GenerationError(f"Completion request failed: {e}") from e

            error = getattr(completion, "error", None)
            if error:
                raise GenerationError(f"Upstream returned an error: {error}")
            choices = getattr(completion, "choices", None)
            if not choices:
                raise GenerationError("Upstream returned no choices")

            message = choices[0].message
            transcript.text = message.content or ""
            transcript.steps = step + 1
            tool_calls = getattr(message, "tool_calls", None) or []
            if not tool_calls or not tool_handlers:
                break

            messages.append({
                "role": "assistant",
                "content": transcript.text,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.function.name, "arguments": tc.function.arguments or "{}"},
                    }
                    for tc in tool_calls
                ],
            })
            for tc in tool_calls:
                name = tc.function.name
                arguments: Dict[str, Any] = {}
                handler = tool_handlers.get(name)
                try:
                    arguments = json.loads(tc.function.arguments or "{}")
                    if handler is None:
                        output: Any = {"error": f"Unknown tool: {name}"}
                    else:
                        output = await asyncio.to_thread(handler, **arguments)
                except Exception as e:
                    logger.warning(f"⚠️ Tool {name} failed: {e}")
                    output = {"error": str(e)}

                block = _content_block(output)
                transcript.tool_results.append(ToolResult(name=name, arguments=arguments, content=[block]))
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": _block_text(block)})
        else:
            logger.warning(f"⚠️ Agent step budget of {max_steps} exhausted; using the last answer")

        return transcript

    async def request_completion(self, system_prompt: str, user_prompt: str, max_steps: int = 1,
                                 model: Optional[str] = None) -> str:
        transcript = await self.run_agent(system_prompt, user_prompt, max_steps=max_steps, model=model)
        return transcript.text

    async def review_code(self, code: str, file_name: Optional[str] = None) -> str:
        logger.info(f"🔬 Reviewing {file_name or 'snippet'} ({len(code.splitlines())} lines)")
        system_prompt, user_prompt = build_review_prompts(code, file_name)
        text = await self.request_completion(system_prompt, user_prompt)
        if not text.strip():
            raise GenerationError(f"Empty review returned for {file_name or 'snippet'}")
        return text.strip()

    async def generate_unit_tests(self, code: str, analysis: str, file_name: Optional[str] = None) -> str:
        logger.info(f"🧪 Generating unit tests for {file_name or 'snippet'}")
        system_prompt, user_prompt = build_unit_test_prompts(code, analysis, file_name)
        raw = await self.request_completion(system_prompt, user_prompt)
        return extract_test_code(raw, file_name)

    async def apply_refactor(self, code: str, suggestions: str, file_name: Optional[str] = None,
                             target_path: Optional[str] = None) -> str:
        logger.info(f"🛠️ Applying refactor to {file_name or 'snippet'} -> {target_path or 'inline'}")
        system_prompt, user_prompt = build_refactor_prompts(code, suggestions, file_name, target_path)
        raw = await self.request_completion(system_prompt, user_prompt)
        return extract_refactored_contents(raw, code)

    async def chat(self, system_prompt: str, context: str, user_message: str) -> str:
        """Simple chat method for conversations about reviewed code"""
        text = await self.request_completion(
            system_prompt, f"{context}\n\nUser: {user_message}\n\nAssistant:"
        )
        return text.strip()


# --- DISCOVERY ---

_ERROR_SIGNAL_RE = re.compile(r'"error"\s*:\s*"([^"]+)"')

AGENT_TOOLS: List[Dict[str, Any]] = [
    {
        "type": "function",
        "function": {
            "name": "get_repository",
            "description": "Get repository metadata (full name, default branch, visibility).",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_directory",
            "description": "List one directory of the repository. Use path '' for the root.",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
                "additionalProperties": False,
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "get_file_tree",
            "description": "List every file path in the repository, one per line.",
            "parameters": {"type": "object", "properties": {}, "additionalProperties": False},
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_code",
            "description": "Search code in the repository, e.g. 'extension:py' or 'def main'.",
            "parameters": {
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
                "additionalProperties": False,
            },
        },
    },
]

FALLBACK_APPROACHES = [
    {
        "name": "Repository info first",
        "system": "You are a GitHub repository analyzer. First, get repository information for {owner}/{repo} to verify access, then list files.",
        "message": "Please first get repository information for {owner}/{repo}, then list all code files. Return a JSON array of file objects.",
    },
    {
        "name": "Direct file listing",
        "system": "You are a GitHub repository file lister. Use the repository tools to directly list repository contents for {owner}/{repo}.",
        "message": "List all files in the repository {owner}/{repo} using the repository tools. Return a JSON array with file paths.",
    },
    {
        "name": "Search-based approach",
        "system": "You are a GitHub code searcher. Use code search to find code files in {owner}/{repo}.",
        "message": "Search for code files in repository {owner}/{repo} using code search. Return a JSON array of found files.",
    },
]


def _coerce_file(item: Any) -> Optional[DiscoveredFile]:
    if isinstance(item, str):
        path = item.strip()
        return DiscoveredFile.from_path(path) if path and is_code_file(path) else None
    if not isinstance(item, dict):
        return None
    if item.get("type") in ("dir", "tree"):
        return None
    path = item.get("path") or item.get("name")
    if not isinstance(path, str) or not is_code_file(path):
        return None
    summary = item.get("summary") if isinstance(item.get("summary"), dict) else {}
    discovered = DiscoveredFile.from_path(
        path,
        item.get("size") if isinstance(item.get("size"), int) else 0,
        FileSummary(
            line_count=summary.get("lineCount") or summary.get("line_count") or item.get("lineCount") or 0,
            functions=summary.get("functions") or [],
            imports=summary.get("imports") or [],
        ),
    )
    if isinstance(item.get("name"), str) and item.get("name"):
        discovered.name = item["name"]
    if isinstance(item.get("extension"), str) and item.get("extension"):
        discovered.extension = item["extension"]
    return discovered


def _dedupe(files: List[DiscoveredFile]) -> List[DiscoveredFile]:
    seen = set()
    unique = []
    for f in files:
        if f.path not in seen:
            seen.add(f.path)
            unique.append(f)
    return unique


def files_from_tool_results(tool_results: List[ToolResult]) -> List[DiscoveredFile]:
    """Collect file entries from tool outputs: JSON arrays, {files: [...]} objects or newline-separated paths."""
    collected: List[Any] = []
    for result in tool_results:
        for block in result.content:
            if block.get("type") == "json":
                data = block.get("json")
                if isinstance(data, list):
                    collected.extend(data)
                elif isinstance(data, dict) and isinstance(data.get("files"), list):
                    collected.extend(data["files"])
            elif block.get("type") == "text" and isinstance(block.get("text"), str):
                text = block["text"]
                try:
                    maybe = json.loads(text)
                except ValueError:
                    maybe = None
                if isinstance(maybe, list):
                    collected.extend(maybe)
                    continue
                if isinstance(maybe, dict) and isinstance(maybe.get("files"), list):
                    collected.extend(maybe["files"])
                    continue
                collected.extend(line.strip() for line in text.splitlines() if line.strip())

    return _dedupe([f for f in (_coerce_file(item) for item in collected) if f])


def files_from_text(text: str) -> List[DiscoveredFile]:
    """Parse a JSON array out of a free-text answer, fenced (```json) or not."""
    if not text:
        return []
    fenced = re.search(r"```json\s*(.*?)```", text, re.DOTALL | re.IGNORECASE)
    raw = fenced.group(1) if fenced else text
    match = re.search(r"\[[\s\S]*\]", raw)
    if not match:
        return []
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        logger.warning("⚠️ Agent answer contained an unparseable JSON array")
        return []
    if not isinstance(parsed, list):
        return []
    return _dedupe([f for f in (_coerce_file(item) for item in parsed) if f])


def errors_from_tool_results(tool_results: List[ToolResult]) -> List[str]:
    """Messages of tool outputs shaped like {"error": "..."}."""
    errors = []
    for result in tool_results:
        for block in result.content:
            data = block.get("json") if block.get("type") == "json" else None
            if data is None and block.get("type") == "text":
                try:
                    data = json.loads(block.get("text") or "")
                except ValueError:
                    continue
            if isinstance(data, dict) and data.get("error"):
                errors.append(f"{result.name}: {data['error']}")
    return errors


def signals_error(text: str) -> bool:
    return '"error"' in (text or "") or "Unable to retrieve" in (text or "")


class RepositoryDiscovery:
    """
    Tiered repository file enumeration.

    Strategies run strictly in order and the first non-empty result wins:
    Contents API walk, recursive Git Trees listing, then (optionally) an
    LLM agent with repository-browsing tools. An empty list means nothing was
    found; DiscoveryError means every strategy that ran failed outright.
    """

    def __init__(self, fetcher: GitHubFetcher, reviewer: Optional[AIReviewer] = None,
                 agent_enabled: bool = True, max_entries: int = DEFAULT_MAX_ENTRIES):
        self.fetcher = fetcher
        self.reviewer = reviewer
        self.agent_enabled = agent_enabled and reviewer is not None
        self.max_entries = max_entries

    async def discover(self, owner: str, repo: str, token: Optional[str] = None,
                       ref: Optional[str] = None) -> List[DiscoveredFile]:
        report = await self.discover_with_report(owner, repo, token, ref)
        return report.files

    async def discover_with_report(self, owner: str, repo: str, token: Optional[str] = None,
                                   ref: Optional[str] = None) -> DiscoveryReport:
        logger.info(f"🔍 Discovering files for {owner}/{repo}{'@' + ref if ref else ''}")
        report = DiscoveryReport()

        strategies = [
            ("contents", lambda: asyncio.to_thread(
                self.fetcher.list_files_via_contents, owner, repo, token, ref, self.max_entries)),
            ("trees", lambda: asyncio.to_thread(
                self.fetcher.list_files_via_trees, owner, repo, token, ref)),
            ("agent", (lambda: self._discover_via_agent(owner, repo, token, ref)) if self.agent_enabled else None),
        ]

        for name, run in strategies:
            if run is None:
                report.attempts.append(StrategyAttempt(strategy=name, outcome="skipped", detail="not configured"))
                continue
            try:
                files = await run()
            except DiscoveryError as e:
                logger.warning(f"⚠️ Discovery strategy '{name}' failed: {e}")
                report.attempts.append(StrategyAttempt(strategy=name, outcome="error", detail=str(e)))
                continue

            if files:
                logger.info(f"✅ Using '{name}' results ({len(files)} files) for {owner}/{repo}")
                report.files = files
                report.strategy = name
                report.attempts.append(StrategyAttempt(strategy=name, outcome="files", file_count=len(files)))
                return report
            report.attempts.append(StrategyAttempt(strategy=name, outcome="empty"))

        attempted = [a for a in report.attempts if a.outcome != "skipped"]
        if attempted and all(a.outcome == "error" for a in attempted):
            summary = "; ".join(f"{a.strategy}: {a.detail}" for a in attempted)
            logger.error(f"❌ Every discovery strategy failed for {owner}/{repo}: {summary}")
            raise DiscoveryError(f"Could not discover files for {owner}/{repo} ({summary})", attempts=report.attempts)

        logger.warning(
            f"⚠️ No files discovered for {owner}/{repo}. This could be due to:\n"
            "1. Repository access permissions (private repo without proper token)\n"
            "2. Repository is empty or has no code files\n"
            "3. GitHub API rate limits\n"
            "4. Agent discovery disabled or misconfigured\n"
            "5. Repository structure issues (LFS, submodules, etc.)"
        )
        return report

    def _tool_handlers(self, owner: str, repo: str, token: Optional[str], ref: Optional[str]) -> Dict[str, Callable[..., Any]]:
        def get_repository() -> Any:
            try:
                return self.fetcher.get_repository(owner, repo, token).model_dump()
            except FetchError as e:
                return {"error": str(e)}

        def list_directory(path: str = "") -> Any:
            listing = self.fetcher.get_contents(owner, repo, path, token=token, ref=ref)
            if isinstance(listing, ContentsUnavailable):
                return {"error": f"Unable to list {path or '/'}: {listing.status_code}"}
            if isinstance(listing, FileContent):
                return [{"type": "file", "path": listing.path, "name": listing.name, "size": listing.size or 0}]
            return [entry.model_dump() for entry in listing.entries]

        def get_file_tree() -> Any:
            try:
                files = self.fetcher.list_files_via_trees(owner, repo, token, ref)
            except DiscoveryError as e:
                return {"error": str(e)}
            return "\n".join(f.path for f in files)

        def search_code(query: str) -> Any:
            try:
                return {"files": [{"path": p} for p in self.fetcher.search_code(owner, repo, query, token)]}
            except FetchError as e:
                return {"error": str(e)}

        return {
            "get_repository": get_repository,
            "list_directory": list_directory,
            "get_file_tree": get_file_tree,
            "search_code": search_code,
        }

    async def _discover_via_agent(self, owner: str, repo: str, token: Optional[str],
                                  ref: Optional[str]) -> List[DiscoveredFile]:
        handlers = self._tool_handlers(owner, repo, token, ref)
        system_prompt = (
            f"You are a GitHub repository assistant. Use the repository tools to list files for owner {owner} "
            f"and repo {repo} without cloning. Prefer read-only listing tools. Only return final answers as pure JSON."
        )
        user_prompt = (
            f"Please list code files in GitHub repo {owner}/{repo}.\n"
            "Use the repository tools to:\n"
            "1. Enumerate the repository tree and filter for common code extensions\n"
            "2. Optionally fetch per-file summary/metadata\n"
            "3. Return a JSON array with: path, name, extension, size (if available), "
            "summary { lineCount?, functions?, imports? }"
        )

        try:
            transcript = await self.reviewer.run_agent(
                system_prompt, user_prompt, tools=AGENT_TOOLS, tool_handlers=handlers,
                max_steps=AGENT_MAX_STEPS, model=self.reviewer.meta_model,
            )
        except GenerationError as e:
            raise DiscoveryError(f"Agent discovery failed: {e}") from e

        error_signalled = signals_error(transcript.text)
        files: List[DiscoveredFile] = []
        if error_signalled:
            match = _ERROR_SIGNAL_RE.search(transcript.text)
            logger.warning(f"⚠️ Agent returned an error response: {match.group(1) if match else transcript.text[:200]}")
        else:
            files = files_from_tool_results(transcript.tool_results) or files_from_text(transcript.text)
            if files:
                logger.info(f"✅ Agent discovered {len(files)} files for {owner}/{repo}")
                return files
            logger.warning(f"⚠️ Agent found no files for {owner}/{repo}. Response was: {transcript.text[:500]}")
            tool_errors = errors_from_tool_results(transcript.tool_results)
            if tool_errors:
                logger.warning(f"⚠️ Agent tools reported errors: {'; '.join(tool_errors)[:500]}")
                error_signalled = True

        # Deterministic pass before spending more model calls
        retry_error: Optional[DiscoveryError] = None
        try:
            files = await asyncio.to_thread(self.fetcher.list_files_via_trees, owner, repo, token, ref)
        except DiscoveryError as e:
            logger.warning(f"⚠️ Deterministic retry failed: {e}")
            retry_error = e
            files = []
        if files:
            return files

        files = await self._degraded_agent_attempts(owner, repo, handlers)
        if files:
            return files
        if retry_error is not None:
            raise DiscoveryError(f"Agent could not resolve {owner}/{repo}: {retry_error}") from retry_error
        if error_signalled:
            raise DiscoveryError(f"Agent reported an error for {owner}/{repo}")
        return files

    async def _degraded_agent_attempts(self, owner: str, repo: str,
                                       handlers: Dict[str, Callable[..., Any]]) -> List[DiscoveredFile]:
        for approach in FALLBACK_APPROACHES:
            logger.info(f"🔄 Trying fallback approach: {approach['name']}")
            try:
                transcript = await self.reviewer.run_agent(
                    approach["system"].format(owner=owner, repo=repo),
                    approach["message"].format(owner=owner, repo=repo),
                    tools=AGENT_TOOLS,
                    tool_handlers=handlers,
                    max_steps=FALLBACK_AGENT_MAX_STEPS,
                    model=self.reviewer.fallback_model,
                    temperature=0.1,
                )
            except GenerationError as e:
                logger.warning(f"⚠️ Approach {approach['name']} failed: {e}")
                continue

            files = files_from_text(transcript.text) or files_from_tool_results(transcript.tool_results)
            if files:
                logger.info(f"✅ Success with approach: {approach['name']}")
                return files

        logger.warning("⚠️ All fallback approaches returned empty results")
        return []
