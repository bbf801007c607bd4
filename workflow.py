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

"""
Multi-step review workflow: select files, analyze, generate tests, refactor.

Per-file results live in dictionaries keyed by repository path and are only
ever replaced through `ReviewWorkflow._dispatch`. Every upstream failure is
converted into that file's result status so one bad file never aborts a
batch, and any single file can be retried later.
"""

import asyncio
import logging
import posixpath
from enum import Enum
from typing import Optional, List, Dict, Any, Callable, Union, ClassVar
from pydantic import BaseModel, Field

from services import GitHubFetcher, AIReviewer, DiscoveredFile, FetchError, GenerationError
from extraction import extract_refactor_suggestions
from languages import file_extension
from store import BaseStore, file_metadata

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3


class InvalidTransition(Exception):
    """A result that already reached a terminal status was asked to change again."""


class ResultStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


class TestExecution(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    method: str = Field("", description="How the tests were executed, e.g. 'docker'.")


class _Result(BaseModel):
    file_id: str
    file_name: str
    status: ResultStatus = ResultStatus.PENDING
    record_id: Optional[str] = Field(None, description="Persisted record id, when a store is configured.")

    text_field: ClassVar[str] = ""

    def _finish(self, status: ResultStatus, text: str):
        if self.status != ResultStatus.PENDING:
            raise InvalidTransition(
                f"{type(self).__name__} for {self.file_name} is already {self.status.value}"
            )
        return self.model_copy(update={"status": status, self.text_field: text})

    def complete(self, text: str):
        return self._finish(ResultStatus.COMPLETED, text)

    def fail(self, message: str):
        return self._finish(ResultStatus.ERROR, message)


class AnalysisResult(_Result):
    analysis_text: str = ""

    text_field: ClassVar[str] = "analysis_text"


class UnitTestResult(_Result):
    test_code: str = ""
    test_execution: Optional[TestExecution] = None

    text_field: ClassVar[str] = "test_code"


class FileSelection(BaseModel):
    path: str
    name: str
    content: str = ""
    selected: bool = True


class RefactorArtifact(BaseModel):
    original_file_name: str
    refactored_file_name: str
    refactored_path: str
    content: str


class WorkflowEvent(BaseModel):
    kind: str = Field(..., description="analysis, unit_test or refactor")
    path: str
    result: Union[AnalysisResult, UnitTestResult, RefactorArtifact]


def refactored_names(file_name: str, file_path: Optional[str] = None) -> Dict[str, str]:
    """`foo.py` -> `foo_refactored.py`, placed in the same directory as the original."""
    ext = file_extension(file_name)
    if ext == file_name:
        # Dotfiles like ".env" have no extension to preserve
        ext = ""
    base = file_name[: -len(ext)] if ext else file_name
    refactored = f"{base}_refactored{ext}"
    directory = posixpath.dirname(file_path) if file_path else ""
    return {
        "refactored_file_name": refactored,
        "refactored_path": posixpath.join(directory, refactored) if directory else refactored,
    }


class ReviewWorkflow:
    def __init__(self, fetcher: GitHubFetcher, reviewer: AIReviewer, store: Optional[BaseStore] = None,
                 concurrency: int = DEFAULT_CONCURRENCY, user_id: Optional[str] = None,
                 session_id: Optional[str] = None, on_progress: Callable[[str], None] = None):
        self.fetcher = fetcher
        self.reviewer = reviewer
        self.store = store
        self.concurrency = max(1, concurrency)
        self.user_id = user_id
        self.session_id = session_id
        self.on_progress = on_progress

        self.selections: Dict[str, FileSelection] = {}
        self.analyses: Dict[str, AnalysisResult] = {}
        self.unit_tests: Dict[str, UnitTestResult] = {}
        self.refactors: Dict[str, RefactorArtifact] = {}
        self._file_ids: Dict[str, str] = {}

    def _progress(self, message: str):
        logger.info(message)
        if self.on_progress:
            self.on_progress(message)

    def _dispatch(self, event: WorkflowEvent):
        """Single place where per-file results are replaced."""
        if event.kind == "analysis":
            self.analyses[event.path] = event.result
        elif event.kind == "unit_test":
            self.unit_tests[event.path] = event.result
        elif event.kind == "refactor":
            self.refactors[event.path] = event.result
        else:
            raise ValueError(f"Unknown workflow event: {event.kind}")

    # --- Step 1: selection ---

    async def load_selection(self, owner: str, repo: str, files: List[Union[DiscoveredFile, str]],
                             token: Optional[str] = None, ref: Optional[str] = None) -> List[FileSelection]:
        """Fetch the content of each chosen file. A file that cannot be fetched gets an Error analysis."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def load(item: Union[DiscoveredFile, str]):
            path = item if isinstance(item, str) else item.path
            name = posixpath.basename(path)
            async with semaphore:
                try:
                    fetched = await asyncio.to_thread(self.fetcher.fetch_content, owner, repo, path, token, ref)
                except FetchError as e:
                    self._progress(f"❌ Could not fetch {path}: {e}")
                    self._dispatch(WorkflowEvent(
                        kind="analysis", path=path,
                        result=AnalysisResult(file_id=path, file_name=name).fail(f"Failed to fetch file content: {e}"),
                    ))
                    self.selections[path] = FileSelection(path=path, name=name, selected=False)
                    return
            self.selections[path] = FileSelection(path=path, name=fetched.name, content=fetched.content)
            self._progress(f"📄 Loaded {path} ({fetched.size_bytes} bytes)")

        await asyncio.gather(*(load(item) for item in files))
        # Keep the caller's ordering
        ordered = [f if isinstance(f, str) else f.path for f in files]
        return [self.selections[p] for p in ordered if p in self.selections]

    def select(self, path: str, content: str, name: Optional[str] = None) -> FileSelection:
        """Register a file whose content is already known (e.g. an upload)."""
        selection = FileSelection(path=path, name=name or posixpath.basename(path), content=content)
        self.selections[path] = selection
        return selection

    # --- persistence ---

    async def _persist_file(self, selection: FileSelection) -> str:
        if self.store is None:
            return selection.path
        if selection.path in self._file_ids:
            return self._file_ids[selection.path]
        file_id = await asyncio.to_thread(
            self.store.create_file,
            selection.name, "text/plain", len(selection.content), self.user_id,
            selection.content, file_metadata(selection.name, selection.content),
        )
        if not file_id:
            logger.warning(f"⚠️ Could not persist {selection.path}; continuing without a file record")
            return selection.path
        if self.session_id:
            await asyncio.to_thread(self.store.add_file_to_session, self.session_id, file_id)
        self._file_ids[selection.path] = file_id
        return file_id

    # --- Step 2: analysis ---

    async def _analyze_one(self, selection: FileSelection, semaphore: asyncio.Semaphore) -> AnalysisResult:
        path = selection.path
        pending = AnalysisResult(file_id=self._file_ids.get(path, path), file_name=selection.name)
        self._dispatch(WorkflowEvent(kind="analysis", path=path, result=pending))
        try:
            async with semaphore:
                self._progress(f"🔬 Analyzing {path}")
                text = await self.reviewer.review_code(selection.content, selection.name)
            file_id = await self._persist_file(selection)
            result = pending.complete(text).model_copy(update={"file_id": file_id})
            if self.store is not None and file_id != path:
                result.record_id = await asyncio.to_thread(
                    self.store.create_analysis, file_id, selection.name, text, "completed", self.user_id,
                )
            self._progress(f"✅ Analysis complete for {path}")
        except asyncio.CancelledError:
            self._dispatch(WorkflowEvent(kind="analysis", path=path, result=pending.fail("Cancelled")))
            raise
        except Exception as e:
            logger.error(f"❌ Analysis failed for {path}: {e}", exc_info=not isinstance(e, GenerationError))
            result = pending.fail(f"Error analyzing file: {e}")
            self._progress(f"❌ Analysis failed for {path}")
        self._dispatch(WorkflowEvent(kind="analysis", path=path, result=result))
        return result

    async def analyze(self, paths: Optional[List[str]] = None) -> List[AnalysisResult]:
        """Analyze the selected files (or `paths`) with at most `concurrency` requests in flight."""
        targets = [
            s for s in self.selections.values()
            if s.selected and (paths is None or s.path in paths)
        ]
        self._progress(f"--- 🔬 Analyzing {len(targets)} file(s) ---")
        semaphore = asyncio.Semaphore(self.concurrency)
        return list(await asyncio.gather(*(self._analyze_one(s, semaphore) for s in targets)))

    async def retry_analysis(self, path: str) -> AnalysisResult:
        """Run a fresh analysis request for one file, replacing its previous result."""
        selection = self.selections.get(path)
        if selection is None or not selection.content:
            raise KeyError(f"No loaded content for {path}")
        self._progress(f"🔄 Retrying analysis for {path}")
        return await self._analyze_one(selection, asyncio.Semaphore(1))

    # --- Step 3: unit tests ---

    async def _tests_one(self, path: str, semaphore: asyncio.Semaphore) -> UnitTestResult:
        selection = self.selections[path]
        analysis = self.analyses[path]
        pending = UnitTestResult(file_id=analysis.file_id, file_name=selection.name)
        self._dispatch(WorkflowEvent(kind="unit_test", path=path, result=pending))
        try:
            async with semaphore:
                self._progress(f"🧪 Generating tests for {path}")
                code = await self.reviewer.generate_unit_tests(selection.content, analysis.analysis_text, selection.name)
            result = pending.complete(code)
            if self.store is not None and analysis.record_id:
                result.record_id = await asyncio.to_thread(
                    self.store.create_unit_test,
                    analysis.file_id, analysis.record_id, selection.name, code, "completed", self.user_id,
                )
            self._progress(f"✅ Tests generated for {path}")
        except asyncio.CancelledError:
            self._dispatch(WorkflowEvent(kind="unit_test", path=path, result=pending.fail("Cancelled")))
            raise
        except Exception as e:
            logger.error(f"❌ Test generation failed for {path}: {e}", exc_info=not isinstance(e, GenerationError))
            result = pending.fail(f"Error generating unit tests: {e}")
            self._progress(f"❌ Test generation failed for {path}")
        self._dispatch(WorkflowEvent(kind="unit_test", path=path, result=result))
        return result

    def _ready_for_tests(self, path: str) -> bool:
        analysis = self.analyses.get(path)
        return path in self.selections and analysis is not None and analysis.status == ResultStatus.COMPLETED

    async def generate_tests(self, paths: Optional[List[str]] = None) -> List[UnitTestResult]:
        """Generate tests for every file whose analysis completed. Others are skipped."""
        candidates = paths if paths is not None else list(self.analyses)
        ready = []
        for path in candidates:
            if self._ready_for_tests(path):
                ready.append(path)
            else:
                logger.warning(f"⚠️ Skipping tests for {path}: no completed analysis")
        semaphore = asyncio.Semaphore(self.concurrency)
        return list(await asyncio.gather(*(self._tests_one(p, semaphore) for p in ready)))

    async def retry_tests(self, path: str) -> UnitTestResult:
        if not self._ready_for_tests(path):
            raise KeyError(f"No completed analysis for {path}")
        self._progress(f"🔄 Retrying test generation for {path}")
        return await self._tests_one(path, asyncio.Semaphore(1))

    # --- Step 4: refactor ---

    async def refactor(self, path: str) -> RefactorArtifact:
        """
        Apply the analysis' refactor suggestions to one file.

        Unlike the batch steps this is a single user action, so GenerationError
        propagates to the caller instead of being folded into a status.
        """
        if not self._ready_for_tests(path):
            raise KeyError(f"No completed analysis for {path}")
        selection = self.selections[path]
        names = refactored_names(selection.name, path)
        suggestions = extract_refactor_suggestions(self.analyses[path].analysis_text)

        self._progress(f"🛠️ Refactoring {path} -> {names['refactored_path']}")
        content = await self.reviewer.apply_refactor(
            selection.content, suggestions, selection.name, names["refactored_path"],
        )
        artifact = RefactorArtifact(original_file_name=selection.name, content=content, **names)
        self._dispatch(WorkflowEvent(kind="refactor", path=path, result=artifact))
        return artifact

    # --- Reporting ---

    def analysis_report(self, owner: str, repo: str) -> Dict[str, Any]:
        files = []
        for path, result in self.analyses.items():
            ok = result.status == ResultStatus.COMPLETED
            files.append({
                "path": path,
                "fileId": result.file_id if ok else None,
                "status": result.status.value,
                "analysis": result.analysis_text,
                "recommendations": (
                    extract_refactor_suggestions(result.analysis_text) if ok
                    else "Unable to provide recommendations due to analysis error"
                ),
            })
        succeeded = sum(1 for f in files if f["status"] == ResultStatus.COMPLETED.value)
        return {
            "summary": f"Analysis completed for {len(files)} files in {owner}/{repo}. "
                       f"{succeeded} files analyzed successfully.",
            "recommendations": [
                "Review each file's analysis for specific improvement suggestions",
                "Consider adding unit tests for the analyzed functions",
                "Address any security or performance concerns mentioned in the analysis",
            ],
            "files": files,
        }
