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
Reduce free-form model output to a single clean code artifact.

Model replies are untrusted prose: the code we want may be wrapped in fences,
buried in a tool call, cut short, or surrounded by commentary. Every extractor
here enumerates candidate blocks, scores them against a fixed rubric and keeps
the best one. Nothing in this module raises; the worst case is an empty string.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from languages import infer_test_language, normalize_fence_language

logger = logging.getLogger(__name__)

FENCE_RE = re.compile(r"```[ \t]*([\w+#.-]*)[^\n]*\n(.*?)\n?[ \t]*```", re.DOTALL)

LANGUAGE_MATCH_BONUS = 1000
IDIOM_BONUS = 25
MIN_LINE_RATIO = 0.4

TEST_IDIOMS: Dict[str, Sequence[str]] = {
    "python": (
        r"^\s*import unittest\b",
        r"^\s*(?:import|from) pytest\b",
        r"unittest\.TestCase",
        r"^\s*class Test\w*",
        r"^\s*def test_\w+\(",
    ),
    "typescript": (
        r"\bdescribe\(",
        r"\b(?:it|test)\(",
        r"\bexpect\(",
        r"""from ['"](?:@jest/globals|vitest)['"]""",
    ),
    "javascript": (
        r"\bdescribe\(",
        r"\b(?:it|test)\(",
        r"\bexpect\(",
        r"""require\(['"](?:@jest/globals|assert)['"]\)""",
    ),
    "go": (
        r'"testing"',
        r"func Test\w+\(t \*testing\.T\)",
    ),
    "java": (
        r"^\s*import\s+org\.junit",
        r"@Test\b",
        r"class \w+Test\b",
    ),
    "ruby": (
        r"RSpec\.describe",
        r"""^\s*require ['"](?:rspec|minitest)""",
        r"""^\s*it ['"]""",
    ),
    "csharp": (
        r"^\s*using\s+(?:Xunit|NUnit|Microsoft\.VisualStudio\.TestTools)",
        r"\[(?:Fact|Theory|Test|TestMethod)\]",
    ),
}

# Markdown debris dropped by the line-filter fallbacks
HEADING_RE = re.compile(r"^\s*#{1,6}\s")
BULLET_RE = re.compile(r"^\s*[-*+]\s+")
QUOTE_RE = re.compile(r"^\s*>")
NUMBERED_RE = re.compile(r"^\s*\d+[.)]\s")
RULE_RE = re.compile(r"^\s*([-*_])(?:\s*\1){2,}\s*$")
FENCE_LINE_RE = re.compile(r"^\s*```")

# Signs that a candidate is an edit fragment rather than a whole file
PLACEHOLDER_RE = re.compile(
    r"\.\.\.\s*(?:existing|rest of|unchanged|remaining|previous|other)\b[^\n]*",
    re.IGNORECASE,
)
DIFF_HEADER_RE = re.compile(
    r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@|^--- \S[^\n]*\n\+\+\+ \S", re.MULTILINE
)
DIFF_MARKER_RE = re.compile(r"^(?:\+(?!\+)|-(?!-))", re.MULTILINE)
DIFF_HUNK_LINE_RE = re.compile(r"^@@ -\d+(?:,\d+)? \+\d+(?:,\d+)? @@")
TOOL_CALL_RE = re.compile(r"code_edit\s*=|edit_file\.")

CODE_EDIT_RES = (
    re.compile(r'code_edit\s*=\s*"""(.*?)"""', re.DOTALL),
    re.compile(r"code_edit\s*=\s*'''(.*?)'''", re.DOTALL),
)
ANY_TRIPLE_RE = re.compile(r"(\"\"\"|''')(.*?)\1", re.DOTALL)
MARKER_RE = re.compile(r"here(?:'|’)?s the refactored code", re.IGNORECASE)
MARKER_STOP_RE = re.compile(
    r"^\s*#{2,6}\s|^\s*\[edit_file|^\s*edit_file\.|code_edit\s*=", re.IGNORECASE
)
TOOL_LEAK_RE = re.compile(
    r"^\s*import\s+edit_file|^\s*edit_file\.|^\s*\[edit_file|code_edit\s*=", re.IGNORECASE
)

SUGGESTIONS_HEADING_RE = re.compile(
    r"^[ \t]*(?:#{1,6}[ \t]*)?(?:\d+\.[ \t]*)?(?:\*\*)?[ \t]*refactor(?:ing)? suggestions\b.*$",
    re.IGNORECASE | re.MULTILINE,
)


@dataclass
class Candidate:
    source: str
    text: str
    language: Optional[str] = None
    score: float = 0.0


def find_fenced_blocks(text: str) -> List[Candidate]:
    """Every fenced block in `text`, in order, with its normalised language tag.

    A trailing fence that was opened but never closed (truncated output) is
    returned as a final block so truncation does not hide the code entirely.
    """
    if not text:
        return []
    blocks: List[Candidate] = []
    last_end = 0
    for match in FENCE_RE.finditer(text):
        blocks.append(Candidate(
            source="fence",
            text=match.group(2),
            language=normalize_fence_language(match.group(1)),
        ))
        last_end = match.end()

    tail = text[last_end:]
    opening = re.search(r"```[ \t]*([\w+#.-]*)[^\n]*\n", tail)
    if opening and "```" not in tail[opening.end():]:
        body = tail[opening.end():]
        if body.strip():
            blocks.append(Candidate(
                source="unclosed_fence",
                text=body,
                language=normalize_fence_language(opening.group(1)),
            ))
    return blocks


def _line_count(text: str) -> int:
    return len(text.splitlines())


def _score_test_block(block: Candidate, target_language: Optional[str]) -> float:
    score = float(_line_count(block.text))
    if target_language and block.language == target_language:
        score += LANGUAGE_MATCH_BONUS
    for pattern in TEST_IDIOMS.get(target_language or "", ()):
        if re.search(pattern, block.text, re.MULTILINE):
            score += IDIOM_BONUS
    return score


def strip_markdown_lines(text: str) -> str:
    kept = []
    for line in (text or "").splitlines():
        if (
            HEADING_RE.match(line)
            or RULE_RE.match(line)
            or BULLET_RE.match(line)
            or QUOTE_RE.match(line)
            or NUMBERED_RE.match(line)
            or FENCE_LINE_RE.match(line)
        ):
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def extract_test_code(raw_text: str, file_name: Optional[str] = None) -> str:
    """
    Pick the most plausible test file out of a model reply.

    Each fenced block scores its line count, +1000 when its fence tag matches
    the language inferred from `file_name`, and a small bonus for every test
    framework idiom it contains. With no fences at all the reply is run
    through a markdown line filter instead. The result is not validated.
    """
    if not raw_text:
        return ""

    target_language = infer_test_language(file_name)
    blocks = find_fenced_blocks(raw_text)
    if not blocks:
        logger.debug("🔍 No fenced blocks in test output, falling back to line filter")
        return strip_markdown_lines(raw_text)

    for block in blocks:
        block.score = _score_test_block(block, target_language)
    best = max(blocks, key=lambda b: b.score)
    logger.debug(
        f"🔍 Picked {best.source} block (lang={best.language}, score={best.score:.0f}) "
        f"out of {len(blocks)} for {file_name or 'unknown file'}"
    )
    return best.text.strip()


def is_likely_partial(candidate: str, original_code: Optional[str] = None) -> bool:
    """True when `candidate` looks like an edit fragment instead of a full file."""
    if not candidate or not candidate.strip():
        return True
    if PLACEHOLDER_RE.search(candidate):
        return True
    if DIFF_HEADER_RE.search(candidate):
        return True
    # Single +/- lines only count when the original has none (YAML lists, markdown bullets)
    if DIFF_MARKER_RE.search(candidate) and not DIFF_MARKER_RE.search(original_code or ""):
        return True
    if TOOL_CALL_RE.search(candidate):
        return True
    original_lines = _line_count(original_code or "")
    if original_lines and _line_count(candidate) < MIN_LINE_RATIO * original_lines:
        return True
    return False


def _code_edit_candidates(text: str) -> List[Candidate]:
    found = []
    for pattern in CODE_EDIT_RES:
        match = pattern.search(text)
        if match:
            found.append(Candidate(source="code_edit", text=match.group(1).strip()))
            break

    if not found:
        idx = text.find("code_edit")
        if idx != -1:
            match = ANY_TRIPLE_RE.search(text, idx)
            if match:
                found.append(Candidate(source="code_edit_loose", text=match.group(2).strip()))
    return found


def _marker_candidate(text: str) -> Optional[Candidate]:
    match = MARKER_RE.search(text)
    if not match:
        return None
    # Skip the rest of the marker line itself
    after = text[match.end():].split("\n")[1:]
    collected = []
    for line in after:
        if MARKER_STOP_RE.search(line):
            break
        collected.append(line)
    body = "\n".join(collected).strip()
    if not body:
        return None
    return Candidate(source="marker", text=body)


def salvage_text(text: str) -> str:
    """Last resort: the whole reply minus fences, headings, lists and tool-call debris."""
    kept = []
    for line in (text or "").splitlines():
        if (
            FENCE_LINE_RE.match(line)
            or HEADING_RE.match(line)
            or NUMBERED_RE.match(line)
            or TOOL_LEAK_RE.search(line)
            or PLACEHOLDER_RE.search(line)
            or MARKER_RE.search(line)
            or DIFF_HUNK_LINE_RE.match(line)
        ):
            continue
        kept.append(line)
    return "\n".join(kept).strip()


def extract_refactored_contents(raw_text: str, original_code: Optional[str] = None) -> str:
    """
    Recover the full refactored file from a refactor reply.

    Priority: explicit code_edit payload, then the longest fenced block, then
    the section after a "here's the refactored code" marker. Each candidate
    must pass `is_likely_partial`; if none does, fall back to `salvage_text`.
    """
    if not raw_text:
        return ""

    tiers: List[List[Candidate]] = [_code_edit_candidates(raw_text)]

    fenced = find_fenced_blocks(raw_text)
    for block in fenced:
        block.text = block.text.strip()
        block.score = _line_count(block.text)
    # Longest first; sort is stable so equal lengths keep first-seen order
    tiers.append(sorted(fenced, key=lambda b: b.score, reverse=True))

    marker = _marker_candidate(raw_text)
    tiers.append([marker] if marker else [])

    for tier in tiers:
        for candidate in tier:
            if is_likely_partial(candidate.text, original_code):
                logger.info(f"⚠️ Rejected {candidate.source} candidate as likely partial")
                continue
            logger.debug(f"✅ Using {candidate.source} candidate ({_line_count(candidate.text)} lines)")
            return candidate.text

    logger.warning("⚠️ No clean refactor candidate found, salvaging raw text")
    return salvage_text(raw_text)


def extract_refactor_suggestions(analysis_text: str) -> str:
    """The "Refactor Suggestions" section of a review, or the whole review if it has none."""
    if not analysis_text:
        return ""
    match = SUGGESTIONS_HEADING_RE.search(analysis_text)
    if not match:
        return analysis_text.strip()

    collected = []
    for line in analysis_text[match.end():].split("\n"):
        if HEADING_RE.match(line):
            break
        collected.append(line)
    section = "\n".join(collected).strip()
    return section or analysis_text.strip()
