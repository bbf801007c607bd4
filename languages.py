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

"""Static lookup tables for file extensions, languages and test frameworks."""

import posixpath
from typing import Dict, Optional, Tuple

# Files we consider worth reviewing. Filtering is by extension only, never by path.
CODE_EXTENSIONS: Tuple[str, ...] = (
    ".js", ".ts", ".tsx", ".jsx", ".py", ".java", ".go", ".rs", ".cpp", ".c",
    ".h", ".cs", ".php", ".rb", ".swift", ".kt", ".scala", ".clj", ".hs", ".ml",
    ".fs", ".vb", ".dart", ".r", ".m", ".pl", ".sh", ".sql", ".html", ".css",
    ".scss", ".sass", ".less", ".xml", ".json", ".yaml", ".yml", ".toml", ".ini",
    ".cfg", ".conf", ".md", ".txt", ".vue", ".svelte", ".astro",
)

LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "cs": "csharp",
    "php": "php",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "r": "r",
    "m": "matlab",
    "sh": "bash",
    "bash": "bash",
    "zsh": "bash",
    "fish": "bash",
    "ps1": "powershell",
    "bat": "batch",
    "cmd": "batch",
    "sql": "sql",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "sass": "sass",
    "less": "less",
    "vue": "vue",
    "svelte": "svelte",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "ini": "ini",
    "conf": "conf",
    "config": "conf",
}

# Narrower table used to pick a testing framework for generated tests
TEST_LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    ".py": "python",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".js": "javascript",
    ".jsx": "javascript",
    ".go": "go",
    ".java": "java",
    ".rb": "ruby",
    ".cs": "csharp",
}

TEST_FRAMEWORKS: Dict[str, str] = {
    "python": "the built-in unittest framework (import unittest, classes extending unittest.TestCase)",
    "typescript": "Jest (describe/it/expect)",
    "javascript": "Jest (describe/it/expect)",
    "go": "the standard testing package (func TestXxx(t *testing.T))",
    "java": "JUnit 5 (org.junit.jupiter.api, @Test)",
    "ruby": "RSpec (RSpec.describe / it / expect)",
    "csharp": "xUnit ([Fact] / [Theory], Assert)",
}

# Fence tags models use in practice, normalised to the names above
FENCE_ALIASES: Dict[str, str] = {
    "py": "python",
    "python3": "python",
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "node": "javascript",
    "golang": "go",
    "cs": "csharp",
    "c#": "csharp",
    "rb": "ruby",
}


def file_extension(file_name: str) -> str:
    """Return the dotted extension of the basename, or '' when it has none."""
    base = posixpath.basename((file_name or "").replace("\\", "/"))
    if "." not in base:
        return ""
    return "." + base.rsplit(".", 1)[1]


def is_code_file(path: str) -> bool:
    return (path or "").lower().endswith(CODE_EXTENSIONS)


def language_from_file_name(file_name: str) -> str:
    ext = file_extension(file_name).lstrip(".").lower()
    return LANGUAGE_BY_EXTENSION.get(ext, "text")


def infer_test_language(file_name: Optional[str]) -> Optional[str]:
    if not file_name:
        return None
    return TEST_LANGUAGE_BY_EXTENSION.get(file_extension(file_name).lower())


def normalize_fence_language(tag: Optional[str]) -> Optional[str]:
    if not tag:
        return None
    tag = tag.strip().lower()
    return FENCE_ALIASES.get(tag, tag)
