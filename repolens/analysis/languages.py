"""Language detection by file extension."""

from __future__ import annotations

import re
from pathlib import PurePosixPath

EXT_LANGUAGE_MAP = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".go": "go",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".swift": "swift",
    ".scala": "scala",
    ".rb": "ruby",
    ".php": "php",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".lua": "lua",
    ".sql": "sql",
    ".md": "markdown",
    ".mdx": "markdown",
    ".markdown": "markdown",
}

# Languages whose declarations are delimited by braces.
BRACE_LANGUAGES = {
    "javascript",
    "typescript",
    "java",
    "kotlin",
    "go",
    "rust",
    "csharp",
    "cpp",
    "c",
    "swift",
    "scala",
    "php",
}

_CPP_HINT = re.compile(r"\bnamespace\b|\bstd::|\btemplate\s*<|\bclass\s+\w+\s*[:{]")


def language_for_path(rel_path: str, sample_text: str | None = None) -> str | None:
    """Return the language name for ``rel_path`` or None when unsupported."""
    ext = PurePosixPath(rel_path).suffix.lower()
    language = EXT_LANGUAGE_MAP.get(ext)
    if ext == ".h" and sample_text and _CPP_HINT.search(sample_text):
        return "cpp"
    return language


def supported_languages() -> set[str]:
    return set(EXT_LANGUAGE_MAP.values())
