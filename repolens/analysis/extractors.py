"""Decompose a source file into documents.

Python files are parsed with :mod:`ast`; brace-delimited languages use
declaration regexes plus brace matching; markdown is split at headings.
Anything else, or a file where no declaration is found, becomes one or more
line-window ``module`` documents.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Callable

from .chunking import chunk_text, make_snippet
from .languages import BRACE_LANGUAGES

MODULE_CHUNK_LINES = 100
MODULE_CHUNK_OVERLAP = 10


@dataclass(frozen=True)
class DocumentMetadata:
    path: str
    type: str
    name: str
    start_line: int
    end_line: int
    language: str
    imports: tuple[str, ...] = ()
    snippet: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "type": self.type,
            "name": self.name,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "language": self.language,
            "imports": list(self.imports),
            "snippet": self.snippet,
        }


@dataclass(frozen=True)
class Document:
    id: str
    text: str
    metadata: DocumentMetadata


@dataclass
class ExtractedFile:
    documents: list[Document] = field(default_factory=list)
    imports: list[str] = field(default_factory=list)


def document_id(path: str, name: str, start_line: int) -> str:
    return f"{path}:{name}:{start_line}"


def _make(
    path: str,
    doc_type: str,
    name: str,
    start: int,
    end: int,
    language: str,
    text: str,
    imports: list[str],
) -> Document:
    return Document(
        id=document_id(path, name, start),
        text=text,
        metadata=DocumentMetadata(
            path=path,
            type=doc_type,
            name=name,
            start_line=start,
            end_line=end,
            language=language,
            imports=tuple(imports),
            snippet=make_snippet(text),
        ),
    )


def _line_slice(lines: list[str], start: int, end: int) -> str:
    return "\n".join(lines[start - 1 : end])


def extract_module_chunks(path: str, text: str, language: str, imports: list[str]) -> list[Document]:
    if not text.strip():
        return []
    name = PurePosixPath(path).stem or PurePosixPath(path).name
    return [
        _make(path, "module", name, start, end, language, chunk, imports)
        for _idx, start, end, chunk in chunk_text(
            text, max_lines=MODULE_CHUNK_LINES, overlap=MODULE_CHUNK_OVERLAP
        )
        if chunk.strip()
    ]


# -- python ----------------------------------------------------------------


def _python_imports(tree: ast.Module) -> list[str]:
    found: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            found.update(alias.name for alias in node.names)
        elif isinstance(node, ast.ImportFrom):
            module = "." * node.level + (node.module or "")
            if module:
                found.add(module)
    return sorted(found)


def _node_span(node: ast.AST) -> tuple[int, int]:
    decorators = getattr(node, "decorator_list", None) or []
    start = min([d.lineno for d in decorators] + [node.lineno])  # type: ignore[attr-defined]
    end = getattr(node, "end_lineno", None) or node.lineno  # type: ignore[attr-defined]
    return start, end


def extract_python(path: str, text: str) -> ExtractedFile:
    """Functions, classes and methods of a Python module.

    Raises:
        SyntaxError: the file does not parse.
    """
    tree = ast.parse(text, filename=path)
    lines = text.splitlines()
    imports = _python_imports(tree)
    docs: list[Document] = []

    for node in tree.body:
        if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            start, end = _node_span(node)
            docs.append(
                _make(path, "function", node.name, start, end, "python",
                      _line_slice(lines, start, end), imports)
            )
        elif isinstance(node, ast.ClassDef):
            start, end = _node_span(node)
            docs.append(
                _make(path, "class", node.name, start, end, "python",
                      _line_slice(lines, start, end), imports)
            )
            for child in node.body:
                if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    c_start, c_end = _node_span(child)
                    docs.append(
                        _make(path, "method", f"{node.name}.{child.name}", c_start, c_end,
                              "python", _line_slice(lines, c_start, c_end), imports)
                    )

    if not docs:
        docs = extract_module_chunks(path, text, "python", imports)
    return ExtractedFile(documents=docs, imports=imports)


# -- markdown --------------------------------------------------------------

_HEADING = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_FENCE = re.compile(r"^\s*(```|~~~)")


def extract_markdown(path: str, text: str) -> ExtractedFile:
    """One ``documentation`` document per heading section."""
    lines = text.splitlines()
    headings: list[tuple[int, str]] = []
    in_fence = False
    for lineno, line in enumerate(lines, start=1):
        if _FENCE.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue
        match = _HEADING.match(line)
        if match:
            headings.append((lineno, match.group(2).strip()))

    docs: list[Document] = []
    if not headings:
        if text.strip():
            name = PurePosixPath(path).stem
            docs.append(_make(path, "documentation", name, 1, len(lines), "markdown", text, []))
        return ExtractedFile(documents=docs)

    first = headings[0][0]
    if first > 1 and _line_slice(lines, 1, first - 1).strip():
        preamble = _line_slice(lines, 1, first - 1)
        docs.append(
            _make(path, "documentation", PurePosixPath(path).stem, 1, first - 1,
                  "markdown", preamble, [])
        )
    for i, (start, title) in enumerate(headings):
        end = headings[i + 1][0] - 1 if i + 1 < len(headings) else len(lines)
        section = _line_slice(lines, start, end)
        docs.append(_make(path, "documentation", title, start, end, "markdown", section, []))
    return ExtractedFile(documents=docs)


# -- brace languages -------------------------------------------------------

_DeclPattern = tuple[re.Pattern, Callable[[re.Match], tuple[str, str]]]

_JS_DECLS: list[_DeclPattern] = [
    (
        re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:async\s+)?function\s*\*?\s*(\w+)"),
        lambda m: ("function", m.group(1)),
    ),
    (
        re.compile(r"^\s*(?:export\s+)?(?:default\s+)?(?:abstract\s+)?class\s+(\w+)"),
        lambda m: ("class", m.group(1)),
    ),
    (
        re.compile(
            r"^\s*(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?"
            r"(?:\([^)]*\)|\w+)\s*(?::[^=]+)?=>"
        ),
        lambda m: ("function", m.group(1)),
    ),
    (
        re.compile(r"^\s*(?:export\s+)?interface\s+(\w+)"),
        lambda m: ("interface", m.group(1)),
    ),
    (
        re.compile(r"^\s*(?:export\s+)?type\s+(\w+)\s*(?:<[^=]*>)?\s*="),
        lambda m: ("type", m.group(1)),
    ),
]

_GO_DECLS: list[_DeclPattern] = [
    (
        re.compile(r"^func\s+\((?:\w+\s+)?\*?(\w+)[^)]*\)\s*(\w+)"),
        lambda m: ("method", f"{m.group(1)}.{m.group(2)}"),
    ),
    (re.compile(r"^func\s+(\w+)"), lambda m: ("function", m.group(1))),
    (re.compile(r"^type\s+(\w+)\s+struct\b"), lambda m: ("class", m.group(1))),
    (re.compile(r"^type\s+(\w+)\s+interface\b"), lambda m: ("interface", m.group(1))),
]

_RUST_DECLS: list[_DeclPattern] = [
    (
        re.compile(
            r"^(\s*)(?:pub(?:\([^)]*\))?\s+)?(?:const\s+)?(?:async\s+)?(?:unsafe\s+)?"
            r"(?:extern\s+\"[^\"]*\"\s+)?fn\s+(\w+)"
        ),
        lambda m: ("method" if m.group(1) else "function", m.group(2)),
    ),
    (
        re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?(?:struct|enum)\s+(\w+)"),
        lambda m: ("class", m.group(1)),
    ),
    (
        re.compile(r"^\s*(?:pub(?:\([^)]*\))?\s+)?trait\s+(\w+)"),
        lambda m: ("interface", m.group(1)),
    ),
]

_GENERIC_DECLS: list[_DeclPattern] = [
    (
        re.compile(
            r"^\s*(?:(?:public|private|protected|internal|abstract|final|static|sealed|"
            r"partial|data|open)\s+)*(?:class|struct|record|object)\s+(\w+)"
        ),
        lambda m: ("class", m.group(1)),
    ),
    (
        re.compile(r"^\s*(?:(?:public|private|protected|internal)\s+)*(?:interface|protocol)\s+(\w+)"),
        lambda m: ("interface", m.group(1)),
    ),
    (
        re.compile(r"^\s*(?:(?:public|private|protected|internal|static)\s+)*fun\s+(\w+)"),
        lambda m: ("function", m.group(1)),
    ),
    (re.compile(r"^\s*func\s+(\w+)"), lambda m: ("function", m.group(1))),
]

_DECLS_BY_LANGUAGE = {
    "javascript": _JS_DECLS,
    "typescript": _JS_DECLS,
    "go": _GO_DECLS,
    "rust": _RUST_DECLS,
}

_IMPORT_PATTERNS = {
    "javascript": [
        re.compile(r"^\s*import\s+(?:[^'\"]*?\s+from\s+)?['\"]([^'\"]+)['\"]", re.M),
        re.compile(r"\brequire\(\s*['\"]([^'\"]+)['\"]\s*\)"),
    ],
    "go": [re.compile(r"^\s*(?:import\s+)?(?:\w+\s+)?\"([^\"]+)\"\s*$", re.M)],
    "rust": [re.compile(r"^\s*(?:pub\s+)?use\s+([\w:]+)", re.M)],
    "java": [re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+)", re.M)],
    "kotlin": [re.compile(r"^\s*import\s+([\w.]+)", re.M)],
    "csharp": [re.compile(r"^\s*using\s+([\w.]+)\s*;", re.M)],
    "c": [re.compile(r"^\s*#\s*include\s+[<\"]([^>\"]+)[>\"]", re.M)],
    "cpp": [re.compile(r"^\s*#\s*include\s+[<\"]([^>\"]+)[>\"]", re.M)],
}
_IMPORT_PATTERNS["typescript"] = _IMPORT_PATTERNS["javascript"]


def find_block_end(lines: list[str], start_index: int) -> int:
    """Index of the line closing the brace block opened at or after ``start_index``.

    A declaration terminated by ``;`` before any ``{`` ends on that line.
    """
    depth = 0
    opened = False
    for idx in range(start_index, len(lines)):
        line = lines[idx]
        quote: str | None = None
        pos = 0
        while pos < len(line):
            ch = line[pos]
            if quote:
                if ch == "\\":
                    pos += 2
                    continue
                if ch == quote:
                    quote = None
            elif ch in ("'", '"', "`"):
                quote = ch
            elif ch == "/" and line.startswith("//", pos):
                break
            elif ch == "{":
                depth += 1
                opened = True
            elif ch == "}":
                depth -= 1
                if opened and depth <= 0:
                    return idx
            elif ch == ";" and not opened:
                return idx
            pos += 1
        if not opened and idx > start_index + 5:
            return start_index
    return len(lines) - 1 if opened else start_index


def _imports_for(language: str, text: str) -> list[str]:
    found: set[str] = set()
    for pattern in _IMPORT_PATTERNS.get(language, []):
        found.update(m.group(1) for m in pattern.finditer(text))
    return sorted(found)


def extract_brace_language(path: str, text: str, language: str) -> ExtractedFile:
    lines = text.splitlines()
    imports = _imports_for(language, text)
    patterns = _DECLS_BY_LANGUAGE.get(language, _GENERIC_DECLS)
    docs: list[Document] = []
    for idx, line in enumerate(lines):
        for pattern, describe in patterns:
            match = pattern.match(line)
            if not match:
                continue
            doc_type, name = describe(match)
            end_idx = find_block_end(lines, idx)
            docs.append(
                _make(path, doc_type, name, idx + 1, end_idx + 1, language,
                      _line_slice(lines, idx + 1, end_idx + 1), imports)
            )
            break
    if not docs:
        docs = extract_module_chunks(path, text, language, imports)
    return ExtractedFile(documents=docs, imports=imports)


def extract_documents(path: str, text: str, language: str) -> ExtractedFile:
    """Dispatch to the extractor for ``language``."""
    if language == "python":
        return extract_python(path, text)
    if language == "markdown":
        return extract_markdown(path, text)
    if language in BRACE_LANGUAGES:
        return extract_brace_language(path, text, language)
    imports = _imports_for(language, text)
    return ExtractedFile(
        documents=extract_module_chunks(path, text, language, imports), imports=imports
    )
