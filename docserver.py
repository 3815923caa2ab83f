#!/usr/bin/env python3

"""
docserver: a small Flask server to browse a directory tree as documentation.
Directory listings, rendered Markdown, highlighted source, HTML pages with a
navigation header, and Mermaid diagrams. Read-only, meant for localhost.
"""

import argparse
import html
import logging
import mimetypes
import os
import re
import stat
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable
from urllib.parse import quote, unquote_to_bytes, urlsplit

import markdown
from flask import Flask, Response, render_template_string, request, send_file
from markdown.extensions import Extension
from markdown.preprocessors import Preprocessor
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound
from werkzeug.exceptions import (
    BadRequest,
    Forbidden,
    HTTPException,
    InternalServerError,
    NotFound,
)

log = logging.getLogger(__name__)

# -------------------------------------------------------
# Configuration / constants
# -------------------------------------------------------
DEFAULT_PORT = 4040
# Validated with the command-line port, so a bad value fails the same way
PORT_SETTING = os.getenv("DOCSERVER_PORT", str(DEFAULT_PORT))
DEFAULT_HOST = os.getenv("DOCSERVER_HOST", "127.0.0.1")
DEFAULT_LOG_LEVEL = os.getenv("DOCSERVER_LOG_LEVEL", "INFO")
IGNORE_FILE_NAME = os.getenv("DOCSERVER_IGNORE_FILE", ".gitignore")

HIDDEN_PREFIX = "."
BINARY_SNIFF_BYTES = 4096
MERMAID_JS_URL = "https://cdn.jsdelivr.net/npm/mermaid@10/dist/mermaid.min.js"


@dataclass(frozen=True)
class ServerConfig:
    root: Path
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST


# -------------------------------------------------------
# Errors
# -------------------------------------------------------
class ConfigurationError(Exception):
    """Bad command-line input. Fatal, raised before any socket is bound."""


class MalformedPath(BadRequest):
    description = "Bad request: malformed path"


class SecurityViolation(Forbidden):
    description = "Access denied: Path outside of root directory"


class PathNotFound(NotFound):
    # Shared by missing and ignored paths so the two can't be told apart.
    description = "File not found"


class TransientIOError(InternalServerError):
    description = "Internal server error"


# -------------------------------------------------------
# Path guard
# -------------------------------------------------------
def is_contained(root: str, candidate: str) -> bool:
    """True when ``candidate`` is ``root`` itself or lexically below it."""
    if "\x00" in candidate:
        return False
    try:
        rel = os.path.relpath(candidate, root)
    except ValueError:
        # Different drives on Windows
        return False
    if rel == os.curdir:
        return True
    if rel == os.pardir or rel.startswith(os.pardir + os.sep):
        return False
    return not os.path.isabs(rel)


def join_request_path(root: str, requested: str) -> str:
    """Join a decoded URL path onto ``root``. The URL can never replace the root."""
    relative = requested.lstrip("/" + os.sep)
    return os.path.normpath(os.path.join(root, relative))


_BAD_ESCAPE_RE = re.compile(rb"%(?![0-9A-Fa-f]{2})")


def decode_request_path(raw: bytes | str) -> str:
    """Strict percent-decoding of a request path.

    Raises ``MalformedPath`` for a ``%`` not followed by two hex digits or
    for bytes that are not valid UTF-8.
    """
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    if _BAD_ESCAPE_RE.search(raw):
        raise MalformedPath()
    try:
        return unquote_to_bytes(raw).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPath() from exc


# -------------------------------------------------------
# Ignore rules (.gitignore semantics)
# -------------------------------------------------------
def _translate_glob(pattern: str) -> str:
    """Translate one gitignore glob into a regex body. ``*`` never crosses ``/``."""
    out = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**", i):
                j = i + 2
                at_segment_start = i == 0 or pattern[i - 1] == "/"
                if at_segment_start and j < n and pattern[j] == "/":
                    out.append("(?:.*/)?")
                    i = j + 1
                    continue
                if at_segment_start and j == n:
                    out.append(".*")
                    i = j
                    continue
                i = j
            else:
                i += 1
            out.append("[^/]*")
            continue
        if c == "?":
            out.append("[^/]")
        elif c == "[":
            j = pattern.find("]", i + 2)
            if j == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1 : j].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                elif body.startswith("^"):
                    body = "\\" + body
                out.append(f"[{body}]")
                i = j + 1
                continue
        elif c == "\\" and i + 1 < n:
            i += 1
            out.append(re.escape(pattern[i]))
        else:
            out.append(re.escape(c))
        i += 1
    return "".join(out)


@dataclass(frozen=True)
class IgnoreRule:
    pattern: str
    regex: re.Pattern
    negated: bool = False
    dir_only: bool = False
    # Root's path relative to the directory holding the ignore file ("" for the root itself)
    base: str = ""

    def matches(self, rel_posix: str, is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        target = f"{self.base}/{rel_posix}" if self.base else rel_posix
        return self.regex.fullmatch(target) is not None


def compile_rule(line: str, base: str = "") -> IgnoreRule | None:
    """Compile one ignore-file line; ``None`` for blanks and comments."""
    text = line.rstrip("\r\n")
    trimmed = text.rstrip(" ")
    if trimmed.endswith("\\") and len(trimmed) < len(text):
        trimmed += " "
    text = trimmed
    if not text or text.startswith("#"):
        return None

    negated = False
    if text.startswith("!"):
        negated = True
        text = text[1:]
    elif text.startswith(("\\!", "\\#")):
        text = text[1:]

    dir_only = text.endswith("/")
    text = text.rstrip("/")
    if not text:
        return None

    # A slash anywhere but the end anchors the pattern to its ignore file
    anchored = "/" in text
    body = _translate_glob(text.lstrip("/"))
    if not anchored:
        body = "(?:.*/)?" + body
    return IgnoreRule(
        pattern=line.strip(),
        regex=re.compile(body, re.DOTALL),
        negated=negated,
        dir_only=dir_only,
        base=base,
    )


def parse_ignore_lines(lines, base: str = "") -> list[IgnoreRule]:
    rules = []
    for line in lines:
        rule = compile_rule(line, base)
        if rule is not None:
            rules.append(rule)
    return rules


IMPLICIT_GIT_RULE = compile_rule(".git")


@dataclass(frozen=True)
class IgnoreRuleSet:
    rules: tuple[IgnoreRule, ...] = (IMPLICIT_GIT_RULE,)

    def __post_init__(self):
        # .git is hidden whatever else the rule set says
        if IMPLICIT_GIT_RULE not in self.rules:
            object.__setattr__(self, "rules", (IMPLICIT_GIT_RULE, *self.rules))

    def _last_match_ignores(self, rel_posix: str, is_dir: bool) -> bool:
        ignored = False
        for rule in self.rules:
            if rule.matches(rel_posix, is_dir):
                ignored = not rule.negated
        return ignored

    def ignores(self, rel_posix: str, is_dir: bool = False) -> bool:
        """Later rules win; nothing below an ignored directory can be re-included."""
        parts = rel_posix.split("/")
        if IMPLICIT_GIT_RULE.pattern in parts:
            return True
        for depth in range(1, len(parts)):
            if self._last_match_ignores("/".join(parts[:depth]), True):
                return True
        return self._last_match_ignores(rel_posix, is_dir)


class IgnoreEngine:
    """Ignore rules per served root, built on first use and cached.

    The cache is never invalidated on its own: editing an ignore file after the
    first request for a root has no effect until ``clear()`` is called.

    There is no lock around the cache. Two concurrent first requests for the
    same root may both build the rule set; the builds are identical and the
    last one stored wins.
    """

    def __init__(self, ignore_file_name: str = IGNORE_FILE_NAME):
        self.ignore_file_name = ignore_file_name
        self._cache: dict[str, IgnoreRuleSet] = {}

    def clear(self) -> None:
        self._cache.clear()

    def seed(self, root, rule_set: IgnoreRuleSet) -> None:
        self._cache[os.path.abspath(root)] = rule_set

    def load_rules(self, root) -> IgnoreRuleSet:
        key = os.path.abspath(root)
        rule_set = self._cache.get(key)
        if rule_set is None:
            rule_set = self._build(key)
            self._cache[key] = rule_set
        return rule_set

    def _build(self, root: str) -> IgnoreRuleSet:
        found = []  # (ignore file, base), root first
        visited = set()
        prefix = []
        current = root
        while current not in visited:
            visited.add(current)
            candidate = os.path.join(current, self.ignore_file_name)
            if os.path.isfile(candidate):
                found.append((candidate, "/".join(reversed(prefix))))
            parent = os.path.dirname(current)
            if parent == current:
                break
            prefix.append(os.path.basename(current))
            current = parent

        rules = [IMPLICIT_GIT_RULE]
        # Outermost ancestor first so deeper files override it, as git does
        for ignore_path, base in reversed(found):
            try:
                with open(ignore_path, encoding="utf-8") as fh:
                    lines = fh.read().splitlines()
            except (OSError, UnicodeDecodeError) as exc:
                log.warning("Could not read ignore file %s: %s", ignore_path, exc)
                continue
            rules.extend(parse_ignore_lines(lines, base))
        log.debug("Loaded %d ignore rules for %s", len(rules), root)
        return IgnoreRuleSet(tuple(rules))

    def should_ignore(self, path, root) -> bool:
        try:
            rel = os.path.relpath(path, root)
        except ValueError:
            return False
        if rel == os.curdir:
            return False
        # Out-of-root paths are the path guard's business, not ours
        if rel == os.pardir or rel.startswith(os.pardir + os.sep) or os.path.isabs(rel):
            return False
        rel_posix = rel.replace(os.sep, "/")
        if os.altsep:
            rel_posix = rel_posix.replace(os.altsep, "/")
        return self.load_rules(root).ignores(rel_posix, os.path.isdir(path))


# -------------------------------------------------------
# Classification
# -------------------------------------------------------
class Language(str, Enum):
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    PYTHON = "python"
    JAVA = "java"
    CPP = "cpp"
    C = "c"
    CSS = "css"
    HTML = "html"
    XML = "xml"
    JSON = "json"
    YAML = "yaml"
    BASH = "bash"
    PHP = "php"
    RUBY = "ruby"
    GO = "go"
    RUST = "rust"
    SQL = "sql"


class FileType(str, Enum):
    DIRECTORY = "directory"
    MARKDOWN = "markdown"
    HTML = "html"
    JAVASCRIPT = "javascript"
    TYPESCRIPT = "typescript"
    JSON = "json"
    CSS = "css"
    PYTHON = "python"
    TEXT = "text"
    YAML = "yaml"
    FILE = "file"


class ContentKind(Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    MERMAID = "mermaid"
    SOURCE = "source"
    PLAIN = "plain"


EXT_TO_LANG = {
    ".js": Language.JAVASCRIPT,
    ".ts": Language.TYPESCRIPT,
    ".py": Language.PYTHON,
    ".java": Language.JAVA,
    ".cpp": Language.CPP,
    ".c": Language.C,
    ".css": Language.CSS,
    ".html": Language.HTML,
    ".xml": Language.XML,
    ".json": Language.JSON,
    ".yml": Language.YAML,
    ".yaml": Language.YAML,
    ".sh": Language.BASH,
    ".php": Language.PHP,
    ".rb": Language.RUBY,
    ".go": Language.GO,
    ".rs": Language.RUST,
    ".sql": Language.SQL,
}

EXT_TO_FILE_TYPE = {
    ".md": FileType.MARKDOWN,
    ".html": FileType.HTML,
    ".htm": FileType.HTML,
    ".js": FileType.JAVASCRIPT,
    ".ts": FileType.TYPESCRIPT,
    ".json": FileType.JSON,
    ".css": FileType.CSS,
    ".py": FileType.PYTHON,
    ".txt": FileType.TEXT,
    ".yml": FileType.YAML,
    ".yaml": FileType.YAML,
}

MARKDOWN_EXTS = {".md", ".markdown"}
HTML_EXTS = {".html", ".htm"}
MERMAID_EXTS = {".mmd", ".mermaid"}

SHEBANGS = (
    ("#!/usr/bin/env node", Language.JAVASCRIPT),
    ("#!/usr/bin/node", Language.JAVASCRIPT),
    ("#!/usr/bin/env python", Language.PYTHON),
    ("#!/usr/bin/python", Language.PYTHON),
    ("#!/bin/bash", Language.BASH),
    ("#!/bin/sh", Language.BASH),
)
JAVASCRIPT_HINTS = ("function ", "const ", "let ", "var ", "class ", "console.log")
PYTHON_HINTS = ("def ", "import ", "from ", "print(")


@dataclass(frozen=True)
class Classification:
    language: Language | None = None
    is_markdown: bool = False
    is_html: bool = False
    is_mermaid: bool = False

    @property
    def kind(self) -> ContentKind:
        if self.is_html:
            return ContentKind.HTML
        if self.is_markdown:
            return ContentKind.MARKDOWN
        if self.is_mermaid:
            return ContentKind.MERMAID
        if self.language is not None:
            return ContentKind.SOURCE
        return ContentKind.PLAIN


def _extension(file_path) -> str:
    _, ext = os.path.splitext(os.fspath(file_path))
    return ext.lower()


def is_markdown_extension(file_path) -> bool:
    return _extension(file_path) in MARKDOWN_EXTS


def is_html_extension(file_path) -> bool:
    return _extension(file_path) in HTML_EXTS


def is_mermaid_extension(file_path) -> bool:
    return _extension(file_path) in MERMAID_EXTS


def file_type_for(ext: str) -> FileType:
    return EXT_TO_FILE_TYPE.get(ext.lower(), FileType.FILE)


def detect_language(file_path, content: str) -> Language | None:
    """Language by extension, or by sniffing the content when there is no extension."""
    ext = _extension(file_path)
    if ext:
        return EXT_TO_LANG.get(ext)

    first_line = content.split("\n", 1)[0]
    for marker, language in SHEBANGS:
        if marker in first_line:
            return language
    if any(hint in content for hint in JAVASCRIPT_HINTS):
        return Language.JAVASCRIPT
    if any(hint in content for hint in PYTHON_HINTS):
        return Language.PYTHON
    return None


def classify(file_path, content: str) -> Classification:
    return Classification(
        language=detect_language(file_path, content),
        is_markdown=is_markdown_extension(file_path),
        is_html=is_html_extension(file_path),
        is_mermaid=is_mermaid_extension(file_path),
    )


# Python's built-in table only (no /etc/mime.types), plus text types for
# everything the classifier can render so hosts agree on what is text.
_MIME_TYPES = mimetypes.MimeTypes()
for _ext, _mime in {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".mmd": "text/x-mermaid",
    ".mermaid": "text/x-mermaid",
    ".ts": "text/x-typescript",
    ".py": "text/x-python",
    ".java": "text/x-java",
    ".cpp": "text/x-c++src",
    ".c": "text/x-csrc",
    ".xml": "text/xml",
    ".yml": "text/yaml",
    ".yaml": "text/yaml",
    ".sh": "text/x-sh",
    ".php": "text/x-php",
    ".rb": "text/x-ruby",
    ".go": "text/x-go",
    ".rs": "text/x-rust",
    ".sql": "text/x-sql",
    ".txt": "text/plain",
}.items():
    _MIME_TYPES.add_type(_mime, _ext)

TEXT_APPLICATION_TYPES = {"application/javascript", "application/json"}


def guess_mime_type(file_path) -> str | None:
    ext = _extension(file_path)
    if not ext:
        return None
    mime, _ = _MIME_TYPES.guess_type("file" + ext, strict=False)
    return mime


def sniff_mime_type(file_path) -> str | None:
    """``text/plain`` for an extensionless file with no NUL byte in its head."""
    if _extension(file_path):
        return None
    with open(file_path, "rb") as f:
        head = f.read(BINARY_SNIFF_BYTES)
    if b"\x00" in head:
        return None
    return "text/plain"


def is_text_mime_type(mime: str | None) -> bool:
    if not mime:
        return False
    return mime.startswith("text/") or mime in TEXT_APPLICATION_TYPES


# -------------------------------------------------------
# Directory listing
# -------------------------------------------------------
@dataclass(frozen=True)
class FileEntry:
    name: str
    path: str
    is_dir: bool
    size: int | None
    modified: datetime
    extension: str
    type: FileType


def get_file_info(file_path: str) -> FileEntry:
    st = os.stat(file_path)
    is_dir = stat.S_ISDIR(st.st_mode)
    ext = _extension(file_path)
    return FileEntry(
        name=os.path.basename(file_path),
        path=file_path,
        is_dir=is_dir,
        size=None if is_dir else st.st_size,
        modified=datetime.fromtimestamp(st.st_mtime),
        extension=ext,
        type=FileType.DIRECTORY if is_dir else file_type_for(ext),
    )


def _sort_key(entry: FileEntry):
    # Lowercase before uppercase when names differ only in case
    return (not entry.is_dir, entry.name.casefold(), entry.name.swapcase())


def list_directory(directory: str, root: str, ignore_engine: IgnoreEngine) -> list[FileEntry]:
    """Immediate children only: dotfiles and ignored entries dropped, directories first."""
    entries = []
    with os.scandir(directory) as it:
        for e in it:
            if e.name.startswith(HIDDEN_PREFIX):
                continue
            if ignore_engine.should_ignore(e.path, root):
                continue
            try:
                entries.append(get_file_info(e.path))
            except FileNotFoundError:
                log.debug("Skipping %s: vanished or dangling link", e.path)

    entries.sort(key=_sort_key)
    return entries


def format_file_size(size: int) -> str:
    if size == 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            break
        value /= 1024
    return f"{round(value, 1):g} {unit}"


# -------------------------------------------------------
# Markdown: pluggable fenced code block handling
# -------------------------------------------------------
CodeBlockHandler = Callable[[str, str], "str | None"]


def mermaid_code_block(code: str, info: str) -> str | None:
    """Diagram placeholder for ```mermaid fences; ``None`` keeps default highlighting."""
    words = info.split()
    if not words or words[0].lstrip(".{").rstrip("}").lower() != "mermaid":
        return None
    return f'<pre class="mermaid">{html.escape(code)}</pre>'


class CodeBlockPreprocessor(Preprocessor):
    FENCE_RE = re.compile(
        r"^(?P<fence>`{3,}|~{3,})[ \t]*(?P<info>[^`\n]*)\n(?P<code>.*?)^(?P=fence)[ \t]*$",
        re.MULTILINE | re.DOTALL,
    )

    def __init__(self, md, handler: CodeBlockHandler):
        super().__init__(md)
        self.handler = handler

    def run(self, lines):
        def replace(m):
            code = m.group("code")
            if code.endswith("\n"):
                code = code[:-1]
            rendered = self.handler(code, m.group("info").strip())
            if rendered is None:
                return m.group(0)
            return "\n\n" + self.md.htmlStash.store(rendered) + "\n\n"

        return self.FENCE_RE.sub(replace, "\n".join(lines)).split("\n")


class CodeBlockExtension(Extension):
    def __init__(self, handler: CodeBlockHandler = mermaid_code_block, **kwargs):
        self.handler = handler
        super().__init__(**kwargs)

    def extendMarkdown(self, md):
        # After whitespace normalisation (30), before fenced_code (25)
        md.preprocessors.register(CodeBlockPreprocessor(md, self.handler), "code_block_handler", 28)


def render_markdown(text: str, code_block_handler: CodeBlockHandler = mermaid_code_block) -> str:
    return markdown.markdown(
        text,
        extensions=["fenced_code", "tables", "toc", "codehilite", CodeBlockExtension(code_block_handler)],
        extension_configs={"codehilite": {"guess_lang": False}},
    )


def highlight_source(content: str, language: Language) -> str:
    try:
        lexer = get_lexer_by_name(language.value)
    except ClassNotFound:
        return _plain_block(content)
    return highlight(content, lexer, HtmlFormatter(cssclass="highlight"))


def _plain_block(content: str) -> str:
    return f"<pre><code>{html.escape(content)}</code></pre>"


# -------------------------------------------------------
# Front-end HTML
# -------------------------------------------------------
BASE_CSS = r"""
body { font-family: Arial, sans-serif; margin: 20px; line-height: 1.6; transition: background-color 0.3s, color 0.3s; }
a { text-decoration: none; color: #0066cc; }
a:hover { text-decoration: underline; }
.breadcrumb, .header, .nav-header { background: #f5f5f5; padding: 10px 15px; border-radius: 4px; margin-bottom: 20px; }
.back-button { margin-bottom: 10px; }
.file-title, .nav-header h2 { margin: 0; color: #333; }
table { width: 100%; border-collapse: collapse; }
th, td { padding: 8px; text-align: left; border-bottom: 1px solid #ddd; }
th { background-color: #f2f2f2; }
pre { background: #f8f8f8; padding: 15px; border-radius: 4px; overflow-x: auto; }
code { font-family: 'Courier New', monospace; }
pre.mermaid { background: transparent; }
.theme-toggle { position: fixed; top: 20px; right: 20px; background: #007acc; color: white; border: none;
  padding: 10px 15px; border-radius: 5px; cursor: pointer; font-size: 16px; z-index: 1000; }
.theme-toggle:hover { background: #005a9e; }

[data-theme="dark"] { background-color: #1a1a1a; color: #e0e0e0; }
[data-theme="dark"] .breadcrumb, [data-theme="dark"] .header, [data-theme="dark"] .nav-header,
[data-theme="dark"] th, [data-theme="dark"] pre { background: #2d2d2d; }
[data-theme="dark"] th, [data-theme="dark"] td { border-bottom: 1px solid #404040; }
[data-theme="dark"] .file-title, [data-theme="dark"] .nav-header h2 { color: #e0e0e0; }
[data-theme="dark"] a { color: #66b3ff; }
[data-theme="dark"] .theme-toggle { background: #404040; }
[data-theme="dark"] .theme-toggle:hover { background: #555555; }
"""

THEME_JS = r"""
function applyTheme(theme) {
  document.body.setAttribute('data-theme', theme);
  const button = document.querySelector('.theme-toggle');
  if (button) button.textContent = theme === 'dark' ? '☀️' : '🌙';
}
function toggleTheme() {
  const next = document.body.getAttribute('data-theme') === 'dark' ? 'light' : 'dark';
  localStorage.setItem('theme', next);
  applyTheme(next);
}
applyTheme(localStorage.getItem('theme') || 'light');
"""

PYGMENTS_CSS = HtmlFormatter().get_style_defs([".highlight", ".codehilite"])

MERMAID_TEMPLATE = r"""
<script src="{{ mermaid_js }}"></script>
<script>
  mermaid.initialize({
    startOnLoad: true,
    theme: (localStorage.getItem('theme') || 'light') === 'dark' ? 'dark' : 'default'
  });
</script>
"""

DIRECTORY_TEMPLATE = r"""
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <title>Directory: {{ title }}</title>
  <style>{{ css|safe }}</style>
</head>
<body>
  <button class="theme-toggle" onclick="toggleTheme()">🌙</button>

  <div class="breadcrumb">
    <a href="/">📁 Root</a>{% for crumb in crumbs %} / <a href="{{ crumb.href }}">{{ crumb.name }}</a>{% endfor %}
  </div>

  {% if back_href %}<div class="back-button"><a href="{{ back_href }}">&larr; Back</a></div>{% endif %}

  <h1>📁 {{ heading }}</h1>

  <table>
    <thead>
      <tr><th>Name</th><th>Size</th><th>Modified</th><th>Type</th></tr>
    </thead>
    <tbody>
    {% for row in rows %}
      <tr>
        <td><a href="{{ row.href }}">{{ row.icon }} {{ row.name }}</a></td>
        <td>{{ row.size }}</td>
        <td>{{ row.modified }}</td>
        <td>{{ row.type }}</td>
      </tr>
    {% endfor %}
    </tbody>
  </table>

  <script>{{ theme_js|safe }}</script>
</body>
</html>
"""

FILE_TEMPLATE = r"""
<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <title>{{ name }}</title>
  <style>{{ css|safe }}</style>
  <style>{{ pygments_css|safe }}</style>
</head>
<body>
  <button class="theme-toggle" onclick="toggleTheme()">🌙</button>

  <div class="header">
    <div class="back-button"><a href="{{ back_href }}">&larr; Back</a></div>
    <h1 class="file-title">📄 {{ name }}</h1>
  </div>

  <div class="content">
    {{ body|safe }}
  </div>

  <script>{{ theme_js|safe }}</script>
  {% if mermaid %}{{ mermaid|safe }}{% endif %}
</body>
</html>
"""

NAV_STYLE_TEMPLATE = r"""
<style>{{ css|safe }}</style>
"""

NAV_HEADER_TEMPLATE = r"""
<button class="theme-toggle" onclick="toggleTheme()">🌙</button>
<div class="nav-header">
  <a href="{{ back_href }}">&larr; Back</a>
  <h2>📄 {{ name }}</h2>
</div>
<script>{{ theme_js|safe }}</script>
"""

FILE_ICONS = {
    FileType.DIRECTORY: "📁",
    FileType.MARKDOWN: "📝",
    FileType.HTML: "🌐",
    FileType.JAVASCRIPT: "📜",
    FileType.TYPESCRIPT: "📜",
    FileType.JSON: "📋",
    FileType.CSS: "🎨",
    FileType.PYTHON: "🐍",
    FileType.TEXT: "📄",
    FileType.YAML: "⚙️",
    FileType.FILE: "📄",
}

_HEAD_TAG_RE = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_BODY_TAG_RE = re.compile(r"<body(?:\s[^>]*)?>", re.IGNORECASE)


def _url_for(parts) -> str:
    return "/" + quote("/".join(parts))


class HtmlRenderer:
    """Turns listings and classified file content into full HTML pages.

    Uses ``render_template_string``, so it must run inside a Flask app context.
    """

    def render_directory(self, entries: list[FileEntry], current_path: str, root) -> str:
        parts = [p for p in current_path.split("/") if p]
        crumbs = [{"name": part, "href": _url_for(parts[: i + 1])} for i, part in enumerate(parts)]
        rows = [
            {
                "name": entry.name,
                "href": _url_for(parts + [entry.name]),
                "icon": FILE_ICONS[entry.type],
                "size": "-" if entry.is_dir else format_file_size(entry.size or 0),
                "modified": entry.modified.strftime("%Y-%m-%d"),
                "type": entry.type.value,
            }
            for entry in entries
        ]
        relative = "/".join(parts)
        return render_template_string(
            DIRECTORY_TEMPLATE,
            title=relative or "Root",
            heading=relative or f"Root Directory ({os.path.basename(os.fspath(root)) or root})",
            crumbs=crumbs,
            back_href=_url_for(parts[:-1]) if parts else None,
            rows=rows,
            css=BASE_CSS,
            theme_js=THEME_JS,
        )

    def render_file(self, name: str, content: str, path: str, classification: Classification) -> str:
        back_href = _url_for([p for p in path.split("/") if p][:-1])
        kind = classification.kind

        if kind is ContentKind.HTML:
            return self.inject_navigation(content, name, back_href)
        if kind is ContentKind.MARKDOWN:
            body = render_markdown(content)
        elif kind is ContentKind.MERMAID:
            body = f'<pre class="mermaid">{html.escape(content)}</pre>'
        elif kind is ContentKind.SOURCE:
            body = highlight_source(content, classification.language)
        else:
            body = _plain_block(content)

        mermaid = None
        if kind is ContentKind.MERMAID or 'class="mermaid"' in body:
            mermaid = render_template_string(MERMAID_TEMPLATE, mermaid_js=MERMAID_JS_URL)
        return render_template_string(
            FILE_TEMPLATE,
            name=name,
            back_href=back_href,
            body=body,
            css=BASE_CSS,
            pygments_css=PYGMENTS_CSS,
            theme_js=THEME_JS,
            mermaid=mermaid,
        )

    def inject_navigation(self, content: str, name: str, back_href: str) -> str:
        """Add the nav header and theme toggle to a served HTML page, leaving the rest untouched."""
        style = render_template_string(NAV_STYLE_TEMPLATE, css=BASE_CSS)
        header = render_template_string(NAV_HEADER_TEMPLATE, name=name, back_href=back_href, theme_js=THEME_JS)

        content, head_found = _HEAD_TAG_RE.subn(lambda m: m.group(0) + style, content, count=1)
        content, body_found = _BODY_TAG_RE.subn(lambda m: m.group(0) + header, content, count=1)
        if not body_found:
            content = header + content
        if not head_found:
            content = style + content
        return content


# -------------------------------------------------------
# Flask app
# -------------------------------------------------------
def _raw_request_path() -> bytes | str:
    """The request path as sent by the client, before any percent-decoding."""
    raw_uri = request.environ.get("RAW_URI") or request.environ.get("REQUEST_URI")
    if not raw_uri:
        return quote(request.path)
    if not raw_uri.startswith("/"):
        raw_uri = urlsplit(raw_uri).path or "/"
    raw_uri = raw_uri.split("?", 1)[0].split("#", 1)[0]
    # WSGI hands over the raw bytes as latin-1
    return raw_uri.encode("latin-1", errors="replace")


def create_app(
    config: ServerConfig,
    ignore_engine: IgnoreEngine | None = None,
    renderer: HtmlRenderer | None = None,
) -> Flask:
    app = Flask(__name__)
    app.config["DOCSERVER"] = config
    # Paths reach the view exactly as requested; the guard decides
    app.url_map.merge_slashes = False

    root = os.fspath(config.root)
    engine = ignore_engine if ignore_engine is not None else IgnoreEngine()
    page_renderer = renderer if renderer is not None else HtmlRenderer()

    @app.errorhandler(HTTPException)
    def plain_text_error(exc):
        # Keep werkzeug's headers (Allow on 405), swap the HTML page for one line
        response = exc.get_response()
        response.set_data(exc.description)
        response.mimetype = "text/plain"
        return response

    def directory_response(full_path: str, current_path: str) -> Response:
        entries = list_directory(full_path, root, engine)
        body = page_renderer.render_directory(entries, current_path, root)
        return Response(body, mimetype="text/html")

    def file_response(full_path: str, current_path: str) -> Response:
        mime = guess_mime_type(full_path) or sniff_mime_type(full_path)
        if not is_text_mime_type(mime):
            return send_file(full_path, etag=False)

        with open(full_path, encoding="utf-8", errors="replace") as f:
            content = f.read()
        classification = classify(full_path, content)
        body = page_renderer.render_file(os.path.basename(full_path), content, current_path, classification)
        return Response(body, mimetype="text/html")

    @app.route("/", defaults={"req_path": ""}, methods=["GET"])
    @app.route("/<path:req_path>", methods=["GET"])
    def serve_path(req_path):
        requested = decode_request_path(_raw_request_path())
        full_path = join_request_path(root, requested)

        if not is_contained(root, full_path) and full_path != root:
            log.warning("Refused path outside root: %r", requested)
            raise SecurityViolation()

        if engine.should_ignore(full_path, root):
            raise PathNotFound()
        if not os.path.exists(full_path):
            raise PathNotFound()

        rel = os.path.relpath(full_path, root)
        current_path = "" if rel == os.curdir else "/" + rel.replace(os.sep, "/")
        try:
            st = os.stat(full_path)
            if stat.S_ISDIR(st.st_mode):
                return directory_response(full_path, current_path)
            return file_response(full_path, current_path)
        except OSError as exc:
            log.exception("Error serving %s", full_path)
            raise TransientIOError() from exc

    return app


# -------------------------------------------------------
# Command line
# -------------------------------------------------------
def configure_logging(log_level: int | str = DEFAULT_LOG_LEVEL) -> logging.Logger:
    resolved_level = (
        log_level if isinstance(log_level, int) else getattr(logging, str(log_level).upper(), logging.INFO)
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(resolved_level)
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(resolved_level)
    handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    root_logger.addHandler(handler)
    return root_logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="docserver",
        description="Browse a directory as rendered documentation over HTTP.",
    )
    parser.add_argument(
        "directory",
        nargs="?",
        default=os.getcwd(),
        help="Directory to serve (default: current directory).",
    )
    parser.add_argument(
        "port",
        nargs="?",
        default=None,
        help=f"Port to listen on, 1-65535 (default: $DOCSERVER_PORT or {DEFAULT_PORT}).",
    )
    parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Host interface to bind (default: {DEFAULT_HOST}).",
    )
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LOG_LEVEL,
        help=f"Logging level (default: {DEFAULT_LOG_LEVEL}).",
    )
    return parser.parse_args(argv)


def parse_port(value) -> int:
    text = str(value)
    # Plain ASCII digits only: no sign, whitespace or underscores
    port = int(text) if text.isascii() and text.isdigit() else 0
    if not 1 <= port <= 65535:
        raise ConfigurationError("Port must be a number between 1 and 65535")
    return port


def build_config(args: argparse.Namespace) -> ServerConfig:
    port = parse_port(PORT_SETTING if args.port is None else args.port)
    root = Path(args.directory).expanduser().resolve()
    if not root.exists():
        raise ConfigurationError(f'Directory "{root}" does not exist.')
    if not root.is_dir():
        raise ConfigurationError(f'"{root}" is not a directory.')
    return ServerConfig(root=root, port=port, host=args.host)


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1

    configure_logging(args.log_level)
    try:
        config = build_config(args)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    app = create_app(config)
    print(f"Starting docs server on http://{config.host}:{config.port}")
    print(f"Serving directory: {config.root}")
    try:
        app.run(host=config.host, port=config.port, threaded=True)
    except OSError as e:
        print(f"Error: Could not start server: {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
