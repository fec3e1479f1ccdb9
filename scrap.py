#!/usr/bin/env python3
"""Scrap — a terminal notebook for tagged markdown notes."""

from __future__ import annotations

import functools
import json
import os
import re
import select
import signal
import shlex
import shutil
import sqlite3
import subprocess
import sys
import tempfile
import time
from collections import Counter, deque
from contextlib import ExitStack, contextmanager, suppress
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator, Mapping, Optional, Sequence

import click
import httpx
from loguru import logger
from markdown_it import MarkdownIt
from prompt_toolkit.data_structures import Size
from prompt_toolkit.formatted_text import StyleAndTextTuples
from prompt_toolkit.input import Input, create_input
from prompt_toolkit.key_binding.key_processor import KeyPress
from prompt_toolkit.keys import Keys
from prompt_toolkit.output import Output, create_output
from prompt_toolkit.renderer import print_formatted_text
from prompt_toolkit.styles import Style as PtStyle
from prompt_toolkit.utils import get_cwidth

# ════════════════════════════════════════════════════════════════════════
#  Configuration
# ════════════════════════════════════════════════════════════════════════

DEFAULT_SUMMARY_MODEL = "claude-sonnet-4-20250514"
DEFAULT_SUMMARY_TIMEOUT = 30.0
EDITOR_CANDIDATES = ("nvim", "vim", "vi", "nano", "emacs")
ESCAPE_TIMEOUT = 0.05
TAB_SIZE = 4


@dataclass
class Settings:
    """Runtime settings, read from the environment."""
    home: Path
    editor: Optional[str] = None
    api_key: Optional[str] = None
    summary_model: str = DEFAULT_SUMMARY_MODEL
    summary_timeout: float = DEFAULT_SUMMARY_TIMEOUT
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> Settings:
        if environ.get("SCRAP_HOME"):
            home = Path(environ["SCRAP_HOME"]).expanduser()
        else:
            home = Path.home() / ".scrap"
        try:
            timeout = float(environ.get("SCRAP_SUMMARY_TIMEOUT", DEFAULT_SUMMARY_TIMEOUT))
        except ValueError:
            timeout = DEFAULT_SUMMARY_TIMEOUT
        return cls(
            home=home,
            editor=environ.get("VISUAL") or environ.get("EDITOR") or None,
            api_key=environ.get("ANTHROPIC_API_KEY") or None,
            summary_model=environ.get("SCRAP_SUMMARY_MODEL", DEFAULT_SUMMARY_MODEL),
            summary_timeout=timeout,
            log_level=environ.get("SCRAP_LOG_LEVEL", "INFO").upper(),
        )

    @property
    def db_path(self) -> Path:
        return self.home / "scrap.db"

    @property
    def log_path(self) -> Path:
        return self.home / "scrap.log"


def configure_logging(settings: Settings) -> None:
    """Send logs to a rotating file; the terminal belongs to the UI."""
    logger.remove()
    try:
        settings.home.mkdir(parents=True, exist_ok=True)
    except OSError:
        return
    logger.add(
        settings.log_path,
        level=settings.log_level,
        rotation="1 MB",
        retention=3,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <7} | {function}:{line} - {message}",
    )


# ════════════════════════════════════════════════════════════════════════
#  Errors
# ════════════════════════════════════════════════════════════════════════


class ScrapError(Exception):
    """Base for errors whose message is shown to the user as-is."""


class ValidationError(ScrapError):
    """A note name or tag failed the syntax rules."""


class NotFoundError(ScrapError):
    """The note disappeared between a listing and a lookup."""


class StoreError(ScrapError):
    """The note database could not be read or written."""


class ExternalProcessError(ScrapError):
    """The external editor could not be resolved, launched, or failed."""


class RemoteServiceError(ScrapError):
    """The summarization service failed or is not configured."""


class TerminalError(ScrapError):
    """The terminal could not be taken over for the interactive UI."""


# ════════════════════════════════════════════════════════════════════════
#  Data Models
# ════════════════════════════════════════════════════════════════════════


@dataclass
class NoteEntry:
    """One row of the note store, as last fetched."""
    id: int
    title: str
    body: str
    tags: list[str] = field(default_factory=list)
    updated_at: str = ""
    summary: Optional[str] = None
    summary_stale: bool = False


class Mode(Enum):
    NORMAL = "normal"
    SEARCH = "search"
    COMMAND = "command"
    ADD_NOTE_NAME = "add-note-name"
    ADD_NOTE_TAGS = "add-note-tags"
    EDIT_TAGS_ADD = "edit-tags-add"
    EDIT_TAGS_REMOVE = "edit-tags-remove"
    TAG_BROWSE = "tag-browse"


class Focus(Enum):
    NOTES = "notes"
    TAGS = "tags"
    PREVIEW = "preview"


class Key(Enum):
    CHAR = "char"
    UP = "up"
    DOWN = "down"
    ENTER = "enter"
    ESCAPE = "escape"
    BACKSPACE = "backspace"
    TAB = "tab"
    RESIZE = "resize"


@dataclass(frozen=True)
class KeyEvent:
    """A logical key press; ``char`` is set only for ``Key.CHAR``."""
    key: Key
    char: str = ""

    def is_char(self, c: str) -> bool:
        return self.key is Key.CHAR and self.char == c


# ════════════════════════════════════════════════════════════════════════
#  Validation
# ════════════════════════════════════════════════════════════════════════

MAX_NAME_LENGTH = 100
MAX_TAG_LENGTH = 50


def validate_name(name: str) -> None:
    trimmed = name.strip()
    if not trimmed:
        raise ValidationError("Note name cannot be empty.")
    if " " in trimmed:
        raise ValidationError(
            "Note name cannot contain spaces. Use hyphens or underscores instead.")
    if "/" in trimmed or "\\" in trimmed:
        raise ValidationError("Note name cannot contain path separators.")
    if len(trimmed) > MAX_NAME_LENGTH:
        raise ValidationError(f"Note name cannot exceed {MAX_NAME_LENGTH} characters.")


def validate_tags(tags: Sequence[str]) -> None:
    for tag in tags:
        trimmed = tag.strip()
        if not trimmed:
            raise ValidationError("Tag cannot be empty.")
        if " " in trimmed:
            raise ValidationError(f"Tag '{tag}' cannot contain spaces.")
        if len(trimmed) > MAX_TAG_LENGTH:
            raise ValidationError(f"Tag '{tag}' cannot exceed {MAX_TAG_LENGTH} characters.")


def add_tags(existing: Sequence[str], new: Sequence[str]) -> list[str]:
    """Append each new tag that is not already present (exact match)."""
    result = list(existing)
    for tag in new:
        if tag not in result:
            result.append(tag)
    return result


def remove_tags(existing: Sequence[str], drop: Sequence[str]) -> list[str]:
    return [t for t in existing if t not in drop]


# ════════════════════════════════════════════════════════════════════════
#  Storage
# ════════════════════════════════════════════════════════════════════════

_SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    note TEXT NOT NULL,
    tags JSON,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_SUMMARY_COLUMNS = {
    "summary": "ALTER TABLE notes ADD COLUMN summary TEXT",
    "summary_stale": "ALTER TABLE notes ADD COLUMN summary_stale INTEGER NOT NULL DEFAULT 0",
}


def _now() -> str:
    return datetime.now().isoformat(sep=" ", timespec="microseconds")


def _load_tags(raw: Optional[str]) -> list[str]:
    try:
        tags = json.loads(raw or "[]")
    except ValueError:
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (sqlite3.Error, OSError) as exc:
        logger.error("Store failure while trying to {}: {}", action, exc)
        raise StoreError(f"Could not {action}: {exc}") from exc


class NoteStore:
    """SQLite-backed note storage."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        with _store_errors("open the note database"):
            db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(db_path))
            self.conn.row_factory = sqlite3.Row
            self.conn.executescript(_SCHEMA)
            self._migrate()

    def _migrate(self) -> None:
        columns = {row["name"] for row in self.conn.execute("PRAGMA table_info(notes)")}
        for name, ddl in _SUMMARY_COLUMNS.items():
            if name not in columns:
                logger.info("Adding column {} to notes", name)
                self.conn.execute(ddl)
        duplicates = [row["title"] for row in self.conn.execute(
            "SELECT title FROM notes GROUP BY title HAVING COUNT(*) > 1")]
        if duplicates:
            logger.warning("Titles {} appear more than once; unique titles not enforced",
                           duplicates)
        else:
            self.conn.execute(
                "CREATE UNIQUE INDEX IF NOT EXISTS notes_title ON notes (title)")
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> NoteEntry:
        return NoteEntry(
            id=row["id"],
            title=row["title"],
            body=row["note"],
            tags=_load_tags(row["tags"]),
            updated_at=row["updated_at"],
            summary=row["summary"] or None,
            summary_stale=bool(row["summary_stale"]),
        )

    def list_notes(self) -> list[NoteEntry]:
        """All notes, most recently modified first."""
        with _store_errors("list notes"):
            rows = self.conn.execute(
                "SELECT * FROM notes ORDER BY updated_at DESC, id DESC").fetchall()
        return [self._row_to_note(r) for r in rows]

    def get_note(self, title: str) -> Optional[NoteEntry]:
        with _store_errors(f"read note '{title}'"):
            row = self.conn.execute(
                "SELECT * FROM notes WHERE title = ?", (title,)).fetchone()
        return self._row_to_note(row) if row else None

    def require_note(self, title: str) -> NoteEntry:
        note = self.get_note(title)
        if note is None:
            raise NotFoundError(f"Note '{title}' not found.")
        return note

    def insert_note(self, title: str, body: str, tags: Sequence[str]) -> int:
        now = _now()
        with _store_errors(f"create note '{title}'"):
            try:
                with self.conn:
                    cur = self.conn.execute(
                        "INSERT INTO notes (title, note, tags, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (title, body, json.dumps(list(tags)), now, now),
                    )
            except sqlite3.IntegrityError as exc:
                raise ValidationError(f"Note '{title}' already exists.") from exc
        logger.info("Inserted note {!r} (id={}) tags={}", title, cur.lastrowid, list(tags))
        return cur.lastrowid

    def _update(self, note_id: int, sql: str, params: tuple, action: str) -> None:
        with _store_errors(action), self.conn:
            cur = self.conn.execute(sql, params)
        if cur.rowcount == 0:
            raise NotFoundError(f"Note {note_id} no longer exists.")

    def update_body(self, note_id: int, body: str) -> None:
        self._update(
            note_id, "UPDATE notes SET note = ?, updated_at = ? WHERE id = ?",
            (body, _now(), note_id), "save the note")
        logger.info("Updated body of note id={}", note_id)

    def update_tags(self, note_id: int, tags: Sequence[str]) -> None:
        self._update(
            note_id, "UPDATE notes SET tags = ?, updated_at = ? WHERE id = ?",
            (json.dumps(list(tags)), _now(), note_id), "save the tags")
        logger.info("Updated tags of note id={} to {}", note_id, list(tags))

    def delete_note(self, title: str) -> bool:
        with _store_errors(f"delete note '{title}'"), self.conn:
            cur = self.conn.execute("DELETE FROM notes WHERE title = ?", (title,))
        return cur.rowcount > 0

    def get_summary(self, note_id: int) -> Optional[tuple[str, bool]]:
        """Return ``(summary, stale)`` or None when no summary is cached."""
        with _store_errors("read the summary"):
            row = self.conn.execute(
                "SELECT summary, summary_stale FROM notes WHERE id = ?",
                (note_id,)).fetchone()
        if not row or not row["summary"]:
            return None
        return row["summary"], bool(row["summary_stale"])

    def set_summary(self, note_id: int, summary: str) -> None:
        self._update(
            note_id, "UPDATE notes SET summary = ?, summary_stale = 0 WHERE id = ?",
            (summary, note_id), "save the summary")

    def mark_summary_stale(self, note_id: int) -> None:
        self._update(
            note_id, "UPDATE notes SET summary_stale = 1 WHERE id = ?",
            (note_id,), "mark the summary stale")

    def export_notes(self) -> list[dict]:
        with _store_errors("export notes"):
            rows = self.conn.execute(
                "SELECT title, note, tags, created_at, updated_at FROM notes ORDER BY id"
            ).fetchall()
        return [
            {
                "title": r["title"],
                "note": r["note"],
                "tags": _load_tags(r["tags"]),
                "created_at": r["created_at"],
                "updated_at": r["updated_at"],
            }
            for r in rows
        ]

    def import_notes(self, records: Sequence[dict], overwrite: bool = False) -> tuple[int, int]:
        """Insert exported records; returns ``(imported, skipped)``.

        A record whose title is already present is skipped. With
        ``overwrite`` every existing note is removed first, so only repeats
        within ``records`` are skipped.
        """
        imported = skipped = 0
        with _store_errors("import notes"), self.conn:
            if overwrite:
                self.conn.execute("DELETE FROM notes")
            for rec in records:
                if self.conn.execute(
                        "SELECT 1 FROM notes WHERE title = ?", (rec["title"],)).fetchone():
                    skipped += 1
                    continue
                now = _now()
                self.conn.execute(
                    "INSERT INTO notes (title, note, tags, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (rec["title"], rec["note"], json.dumps(list(rec.get("tags", []))),
                     rec.get("created_at") or now, rec.get("updated_at") or now),
                )
                imported += 1
        logger.info("Imported {} notes, skipped {}", imported, skipped)
        return imported, skipped


# ════════════════════════════════════════════════════════════════════════
#  External editor
# ════════════════════════════════════════════════════════════════════════


def resolve_editor(configured: Optional[str] = None) -> str:
    """Return the editor command line: $VISUAL/$EDITOR, else a known editor."""
    if configured:
        return configured
    for name in EDITOR_CANDIDATES:
        found = shutil.which(name)
        if found:
            return found
    raise ExternalProcessError("No editor found. Set the $EDITOR environment variable.")


def edit_text(seed: str, name: str = "note", editor: Optional[str] = None) -> str:
    """Open ``seed`` in the external editor and return the saved text."""
    command = shlex.split(resolve_editor(editor))
    if not command:
        raise ExternalProcessError("Editor command is empty.")
    filename = re.sub(r"[^\w.-]+", "_", name) or "note"
    with tempfile.TemporaryDirectory(prefix="scrap-") as tmpdir:
        path = Path(tmpdir) / f"{filename}.md"
        path.write_text(seed, encoding="utf-8")
        logger.debug("Launching {} on {}", command, path)
        try:
            result = subprocess.run([*command, str(path)])
        except OSError as exc:
            raise ExternalProcessError(f"Failed to open editor: {command[0]}") from exc
        if result.returncode != 0:
            raise ExternalProcessError("Editor exited with non-zero status")
        return path.read_text(encoding="utf-8")


# ════════════════════════════════════════════════════════════════════════
#  Summaries
# ════════════════════════════════════════════════════════════════════════

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
SUMMARY_SYSTEM_PROMPT = (
    "You are a note summarizer. Summarize the given note concisely. "
    "Return your summary as well-formatted markdown with bullet points, "
    "headers, and emphasis where appropriate. Keep it brief but informative."
)


def _api_error_message(response: httpx.Response) -> str:
    try:
        message = response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"Anthropic API error ({response.status_code}): {response.text}"
    return f"Anthropic API error: {message}"


def summarize_note(
    title: str,
    body: str,
    *,
    api_key: Optional[str],
    model: str = DEFAULT_SUMMARY_MODEL,
    timeout: float = DEFAULT_SUMMARY_TIMEOUT,
    client: Optional[httpx.Client] = None,
) -> str:
    """Ask the Messages API for a markdown summary of one note."""
    if not api_key:
        raise RemoteServiceError(
            "ANTHROPIC_API_KEY not set. Export it in your shell profile to enable summaries.")
    payload = {
        "model": model,
        "max_tokens": 1024,
        "system": SUMMARY_SYSTEM_PROMPT,
        "messages": [{
            "role": "user",
            "content": f'Summarize this note titled "{title}":\n\n{body}',
        }],
    }
    headers = {
        "x-api-key": api_key,
        "anthropic-version": ANTHROPIC_VERSION,
        "content-type": "application/json",
    }
    try:
        if client is None:
            with httpx.Client(timeout=timeout) as owned:
                response = owned.post(ANTHROPIC_URL, json=payload, headers=headers)
        else:
            response = client.post(ANTHROPIC_URL, json=payload, headers=headers, timeout=timeout)
    except httpx.TimeoutException as exc:
        raise RemoteServiceError(f"Summary request timed out after {timeout:g}s") from exc
    except httpx.HTTPError as exc:
        raise RemoteServiceError(f"Summary request failed: {exc}") from exc

    if not response.is_success:
        raise RemoteServiceError(_api_error_message(response))
    try:
        data = response.json()
    except ValueError as exc:
        raise RemoteServiceError("Malformed response from API") from exc
    blocks = data.get("content") if isinstance(data, dict) else None
    summary = "\n".join(
        b["text"] for b in blocks or [] if isinstance(b, dict) and b.get("text"))
    if not summary:
        raise RemoteServiceError("Empty response from API")
    return summary


# ════════════════════════════════════════════════════════════════════════
#  Filter
# ════════════════════════════════════════════════════════════════════════


def filter_notes(query: str, notes: Sequence[NoteEntry],
                 tag_filters: Sequence[str] = ()) -> list[int]:
    """Indices of notes whose title or any tag contains ``query``, any case.

    With ``tag_filters`` a note must also carry at least one of those tags
    (exact match).
    """
    q = query.lower()
    return [
        i for i, note in enumerate(notes)
        if (not tag_filters or any(t in tag_filters for t in note.tags))
        and (not q or q in note.title.lower() or any(q in t.lower() for t in note.tags))
    ]


def count_tags(notes: Iterable[NoteEntry]) -> list[tuple[str, int]]:
    """Each tag with the number of notes carrying it, most used first."""
    counts = Counter(t for note in notes for t in dict.fromkeys(note.tags))
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


# ════════════════════════════════════════════════════════════════════════
#  Markdown rendering (markdown-it token stream -> styled lines)
# ════════════════════════════════════════════════════════════════════════

_MD = MarkdownIt("commonmark").enable("strikethrough")

_EMPTY_NOTE = ("class:md.empty", "(empty note)")
_HEADING_STYLES = {"h1": "class:md.h1", "h2": "class:md.h2"}
_EMPHASIS = {"strong_open": "bold", "em_open": "italic", "s_open": "strike"}
_EMPHASIS_CLOSE = {"strong_close", "em_close", "s_close", "link_close"}


class _LineBuilder:
    """Accumulates fragments into lines while walking the token stream."""

    def __init__(self):
        self.lines: list[StyleAndTextTuples] = []
        self.current: StyleAndTextTuples = []
        self.styles = [""]
        self.quote_depth = 0
        self.list_depth = 0

    @property
    def style(self) -> str:
        return self.styles[-1]

    def _prefix(self) -> StyleAndTextTuples:
        return [("class:md.quote", "│ ")] * self.quote_depth

    def add(self, style: str, text: str) -> None:
        if not text:
            return
        if not self.current:
            self.current.extend(self._prefix())
        self.current.append((style, text))

    def add_line(self, style: str, text: str) -> None:
        self.flush()
        self.lines.append(self._prefix() + [(style, text)])

    def flush(self) -> None:
        if self.current:
            self.lines.append(self.current)
            self.current = []

    def blank(self) -> None:
        self.flush()
        if self.lines and self.lines[-1]:
            self.lines.append([])

    def finish(self) -> list[StyleAndTextTuples]:
        self.flush()
        while self.lines and not self.lines[-1]:
            self.lines.pop()
        return self.lines


def _render_inline(children, out: _LineBuilder) -> None:
    for child in children:
        kind = child.type
        if kind in ("text", "html_inline"):
            out.add(out.style, child.content.expandtabs(TAB_SIZE))
        elif kind == "code_inline":
            out.add("class:md.code", f"`{child.content}`")
        elif kind in ("softbreak", "hardbreak"):
            out.flush()
        elif kind in _EMPHASIS:
            out.styles.append(f"{out.style} {_EMPHASIS[kind]}")
        elif kind == "link_open":
            out.styles.append(f"{out.style} class:md.link")
        elif kind in _EMPHASIS_CLOSE:
            if len(out.styles) > 1:
                out.styles.pop()
        elif kind == "image":
            out.add("class:md.link", f"[{child.content}]")


def render_markdown(text: str) -> list[StyleAndTextTuples]:
    """Render markdown into a list of styled lines.

    Each line is a prompt_toolkit fragment list. The result depends only on
    ``text``: headings get a level style, code blocks keep their line breaks
    verbatim, list items get a marker, and paragraphs are separated by a
    blank line. Wrapping is left to the caller. Empty input gives a single
    placeholder line.
    """
    if not text.strip():
        return [[_EMPTY_NOTE]]
    out = _LineBuilder()
    for token in _MD.parse(text):
        kind = token.type
        if kind == "heading_open":
            out.styles.append(_HEADING_STYLES.get(token.tag, "class:md.h3"))
        elif kind == "heading_close":
            out.styles.pop()
            out.blank()
        elif kind == "paragraph_close":
            # Tight list items hide their paragraphs.
            if token.hidden:
                out.flush()
            else:
                out.blank()
        elif kind == "inline":
            _render_inline(token.children or [], out)
        elif kind in ("bullet_list_open", "ordered_list_open"):
            out.flush()
            out.list_depth += 1
        elif kind in ("bullet_list_close", "ordered_list_close"):
            out.list_depth -= 1
            if out.list_depth == 0:
                out.blank()
        elif kind == "list_item_open":
            marker = f"{token.info}{token.markup} " if token.info else "• "
            out.add("class:md.bullet", "  " * out.list_depth + marker)
        elif kind == "list_item_close":
            out.flush()
        elif kind in ("fence", "code_block"):
            for line in token.content.rstrip("\n").split("\n"):
                out.add_line("class:md.code-block", "    " + line.expandtabs(TAB_SIZE))
            out.blank()
        elif kind == "blockquote_open":
            out.flush()
            out.quote_depth += 1
        elif kind == "blockquote_close":
            out.flush()
            out.quote_depth -= 1
            out.blank()
        elif kind == "hr":
            out.add_line("class:md.rule", "─" * 24)
            out.blank()
        elif kind == "html_block":
            for line in token.content.rstrip("\n").split("\n"):
                out.add_line("", line.expandtabs(TAB_SIZE))
    return out.finish() or [[_EMPTY_NOTE]]


# ════════════════════════════════════════════════════════════════════════
#  Application State
# ════════════════════════════════════════════════════════════════════════


class AppState:
    """Everything the screen shows; mutated only by the event loop."""

    def __init__(self, notes: Sequence[NoteEntry] = ()):
        self.notes: list[NoteEntry] = list(notes)
        self.filtered: list[int] = []
        self.selected = 0
        self.mode = Mode.NORMAL
        self.focus = Focus.NOTES
        self.search_query = ""
        self.name_buffer = ""
        self.tags_buffer = ""
        self.status_message: Optional[str] = None
        self.quit_requested = False
        # Tag panel: counts over the filtered notes, plus the active filters.
        self.tag_filters: list[str] = []
        self.visible_tags: list[tuple[str, int]] = []
        self.selected_tag = 0
        self.preview_scroll = 0
        # Summary shown in the preview pane, tied to one note id.
        self.summary_note_id: Optional[int] = None
        self.summary_text: Optional[str] = None
        self.summary_stale = False
        self.summary_force_regen = False
        self.apply_filter()

    def apply_filter(self) -> None:
        self.filtered = filter_notes(self.search_query, self.notes, self.tag_filters)
        self.selected = max(0, min(self.selected, len(self.filtered) - 1))
        self.visible_tags = count_tags(self.notes[i] for i in self.filtered)
        self.selected_tag = max(0, min(self.selected_tag, len(self.visible_tags) - 1))

    def set_search_query(self, query: str) -> None:
        self.search_query = query
        self.apply_filter()
        self.selected = 0
        self.preview_scroll = 0

    def toggle_tag_filter(self, tag: str) -> None:
        if tag in self.tag_filters:
            self.tag_filters.remove(tag)
        else:
            self.tag_filters.append(tag)
        self.apply_filter()
        self.selected = 0
        self.preview_scroll = 0

    def clear_tag_filters(self) -> None:
        self.tag_filters = []
        self.apply_filter()
        self.selected = 0
        self.preview_scroll = 0

    def replace_notes(self, notes: Sequence[NoteEntry], follow_id: Optional[int] = None) -> None:
        """Swap in a fresh snapshot, keeping ``follow_id`` selected if visible."""
        self.notes = list(notes)
        self.apply_filter()
        if follow_id is None:
            return
        for pos, idx in enumerate(self.filtered):
            if self.notes[idx].id == follow_id:
                self.selected = pos
                break

    def selected_note(self) -> Optional[NoteEntry]:
        if not self.filtered:
            return None
        return self.notes[self.filtered[self.selected]]

    def selected_tag_name(self) -> Optional[str]:
        if not self.visible_tags:
            return None
        return self.visible_tags[self.selected_tag][0]

    def move_selection(self, delta: int) -> None:
        if not self.filtered:
            return
        self.selected = (self.selected + delta) % len(self.filtered)
        self.preview_scroll = 0

    def move_tag_selection(self, delta: int) -> None:
        if not self.visible_tags:
            return
        self.selected_tag = (self.selected_tag + delta) % len(self.visible_tags)

    def scroll_preview(self, delta: int, limit: Optional[int] = None) -> None:
        """Move the preview offset, never below 0 nor past ``limit``."""
        offset = max(0, self.preview_scroll + delta)
        if limit is not None:
            offset = min(offset, max(0, limit))
        self.preview_scroll = offset

    def show_summary(self, note_id: int, text: str, stale: bool) -> None:
        self.summary_note_id = note_id
        self.summary_text = text
        self.summary_stale = stale
        self.summary_force_regen = False
        self.preview_scroll = 0

    def clear_summary(self) -> None:
        self.summary_note_id = None
        self.summary_text = None
        self.summary_stale = False
        self.summary_force_regen = False
        self.preview_scroll = 0

    def visible_summary(self) -> Optional[str]:
        note = self.selected_note()
        if note is None or note.id != self.summary_note_id:
            return None
        return self.summary_text


# ════════════════════════════════════════════════════════════════════════
#  Terminal session
# ════════════════════════════════════════════════════════════════════════


class TerminalSession:
    """Raw input plus the alternate screen, held around the event loop.

    ``session()`` scopes the whole UI; ``suspended()`` hands the real
    terminal to a child process and takes it back on every exit path.
    """

    def __init__(self, input: Input, output: Output):
        self.input = input
        self.output = output
        self._raw: Optional[ExitStack] = None

    @property
    def acquired(self) -> bool:
        return self._raw is not None

    def acquire(self) -> None:
        if self._raw is not None:
            return
        stack = ExitStack()
        try:
            stack.enter_context(self.input.raw_mode())
            self.output.enter_alternate_screen()
            self.output.hide_cursor()
            self.output.erase_screen()
            self.output.flush()
        except OSError as exc:
            stack.close()
            raise TerminalError(f"Could not take over the terminal: {exc}") from exc
        self._raw = stack
        logger.debug("Terminal acquired")

    def release(self) -> None:
        stack, self._raw = self._raw, None
        try:
            self.output.reset_attributes()
            self.output.quit_alternate_screen()
            self.output.show_cursor()
            self.output.flush()
        finally:
            if stack is not None:
                stack.close()
        logger.debug("Terminal released")

    @contextmanager
    def session(self) -> Iterator[TerminalSession]:
        self.acquire()
        try:
            yield self
        finally:
            self.release()

    @contextmanager
    def suspended(self) -> Iterator[None]:
        self.release()
        try:
            yield
        finally:
            self.acquire()


# ════════════════════════════════════════════════════════════════════════
#  Input
# ════════════════════════════════════════════════════════════════════════

_KEY_MAP = {
    Keys.Up: Key.UP,
    Keys.Down: Key.DOWN,
    Keys.ControlM: Key.ENTER,
    Keys.ControlJ: Key.ENTER,
    Keys.Escape: Key.ESCAPE,
    Keys.ControlC: Key.ESCAPE,
    Keys.ControlH: Key.BACKSPACE,
    Keys.ControlI: Key.TAB,
}


def key_events(press: KeyPress) -> list[KeyEvent]:
    """Translate one parsed key press; anything unknown is dropped."""
    key = press.key
    if key == Keys.BracketedPaste:
        return [KeyEvent(Key.CHAR, c) for c in press.data if c.isprintable()]
    if isinstance(key, Keys):
        mapped = _KEY_MAP.get(key)
        return [KeyEvent(mapped)] if mapped else []
    if len(key) == 1 and key.isprintable():
        return [KeyEvent(Key.CHAR, key)]
    return []


class KeyReader:
    """Blocks until the next logical key event arrives.

    Inside ``resize_events()`` a terminal resize also wakes the reader and
    comes back as a ``Key.RESIZE`` event.
    """

    def __init__(self, input: Input, escape_timeout: float = ESCAPE_TIMEOUT):
        self.input = input
        self.escape_timeout = escape_timeout
        self._pending: deque[KeyEvent] = deque()
        self._resize_fd: Optional[int] = None

    @contextmanager
    def resize_events(self) -> Iterator[None]:
        """Turn SIGWINCH into wakeups on a pipe the reader also watches."""
        sigwinch = getattr(signal, "SIGWINCH", None)
        if sigwinch is None:
            yield
            return
        read_fd, write_fd = os.pipe()
        os.set_blocking(read_fd, False)
        os.set_blocking(write_fd, False)

        def on_resize(signum, frame):
            with suppress(BlockingIOError):
                os.write(write_fd, b"w")

        previous = signal.signal(sigwinch, on_resize)
        self._resize_fd = read_fd
        try:
            yield
        finally:
            signal.signal(sigwinch, previous)
            self._resize_fd = None
            os.close(read_fd)
            os.close(write_fd)

    def _wait(self, timeout: Optional[float]) -> bool:
        readable, _, _ = select.select([self.input.fileno()], [], [], timeout)
        return bool(readable)

    def _wait_any(self) -> bool:
        """Block for input or a resize; True if the terminal was resized."""
        fds = [self.input.fileno()]
        if self._resize_fd is not None:
            fds.append(self._resize_fd)
        readable, _, _ = select.select(fds, [], [], None)
        if self._resize_fd is not None and self._resize_fd in readable:
            with suppress(BlockingIOError):
                os.read(self._resize_fd, 1024)
            return True
        return False

    def _fill(self) -> None:
        if self.input.closed:
            raise EOFError("terminal input closed")
        if self._wait_any():
            self._pending.append(KeyEvent(Key.RESIZE))
            return
        presses = self.input.read_keys()
        # A lone escape stays in the parser until we know nothing follows it.
        if not presses and not self.input.closed and not self._wait(self.escape_timeout):
            presses = self.input.flush_keys()
        for press in presses:
            self._pending.extend(key_events(press))

    def next_event(self) -> KeyEvent:
        while not self._pending:
            self._fill()
        return self._pending.popleft()


# ════════════════════════════════════════════════════════════════════════
#  Mode state machine
# ════════════════════════════════════════════════════════════════════════


class ModeMachine:
    """Interprets one key event against the current mode.

    ``editor(seed, name)`` and ``summarizer(title, body)`` are the external
    collaborators; ``redraw()`` repaints before a blocking summary request
    and ``viewport()`` reports the terminal size so preview scrolling stops
    at the last line.
    """

    def __init__(
        self,
        state: AppState,
        store: NoteStore,
        session: TerminalSession,
        *,
        editor: Callable[[str, str], str],
        summarizer: Callable[[str, str], str],
        redraw: Optional[Callable[[], None]] = None,
        viewport: Optional[Callable[[], Size]] = None,
    ):
        self.state = state
        self.store = store
        self.session = session
        self.editor = editor
        self.summarizer = summarizer
        self.redraw = redraw or (lambda: None)
        self.viewport = viewport
        self._handlers = {
            Mode.NORMAL: self._normal,
            Mode.SEARCH: self._search,
            Mode.COMMAND: self._command,
            Mode.TAG_BROWSE: self._tag_browse,
            Mode.ADD_NOTE_NAME: self._add_note_name,
            Mode.ADD_NOTE_TAGS: self._add_note_tags,
            Mode.EDIT_TAGS_ADD: self._edit_tags,
            Mode.EDIT_TAGS_REMOVE: self._edit_tags,
        }

    def dispatch(self, event: KeyEvent) -> None:
        mode = self.state.mode
        handler = self._handlers[mode]
        if mode is Mode.NORMAL and self.state.focus is Focus.PREVIEW:
            handler = self._preview
        try:
            handler(event)
        except NotFoundError as exc:
            logger.info("Ignoring {} in {} mode: {}", event, mode.value, exc)
        except ScrapError as exc:
            logger.warning("{} in {} mode: {}", type(exc).__name__, mode.value, exc)
            self.state.status_message = str(exc)

    def _edit_buffer(self, name: str, event: KeyEvent) -> bool:
        value = getattr(self.state, name)
        if event.key is Key.CHAR:
            setattr(self.state, name, value + event.char)
        elif event.key is Key.BACKSPACE:
            setattr(self.state, name, value[:-1])
        else:
            return False
        return True

    def _refresh(self, follow_id: Optional[int] = None) -> None:
        self.state.replace_notes(self.store.list_notes(), follow_id=follow_id)

    # -- Modes --

    def _normal(self, event: KeyEvent) -> None:
        state = self.state
        if event.is_char("q"):
            state.quit_requested = True
        elif event.key is Key.DOWN or event.is_char("j"):
            state.move_selection(1)
            state.clear_summary()
        elif event.key is Key.UP or event.is_char("k"):
            state.move_selection(-1)
            state.clear_summary()
        elif event.is_char("/"):
            state.set_search_query("")
            state.status_message = None
            state.mode = Mode.SEARCH
        elif event.is_char(":"):
            state.status_message = None
            state.mode = Mode.COMMAND
        elif event.key is Key.TAB:
            state.focus = Focus.TAGS
            state.mode = Mode.TAG_BROWSE
            state.status_message = None
            state.clear_summary()
        elif event.key is Key.ESCAPE:
            state.clear_summary()

    def _preview(self, event: KeyEvent) -> None:
        state = self.state
        if event.is_char("q"):
            state.quit_requested = True
        elif event.key is Key.DOWN or event.is_char("j"):
            state.scroll_preview(1, self._scroll_limit())
        elif event.key is Key.UP or event.is_char("k"):
            state.scroll_preview(-1)
        elif event.key is Key.TAB:
            self._toggle_preview_view()
        elif event.key is Key.ESCAPE:
            state.focus = Focus.NOTES
            state.preview_scroll = 0
        elif event.is_char(":"):
            state.focus = Focus.NOTES
            state.status_message = None
            state.mode = Mode.COMMAND

    def _tag_browse(self, event: KeyEvent) -> None:
        state = self.state
        if event.key is Key.DOWN or event.is_char("j"):
            state.move_tag_selection(1)
        elif event.key is Key.UP or event.is_char("k"):
            state.move_tag_selection(-1)
        elif event.key is Key.ENTER:
            tag = state.selected_tag_name()
            if tag is None:
                return
            state.toggle_tag_filter(tag)
            state.selected_tag = 0
            state.status_message = (
                "Filtered by: " + ", ".join(state.tag_filters) if state.tag_filters else None)
        elif event.key is Key.ESCAPE:
            state.clear_tag_filters()
            state.selected_tag = 0
            state.focus = Focus.NOTES
            state.mode = Mode.NORMAL
            state.status_message = None
        elif event.key is Key.TAB:
            state.focus = Focus.PREVIEW
            state.mode = Mode.NORMAL
            state.preview_scroll = 0
        elif event.is_char(":"):
            state.focus = Focus.NOTES
            state.status_message = None
            state.mode = Mode.COMMAND

    def _search(self, event: KeyEvent) -> None:
        state = self.state
        if event.key is Key.ENTER:
            state.mode = Mode.NORMAL
        elif event.key is Key.ESCAPE:
            state.set_search_query("")
            state.mode = Mode.NORMAL
        elif self._edit_buffer("search_query", event):
            state.set_search_query(state.search_query)

    def _command(self, event: KeyEvent) -> None:
        state = self.state
        if event.key is Key.ESCAPE:
            state.mode = Mode.NORMAL
        elif event.is_char("o"):
            state.mode = Mode.NORMAL
            self._open_selected()
        elif event.is_char("a"):
            state.name_buffer = ""
            state.tags_buffer = ""
            state.mode = Mode.ADD_NOTE_NAME
        elif event.is_char("t"):
            if state.selected_note() is None:
                state.mode = Mode.NORMAL
            else:
                state.tags_buffer = ""
                state.mode = Mode.EDIT_TAGS_ADD
        elif event.is_char("s"):
            state.mode = Mode.NORMAL
            self._summarize_selected()

    def _add_note_name(self, event: KeyEvent) -> None:
        state = self.state
        if event.key is Key.ESCAPE:
            state.mode = Mode.NORMAL
        elif event.key is Key.ENTER:
            name = state.name_buffer.strip()
            try:
                validate_name(name)
            except ValidationError as exc:
                state.status_message = f"Invalid name: {exc}"
                return
            if self.store.get_note(name) is not None:
                state.status_message = f"Note '{name}' already exists"
                return
            state.name_buffer = name
            state.tags_buffer = ""
            state.mode = Mode.ADD_NOTE_TAGS
        else:
            self._edit_buffer("name_buffer", event)

    def _add_note_tags(self, event: KeyEvent) -> None:
        state = self.state
        if event.key is Key.ESCAPE:
            state.mode = Mode.NORMAL
        elif event.key is Key.ENTER:
            tags = state.tags_buffer.split()
            try:
                validate_tags(tags)
            except ValidationError as exc:
                state.status_message = f"Invalid tags: {exc}"
                return
            state.mode = Mode.NORMAL
            self._create_note(state.name_buffer, tags)
        else:
            self._edit_buffer("tags_buffer", event)

    def _edit_tags(self, event: KeyEvent) -> None:
        state = self.state
        if event.key is Key.ESCAPE:
            state.mode = Mode.NORMAL
        elif event.key is Key.TAB:
            state.mode = (Mode.EDIT_TAGS_REMOVE if state.mode is Mode.EDIT_TAGS_ADD
                          else Mode.EDIT_TAGS_ADD)
        elif event.key is Key.ENTER:
            self._apply_tag_edit()
        else:
            self._edit_buffer("tags_buffer", event)

    # -- Side effects --

    def _scroll_limit(self) -> Optional[int]:
        if self.viewport is None:
            return None
        size = self.viewport()
        return preview_max_scroll(self.state, size.columns, size.rows)

    def _toggle_preview_view(self) -> None:
        state = self.state
        note = state.selected_note()
        if note is None or state.visible_summary() is not None:
            state.clear_summary()
            state.focus = Focus.NOTES
            return
        cached = self.store.get_summary(note.id)
        if cached is None:
            state.status_message = "No summary available. Use :s to generate."
            state.focus = Focus.NOTES
            state.preview_scroll = 0
            return
        text, stale = cached
        state.show_summary(note.id, text, stale)

    def _open_selected(self) -> None:
        state = self.state
        note = state.selected_note()
        if note is None:
            return
        logger.info("Opening {!r} in the editor", note.title)
        try:
            with self.session.suspended():
                body = self.editor(note.body, note.title)
        except ExternalProcessError as exc:
            logger.warning("Editor failed for {!r}: {}", note.title, exc)
            state.status_message = f"Error: {exc}"
            return
        if body == note.body:
            state.status_message = "No changes made."
            return
        self.store.update_body(note.id, body)
        self.store.mark_summary_stale(note.id)
        if state.summary_note_id == note.id:
            state.clear_summary()
        self._refresh(follow_id=note.id)
        state.status_message = f"Note '{note.title}' updated"

    def _create_note(self, name: str, tags: list[str]) -> None:
        state = self.state
        logger.info("Creating {!r} with tags {}", name, tags)
        try:
            with self.session.suspended():
                body = self.editor("", name)
        except ExternalProcessError as exc:
            logger.warning("Editor failed for new note {!r}: {}", name, exc)
            state.status_message = f"Error: {exc}"
            return
        note_id = self.store.insert_note(name, body, tags)
        self._refresh(follow_id=note_id)
        state.status_message = f"Note '{name}' created"

    def _apply_tag_edit(self) -> None:
        state = self.state
        adding = state.mode is Mode.EDIT_TAGS_ADD
        tags = state.tags_buffer.split()
        if not tags:
            state.status_message = "No tags provided"
            state.tags_buffer = ""
            state.mode = Mode.NORMAL
            return
        try:
            validate_tags(tags)
        except ValidationError as exc:
            state.status_message = f"Invalid tags: {exc}"
            return
        state.tags_buffer = ""
        state.mode = Mode.NORMAL
        selected = state.selected_note()
        if selected is None:
            return
        current = self.store.require_note(selected.title)
        updated = add_tags(current.tags, tags) if adding else remove_tags(current.tags, tags)
        self.store.update_tags(current.id, updated)
        self._refresh(follow_id=current.id)
        action = "added to" if adding else "removed from"
        state.status_message = f"Tags {action} '{current.title}'"

    def _summarize_selected(self) -> None:
        state = self.state
        note = state.selected_note()
        if note is None:
            return
        showing = state.visible_summary() is not None
        # A second :s on an outdated summary asks for a fresh one.
        if showing and state.summary_stale and not state.summary_force_regen:
            state.summary_force_regen = True
        if not (showing and state.summary_force_regen):
            cached = self.store.get_summary(note.id)
            if cached is not None:
                text, stale = cached
                state.show_summary(note.id, text, stale)
                state.status_message = (
                    "Summary may be outdated. Press :s again to regenerate."
                    if stale else None)
                return

        state.status_message = "Generating summary..."
        self.redraw()
        logger.info("Requesting summary for {!r}", note.title)
        try:
            summary = self.summarizer(note.title, note.body)
        except RemoteServiceError as exc:
            logger.warning("Summary failed for {!r}: {}", note.title, exc)
            state.status_message = f"Summary error: {exc}"
            return
        self.store.set_summary(note.id, summary)
        state.show_summary(note.id, summary, stale=False)
        state.status_message = None


# ════════════════════════════════════════════════════════════════════════
#  Screen rendering
# ════════════════════════════════════════════════════════════════════════

STYLE = PtStyle.from_dict({
    "": "#e0e0e0 bg:#2a2a2a",
    "title": "bold #e0e0e0 bg:#333333",
    "hint": "#777777",
    "accent": "#e0af68",
    "input": "#e0e0e0",
    "cursor": "reverse",
    "separator": "#555555",
    "status": "#8a8a8a bg:#333333",
    "status.message": "#e0af68 bg:#333333",
    "select-list.selected": "bold #1a1a1a bg:#7dcfff",
    "select-list.empty": "#777777",
    "focused": "bold #7dcfff bg:#333333",
    "tag.active": "bold #9ece6a",
    "preview.title": "bold #e0e0e0 bg:#333333",
    "preview.tags": "#7aa2f7",
    "summary.stale": "#e0af68",
    "mode.normal": "bold #1a1a1a bg:#7dcfff",
    "mode.search": "bold #1a1a1a bg:#e0af68",
    "mode.command": "bold #1a1a1a bg:#bb9af7",
    "mode.tags": "bold #1a1a1a bg:#9ece6a",
    "mode.preview": "bold #1a1a1a bg:#7aa2f7",
    "mode.input": "bold #1a1a1a bg:#9ece6a",
    # Markdown
    "md.h1": "bold #7dcfff",
    "md.h2": "bold #9ece6a",
    "md.h3": "bold #e0af68",
    "md.code": "#bb9af7",
    "md.code-block": "#a0a0a0",
    "md.bullet": "#7dcfff",
    "md.quote": "#666666",
    "md.rule": "#666666",
    "md.link": "underline #7aa2f7",
    "md.empty": "#666666",
})

_MODE_BADGES = {
    Mode.NORMAL: (" NORMAL ", "class:mode.normal"),
    Mode.SEARCH: (" SEARCH ", "class:mode.search"),
    Mode.COMMAND: (" COMMAND ", "class:mode.command"),
    Mode.TAG_BROWSE: (" TAGS ", "class:mode.tags"),
    Mode.ADD_NOTE_NAME: (" ADD NOTE ", "class:mode.input"),
    Mode.ADD_NOTE_TAGS: (" ADD NOTE ", "class:mode.input"),
    Mode.EDIT_TAGS_ADD: (" EDIT TAGS [+] ", "class:mode.input"),
    Mode.EDIT_TAGS_REMOVE: (" EDIT TAGS [-] ", "class:mode.input"),
}

_EDIT_TAG_HINTS = [("ret", "apply"), ("tab", "toggle add/remove"), ("esc", "cancel")]
_MODE_HINTS = {
    Mode.NORMAL: [("q", "quit"), ("j/k", "move"), ("/", "search"), ("tab", "tags"),
                  (":", "command"), ("esc", "hide summary")],
    Mode.SEARCH: [("ret", "confirm"), ("esc", "cancel")],
    Mode.COMMAND: [("o", "open"), ("a", "add"), ("t", "tags"),
                   ("s", "summarize"), ("esc", "cancel")],
    Mode.TAG_BROWSE: [("j/k", "move"), ("ret", "filter"), ("esc", "clear & back"),
                      ("tab", "preview"), (":", "command")],
    Mode.ADD_NOTE_NAME: [("ret", "next"), ("esc", "cancel")],
    Mode.ADD_NOTE_TAGS: [("ret", "open editor"), ("esc", "cancel")],
    Mode.EDIT_TAGS_ADD: _EDIT_TAG_HINTS,
    Mode.EDIT_TAGS_REMOVE: _EDIT_TAG_HINTS,
}
_PREVIEW_BADGE = (" PREVIEW ", "class:mode.preview")
_PREVIEW_HINTS = [("q", "quit"), ("j/k", "scroll"), ("tab", "toggle view"),
                  ("esc", "back"), (":", "command")]


def _fit_fragments(fragments: StyleAndTextTuples, width: int,
                   fill_style: str = "") -> StyleAndTextTuples:
    """Cut or pad fragments to exactly ``width`` display cells."""
    result: StyleAndTextTuples = []
    used = 0
    full = False
    for style, text, *_ in fragments:
        chars = []
        for c in text:
            # Control characters would move the terminal cursor.
            if c < " " or c == "\x7f":
                c = " "
            cw = get_cwidth(c)
            if used + cw > width:
                full = True
                break
            chars.append(c)
            used += cw
        if chars:
            result.append((style, "".join(chars)))
        if full:
            break
    if used < width:
        result.append((fill_style, " " * (width - used)))
    return result


def _wrap_starts(text: str, width: int) -> list[int]:
    """Return the source indices where each visual line starts.

    Lines break after the last space that fits; a word wider than the line
    is split where it overflows.
    """
    if not text or width <= 0:
        return [0]
    starts = [0]
    x = 0
    last_space_i = None
    last_space_x = 0
    for i, c in enumerate(text):
        cw = get_cwidth(c)
        if x + cw > width:
            if last_space_i is not None:
                starts.append(last_space_i + 1)
                x -= last_space_x + 1
                last_space_i = None
            else:
                starts.append(i)
                x = 0
        if c == " ":
            last_space_i = i
            last_space_x = x
        x += cw
    return starts


def _slice_fragments(fragments: StyleAndTextTuples, start: int, end: int) -> StyleAndTextTuples:
    result: StyleAndTextTuples = []
    pos = 0
    for style, text, *_ in fragments:
        lo, hi = max(start, pos), min(end, pos + len(text))
        if lo < hi:
            result.append((style, text[lo - pos:hi - pos]))
        pos += len(text)
    return result


def wrap_line(line: StyleAndTextTuples, width: int) -> list[StyleAndTextTuples]:
    """Word-wrap one styled line; code-block lines are never re-wrapped."""
    if any("md.code-block" in style for style, *_ in line):
        return [line]
    text = "".join(t for _, t, *__ in line)
    bounds = _wrap_starts(text, width) + [len(text)]
    return [_slice_fragments(line, a, b) for a, b in zip(bounds, bounds[1:])]


def _pane_title(text: str, width: int, focused: bool) -> StyleAndTextTuples:
    style = "class:title class:focused" if focused else "class:title"
    return _fit_fragments([(style, text)], width, style)


def _pad_rows(rows: list[StyleAndTextTuples], width: int, height: int) -> list[StyleAndTextTuples]:
    while len(rows) < height:
        rows.append(_fit_fragments([], width))
    return rows[:height]


def _notes_pane(state: AppState, width: int, height: int) -> list[StyleAndTextTuples]:
    title = " Notes"
    if state.tag_filters:
        title += " [" + ", ".join(state.tag_filters) + "]"
    title += f" ({len(state.filtered)})"
    rows = [_pane_title(title, width, state.focus is Focus.NOTES)]
    list_height = height - 1
    if not state.filtered:
        msg = "No matching notes." if state.notes else "No notes yet. Press :a to add one."
        rows.append(_fit_fragments([("class:select-list.empty", f"  {msg}")], width))
    else:
        top = max(0, state.selected - list_height + 1)
        for pos in range(top, min(len(state.filtered), top + list_height)):
            title = state.notes[state.filtered[pos]].title
            if pos == state.selected:
                rows.append(_fit_fragments(
                    [("class:select-list.selected", f" > {title}")], width,
                    "class:select-list.selected"))
            else:
                rows.append(_fit_fragments([("", f"   {title}")], width))
    return _pad_rows(rows, width, height)


def _tags_pane(state: AppState, width: int, height: int) -> list[StyleAndTextTuples]:
    focused = state.focus is Focus.TAGS
    rows = [_pane_title(" Tags", width, focused)]
    list_height = height - 1
    if not state.visible_tags:
        rows.append(_fit_fragments([("class:select-list.empty", "  No tags")], width))
        return _pad_rows(rows, width, height)
    top = max(0, state.selected_tag - list_height + 1)
    for pos in range(top, min(len(state.visible_tags), top + list_height)):
        name, count = state.visible_tags[pos]
        active = name in state.tag_filters
        marker = "*" if active else " "
        if focused and pos == state.selected_tag:
            rows.append(_fit_fragments(
                [("class:select-list.selected", f" >{marker} {name} ({count})")], width,
                "class:select-list.selected"))
        else:
            rows.append(_fit_fragments(
                [("class:tag.active" if active else "", f"  {marker} {name} ({count})")], width))
    return _pad_rows(rows, width, height)


def _preview_content(state: AppState) -> tuple[str, str, list[StyleAndTextTuples]]:
    """Header text, header style and unwrapped lines for the preview pane."""
    note = state.selected_note()
    header_style = "class:preview.title"
    if state.focus is Focus.PREVIEW:
        header_style += " class:focused"
    if note is None:
        return " Preview", header_style, [[("class:hint", "No note selected")]]
    if state.visible_summary() is not None:
        title = f" {note.title} [Summary]"
        if state.summary_stale:
            title += " (outdated)"
            header_style += " class:summary.stale"
        return title, header_style, render_markdown(state.summary_text)
    lines: list[StyleAndTextTuples] = []
    if note.tags:
        lines.append([("class:preview.tags", "tags: " + ", ".join(note.tags))])
        lines.append([])
    lines.extend(render_markdown(note.body))
    return f" {note.title} [Note]", header_style, lines


def _preview_lines(state: AppState, width: int) -> list[StyleAndTextTuples]:
    _, _, lines = _preview_content(state)
    return [visual for line in lines for visual in wrap_line(line, width - 1)]


def _preview_pane(state: AppState, width: int, height: int) -> list[StyleAndTextTuples]:
    title, header_style, _ = _preview_content(state)
    rows = [_fit_fragments([(header_style, title)], width, header_style)]
    visual = _preview_lines(state, width)
    body_height = height - 1
    top = min(state.preview_scroll, max(0, len(visual) - body_height))
    for line in visual[top:top + body_height]:
        rows.append(_fit_fragments([("", " ")] + line, width))
    return _pad_rows(rows, width, height)


def _input_row(state: AppState) -> StyleAndTextTuples:
    mode = state.mode
    cursor = ("class:cursor", " ")
    if mode is Mode.SEARCH:
        return [("class:accent", " Search: "), ("class:input", "/" + state.search_query), cursor]
    if mode is Mode.COMMAND:
        return [("class:accent", " :"), cursor]
    if mode is Mode.ADD_NOTE_NAME:
        return [("class:accent", " New note name: "), ("class:input", state.name_buffer), cursor]
    if mode is Mode.ADD_NOTE_TAGS:
        return [("class:accent", f" Tags for '{state.name_buffer}' (space-separated): "),
                ("class:input", state.tags_buffer), cursor]
    if mode in (Mode.EDIT_TAGS_ADD, Mode.EDIT_TAGS_REMOVE):
        note = state.selected_note()
        verb = "Add tags to" if mode is Mode.EDIT_TAGS_ADD else "Remove tags from"
        target = note.title if note else ""
        return [("class:accent", f" {verb} '{target}': "),
                ("class:input", state.tags_buffer), cursor]
    row: StyleAndTextTuples = []
    if state.search_query:
        row.append(("class:hint", f" Filter: /{state.search_query}"))
    if state.tag_filters:
        row.append(("class:hint", " Tags: " + ", ".join(state.tag_filters)))
    return row


def _status_row(state: AppState) -> StyleAndTextTuples:
    if state.mode is Mode.NORMAL and state.focus is Focus.PREVIEW:
        (badge, badge_style), hints = _PREVIEW_BADGE, _PREVIEW_HINTS
    else:
        badge, badge_style = _MODE_BADGES[state.mode]
        hints = _MODE_HINTS[state.mode]
    row: StyleAndTextTuples = [(badge_style, badge), ("class:status", " ")]
    if state.status_message:
        row.append(("class:status.message", state.status_message))
        return row
    for i, (key, desc) in enumerate(hints):
        if i:
            row.append(("class:status", "  "))
        row.append(("class:status class:accent bold", key))
        row.append(("class:status", f" {desc}"))
    return row


@dataclass(frozen=True)
class _Layout:
    width: int
    height: int
    body_height: int
    left_width: int
    right_width: int
    notes_height: int

    @classmethod
    def compute(cls, width: int, height: int) -> _Layout:
        width = max(width, 20)
        height = max(height, 3)
        body_height = height - 2
        left_width = max(12, width * 3 // 10)
        # Notes get 60% of the left column, tags the rest.
        notes_height = body_height if body_height < 4 else max(2, body_height * 3 // 5)
        return cls(width, height, body_height, left_width,
                   max(1, width - left_width - 1), notes_height)


def preview_max_scroll(state: AppState, width: int, height: int) -> int:
    """Largest useful preview offset for a terminal of the given size."""
    layout = _Layout.compute(width, height)
    visual = _preview_lines(state, layout.right_width)
    return max(0, len(visual) - (layout.body_height - 1))


def render_screen(state: AppState, width: int, height: int) -> list[StyleAndTextTuples]:
    """Project AppState onto ``height`` rows of styled fragments."""
    layout = _Layout.compute(width, height)
    left = _notes_pane(state, layout.left_width, layout.notes_height)
    tags_height = layout.body_height - layout.notes_height
    if tags_height:
        left += _tags_pane(state, layout.left_width, tags_height)
    right = _preview_pane(state, layout.right_width, layout.body_height)
    rows = [l + [("class:separator", "│")] + r for l, r in zip(left, right)]
    rows.append(_fit_fragments(_input_row(state), layout.width))
    # Writing the bottom-right cell scrolls some terminals.
    rows.append(_fit_fragments(_status_row(state), layout.width - 1, "class:status"))
    return rows


class Painter:
    """Writes render_screen() rows to a prompt_toolkit output."""

    def __init__(self, output: Output, style: PtStyle = STYLE):
        self.output = output
        self.style = style
        self._size: Optional[Size] = None

    def paint(self, state: AppState) -> None:
        size = self.output.get_size()
        # A resized terminal may keep stale cells outside the new layout.
        if self._size is not None and size != self._size:
            self.output.erase_screen()
        self._size = size
        for y, row in enumerate(render_screen(state, size.columns, size.rows)):
            self.output.cursor_goto(y + 1, 1)
            print_formatted_text(self.output, row, self.style)
        self.output.flush()


# ════════════════════════════════════════════════════════════════════════
#  Event loop
# ════════════════════════════════════════════════════════════════════════


class EventLoop:
    """Render, wait for one key, dispatch it; until quit is requested."""

    def __init__(self, state: AppState, machine: ModeMachine,
                 reader: KeyReader, painter: Painter):
        self.state = state
        self.machine = machine
        self.reader = reader
        self.painter = painter

    def run(self) -> None:
        while not self.state.quit_requested:
            self.painter.paint(self.state)
            try:
                event = self.reader.next_event()
            except EOFError:
                logger.info("Input closed, leaving")
                break
            if event.key is Key.RESIZE:
                logger.debug("Terminal resized to {}", self.painter.output.get_size())
                continue
            self.machine.dispatch(event)


def run_tui(store: NoteStore, settings: Settings, initial_query: str = "") -> None:
    """Run the interactive browser until the user quits."""
    if not (sys.stdin.isatty() and sys.stdout.isatty()):
        raise TerminalError("scrap needs an interactive terminal.")
    state = AppState(store.list_notes())
    if initial_query:
        state.set_search_query(initial_query)
    session = TerminalSession(create_input(), create_output())
    painter = Painter(session.output)
    machine = ModeMachine(
        state, store, session,
        editor=functools.partial(edit_text, editor=settings.editor),
        summarizer=functools.partial(
            summarize_note,
            api_key=settings.api_key,
            model=settings.summary_model,
            timeout=settings.summary_timeout,
        ),
        redraw=lambda: painter.paint(state),
        viewport=session.output.get_size,
    )
    reader = KeyReader(session.input)
    loop = EventLoop(state, machine, reader, painter)
    logger.info("Starting with {} notes", len(state.notes))
    with session.session(), reader.resize_events():
        loop.run()


# ════════════════════════════════════════════════════════════════════════
#  Command line
# ════════════════════════════════════════════════════════════════════════


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except ScrapError as exc:
        raise click.ClickException(str(exc)) from exc


def _store(ctx: click.Context) -> NoteStore:
    store = NoteStore(ctx.obj.db_path)
    ctx.call_on_close(store.close)
    return store


@click.group(invoke_without_command=True)
@click.pass_context
def cli(ctx):
    """A terminal notebook for tagged markdown notes.

    Run without a command to browse notes interactively.
    """
    settings = Settings.from_env()
    configure_logging(settings)
    ctx.obj = settings
    if ctx.invoked_subcommand is None:
        with _cli_errors():
            run_tui(_store(ctx), settings)


@cli.command()
@click.argument("query", required=False, default="")
@click.pass_context
def find(ctx, query):
    """Browse notes, optionally starting with a search filter."""
    with _cli_errors():
        run_tui(_store(ctx), ctx.obj, initial_query=query)


@cli.command()
@click.argument("name")
@click.argument("tags", nargs=-1)
@click.pass_context
def add(ctx, name, tags):
    """Create a new note in the editor."""
    with _cli_errors():
        validate_name(name)
        validate_tags(tags)
        store = _store(ctx)
        if store.get_note(name) is not None:
            raise ValidationError(f"Note '{name}' already exists. Use 'open' to edit it.")
        body = edit_text("", name, editor=ctx.obj.editor)
        store.insert_note(name, body, list(tags))
    click.echo(f"Note '{name}' created.")


@cli.command("open")
@click.argument("name")
@click.pass_context
def open_(ctx, name):
    """Edit an existing note in the editor."""
    with _cli_errors():
        validate_name(name)
        store = _store(ctx)
        note = store.require_note(name)
        body = edit_text(note.body, name, editor=ctx.obj.editor)
        if body == note.body:
            click.echo("No changes made.")
            return
        store.update_body(note.id, body)
        store.mark_summary_stale(note.id)
    click.echo(f"Note '{name}' updated.")


@cli.command()
@click.argument("name")
@click.pass_context
def delete(ctx, name):
    """Delete a note."""
    with _cli_errors():
        validate_name(name)
        deleted = _store(ctx).delete_note(name)
    click.echo(f"Note '{name}' deleted." if deleted else f"Note '{name}' not found.")


@cli.command("edit-tag")
@click.option("--add", "adding", is_flag=True, help="Add the tags.")
@click.option("--delete", "deleting", is_flag=True, help="Remove the tags.")
@click.argument("name")
@click.argument("tags", nargs=-1)
@click.pass_context
def edit_tag(ctx, adding, deleting, name, tags):
    """Add or remove tags on a note."""
    if adding and deleting:
        raise click.UsageError("Cannot specify both --add and --delete")
    if not (adding or deleting):
        raise click.UsageError("Must specify --add or --delete")
    if not tags:
        raise click.UsageError("Must provide at least one tag.")
    with _cli_errors():
        validate_name(name)
        validate_tags(tags)
        store = _store(ctx)
        note = store.require_note(name)
        updated = add_tags(note.tags, tags) if adding else remove_tags(note.tags, tags)
        store.update_tags(note.id, updated)
    click.echo(f"Tags {'added to' if adding else 'removed from'} '{name}'.")


@cli.command("list")
@click.option("--tag", help="Only notes carrying this tag.")
@click.pass_context
def list_(ctx, tag):
    """List note titles, most recent first."""
    with _cli_errors():
        notes = _store(ctx).list_notes()
    for note in notes:
        if tag is None or tag in note.tags:
            click.echo(note.title)


@cli.command()
@click.argument("name")
@click.pass_context
def read(ctx, name):
    """Print a note's markdown."""
    with _cli_errors():
        note = _store(ctx).require_note(name)
    click.echo(note.body, nl=False)


@cli.command()
@click.argument("name")
@click.argument("tags", nargs=-1)
@click.pass_context
def write(ctx, name, tags):
    """Replace (or create) a note with text from stdin."""
    content = click.get_text_stream("stdin").read()
    with _cli_errors():
        validate_tags(tags)
        store = _store(ctx)
        note = store.get_note(name)
        if note is None:
            validate_name(name)
            store.insert_note(name, content, list(tags))
            return
        store.update_body(note.id, content)
        if tags:
            store.update_tags(note.id, list(tags))
        store.mark_summary_stale(note.id)


@cli.command()
@click.argument("name")
@click.pass_context
def append(ctx, name):
    """Append text from stdin to a note."""
    content = click.get_text_stream("stdin").read()
    with _cli_errors():
        store = _store(ctx)
        note = store.require_note(name)
        store.update_body(note.id, f"{note.body}\n{content}")
        store.mark_summary_stale(note.id)


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def export(ctx, path):
    """Write every note to a JSON file."""
    with _cli_errors():
        notes = _store(ctx).export_notes()
    data = {"version": 1, "exported_at": int(time.time()), "notes": notes}
    try:
        Path(path).write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    except OSError as exc:
        raise click.ClickException(f"Failed to create file: {path} ({exc})") from exc
    click.echo(f"Exported {len(notes)} notes to {path}")


@cli.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--overwrite", is_flag=True, help="Delete existing notes first.")
@click.pass_context
def import_(ctx, path, overwrite):
    """Load notes from a JSON export."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        records = [
            {"title": n["title"], "note": n["note"], "tags": list(n.get("tags", [])),
             "created_at": n.get("created_at"), "updated_at": n.get("updated_at")}
            for n in data["notes"]
        ]
    except (OSError, ValueError, KeyError, TypeError) as exc:
        raise click.ClickException(
            "Failed to parse export file. Is it a valid scrap export?") from exc
    with _cli_errors():
        imported, skipped = _store(ctx).import_notes(records, overwrite=overwrite)
    if overwrite:
        click.echo(f"Imported {imported} notes from {path}")
    else:
        click.echo(f"Imported {imported} notes, skipped {skipped} duplicates from {path}")


# ════════════════════════════════════════════════════════════════════════
#  Entry point
# ════════════════════════════════════════════════════════════════════════


def main() -> None:
    cli(prog_name="scrap")


if __name__ == "__main__":
    main()
