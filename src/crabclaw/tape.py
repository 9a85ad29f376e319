"""
Tape - the append-only session log.

The tape is the single source of conversational truth. Every user input,
tool call, tool result, command record, anchor and assistant reply is
appended here as one JSON object per line. Nothing is ever rewritten:
the only way to clear a tape is reset(), which optionally archives the
old file first.

Anchors mark semantic boundaries. Context reconstruction only looks at
entries after the most recent anchor, while the full log stays on disk
for audit and search.

One TapeStore owns one file. A session must have a single writer; two
processes appending to the same file is undefined.
"""

import json
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from crabclaw.errors import TapeParseError
from crabclaw.types import Role, ToolCall

logger = logging.getLogger(__name__)

TAPE_SUFFIX = ".jsonl"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def tape_name_for(session_key: str) -> str:
    """Map a session key (e.g. `telegram:123`) to a safe tape file stem."""
    name = _UNSAFE_NAME_CHARS.sub("_", session_key.strip())
    name = name.lstrip(".")
    return name or "default"


def _string_leaves(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, dict):
        return [leaf for item in value.values() for leaf in _string_leaves(item)]
    if isinstance(value, list):
        return [leaf for item in value for leaf in _string_leaves(item)]
    return []


def _searchable_values(entry: "TapeEntry") -> list[str]:
    values = _string_leaves(entry.content)
    for key in ("tool_name", "tool_call_id"):
        if isinstance(entry.metadata.get(key), str):
            values.append(entry.metadata[key])
    return values


@dataclass(frozen=True)
class TapeEntry:
    """
    One immutable tape record.

    `content` is plain text for messages, or a dict for structured payloads
    (tool calls, anchors, command records). `metadata` holds correlation
    data such as `tool_name`, `tool_call_id` and `kind`.
    """
    sequence_id: int
    timestamp: str
    role: Role
    content: str | dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> str | None:
        return self.metadata.get("kind")

    @property
    def text(self) -> str:
        """Content as text (structured payloads are JSON-encoded)."""
        if isinstance(self.content, str):
            return self.content
        return json.dumps(self.content, ensure_ascii=False, sort_keys=True)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sequence_id": self.sequence_id,
            "timestamp": self.timestamp,
            "role": self.role.value,
            "content": self.content,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TapeEntry":
        try:
            content = data["content"]
            if not isinstance(content, (str, dict)):
                raise TypeError(f"unsupported content type {type(content).__name__}")
            return cls(
                sequence_id=int(data["sequence_id"]),
                timestamp=str(data["timestamp"]),
                role=Role(data["role"]),
                content=content,
                metadata=dict(data.get("metadata") or {}),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TapeParseError(f"invalid tape entry: {e}") from e


@dataclass
class TapeInfo:
    """Summary information about a tape."""
    name: str
    path: str
    entries: int
    anchors: int
    last_anchor: str | None
    entries_since_last_anchor: int


class TapeStore:
    """
    Append-only JSONL tape for one session.

    Entries are loaded once when the store is opened and mirrored in memory;
    every append is written and fsynced before it returns.
    """

    def __init__(self, directory: str | Path, name: str) -> None:
        self.name = name
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"{name}{TAPE_SUFFIX}"
        self._lock = threading.Lock()
        self._entries: list[TapeEntry] = []
        self._next_id = 1
        self._needs_newline = False
        self._load()

    @classmethod
    def for_session(cls, directory: str | Path, session_key: str) -> "TapeStore":
        return cls(directory, tape_name_for(session_key))

    # =========================================================================
    # Writing
    # =========================================================================

    def append(
        self,
        role: Role | str,
        content: str | dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """
        Append one entry and return its sequence id.

        The entry is on disk (flushed and fsynced) when this returns.
        """
        return self._append(Role(role), content, metadata or {}).sequence_id

    def append_message(self, role: Role | str, content: str) -> TapeEntry:
        return self._append(Role(role), content, {})

    def append_tool_call(self, call: ToolCall, text: str = "") -> TapeEntry:
        """Record one model-issued tool call (assistant role)."""
        content: dict[str, Any] = {"tool_call": call.to_dict()}
        if text:
            content["text"] = text
        return self._append(
            Role.ASSISTANT,
            content,
            {"kind": "tool_call", "tool_name": call.name, "tool_call_id": call.id},
        )

    def append_tool_result(
        self,
        call: ToolCall,
        output: str,
        error: dict[str, Any] | None = None,
    ) -> TapeEntry:
        """Record the result (or error) of a tool call (tool role)."""
        metadata: dict[str, Any] = {
            "kind": "tool_result",
            "tool_name": call.name,
            "tool_call_id": call.id,
        }
        if error is not None:
            metadata["error"] = error
        return self._append(Role.TOOL, output, metadata)

    def append_command(self, record: dict[str, Any]) -> TapeEntry:
        """Record an executed command. Command records are audit-only."""
        return self._append(Role.SYSTEM, record, {"kind": "command", "origin": record.get("origin")})

    def append_error(self, error: dict[str, Any]) -> TapeEntry:
        message = error.get("message", "")
        return self._append(
            Role.SYSTEM,
            f"The previous request failed ({error.get('kind', 'error')}): {message}",
            {"kind": "error", "error": error},
        )

    def anchor(self, name: str, state: dict[str, Any] | None = None) -> TapeEntry:
        """Append an anchor, starting a new context window."""
        return self._append(Role.ANCHOR, {"name": name, "state": state or {}}, {"kind": "anchor"})

    def reset(self, archive: bool = False) -> Path | None:
        """
        Clear the tape.

        With archive=True the current file is moved aside with a timestamped
        name first and that path is returned; otherwise it is discarded.
        """
        with self._lock:
            archive_path: Path | None = None
            if self.path.exists():
                if archive:
                    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
                    archive_path = self.path.with_name(f"{self.path.name}.{stamp}.bak")
                    os.replace(self.path, archive_path)
                    logger.info(f"Archived tape {self.name} to {archive_path}")
                else:
                    self.path.unlink()
                    logger.info(f"Discarded tape {self.name}")
            self._entries = []
            self._next_id = 1
            self._needs_newline = False
            return archive_path

    # =========================================================================
    # Reading
    # =========================================================================

    def read_all(self) -> list[TapeEntry]:
        """All entries in append order."""
        with self._lock:
            return list(self._entries)

    def search(self, query: str, limit: int | None = None) -> list[TapeEntry]:
        """
        Case-insensitive substring search over entry text and the tool name
        and call id it carries. Field names of the stored record never match.

        Returns an empty list when nothing matches; never raises.
        """
        needle = query.strip().casefold()
        if not needle:
            return []
        matches: list[TapeEntry] = []
        for entry in self.read_all():
            if any(needle in value.casefold() for value in _searchable_values(entry)):
                matches.append(entry)
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    def anchor_entries(self) -> list[TapeEntry]:
        return [e for e in self.read_all() if e.role == Role.ANCHOR]

    def last_anchor(self) -> TapeEntry | None:
        anchors = self.anchor_entries()
        return anchors[-1] if anchors else None

    def entries_since_last_anchor(self) -> list[TapeEntry]:
        """The suffix of the log after the most recent anchor (all of it if none)."""
        entries = self.read_all()
        for index in range(len(entries) - 1, -1, -1):
            if entries[index].role == Role.ANCHOR:
                return entries[index + 1:]
        return entries

    def info(self) -> TapeInfo:
        entries = self.read_all()
        anchors = [e for e in entries if e.role == Role.ANCHOR]
        last = anchors[-1] if anchors else None
        last_name = None
        if last is not None and isinstance(last.content, dict):
            last_name = last.content.get("name")
        return TapeInfo(
            name=self.name,
            path=str(self.path),
            entries=len(entries),
            anchors=len(anchors),
            last_anchor=last_name,
            entries_since_last_anchor=len(self.entries_since_last_anchor()),
        )

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Internals
    # =========================================================================

    def _append(self, role: Role, content: str | dict[str, Any], metadata: dict[str, Any]) -> TapeEntry:
        with self._lock:
            timestamp = datetime.now(UTC).isoformat(timespec="microseconds")
            if self._entries and timestamp < self._entries[-1].timestamp:
                # Wall clock went backwards; keep timestamps non-decreasing.
                timestamp = self._entries[-1].timestamp
            entry = TapeEntry(
                sequence_id=self._next_id,
                timestamp=timestamp,
                role=role,
                content=content,
                metadata=metadata,
            )
            line = json.dumps(entry.to_dict(), ensure_ascii=False)
            with self.path.open("a", encoding="utf-8") as f:
                if self._needs_newline:
                    f.write("\n")
                    self._needs_newline = False
                f.write(line + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._entries.append(entry)
            self._next_id = entry.sequence_id + 1
            logger.debug(f"tape {self.name}: appended #{entry.sequence_id} ({role.value})")
            return entry

    def _load(self) -> None:
        if not self.path.exists():
            return
        raw = self.path.read_text(encoding="utf-8", errors="replace")
        self._needs_newline = bool(raw) and not raw.endswith("\n")
        for lineno, line in enumerate(raw.splitlines(), start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise TapeParseError("tape line is not a JSON object")
                entry = TapeEntry.from_dict(data)
            except (json.JSONDecodeError, TapeParseError) as e:
                logger.warning(f"Skipping malformed line {lineno} in {self.path}: {e}")
                continue
            self._entries.append(entry)
        if self._entries:
            self._next_id = max(e.sequence_id for e in self._entries) + 1
        logger.debug(f"Loaded tape {self.name} with {len(self._entries)} entries")
