"""Shared data types for codebase indexing, storage and code-graph queries."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

EMPTY_STRING = ""
CODEBASE_INDEX_DIR = ".shenma"
SYNC_METADATA_DIR = ".shenma_sync"
INDEX_FILE_NAME = "index.scip"
NAME_CODEBASE = "codebase"
FILE_PATH_PARAM = "FilePath"

_SYNC_VERSION_KEY_FMT = "codebase_indexer:sync_version:{}"


def sync_version_key(sync_id: int) -> str:
    """Return the Redis key under which versions of a sync are stored."""
    return _SYNC_VERSION_KEY_FMT.format(int(sync_id))


@dataclass
class Codebase:
    """A codebase stored at an absolute location."""

    full_path: str


class FileOp(str, Enum):
    """Change applied to a file during a sync."""

    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass
class SyncFile:
    """A single changed file in a sync."""

    path: str
    op: FileOp


@dataclass
class SyncMetadataFile:
    """Metadata file describing one upload of changed files."""

    client_id: str = ""
    codebase_path: str = ""
    extra_metadata: str = ""
    file_list: dict[str, str] = field(default_factory=dict)
    timestamp: int = 0

    def to_json(self) -> str:
        """Serialise with the wire field names, indented by two spaces."""
        return json.dumps(
            {
                "clientId": self.client_id,
                "codebasePath": self.codebase_path,
                "extraMetadata": self.extra_metadata,
                "fileList": dict(self.file_list),
                "timestamp": self.timestamp,
            },
            indent=2,
            ensure_ascii=False,
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> "SyncMetadataFile":
        """Parse a metadata document; raise ValueError if it is not a JSON object."""
        if isinstance(data, (bytes, bytearray)):
            data = bytes(data).decode("utf-8", errors="replace")
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("sync metadata must be a JSON object")
        file_list = obj.get("fileList") or {}
        if not isinstance(file_list, dict):
            raise ValueError("fileList must be a JSON object")
        return cls(
            client_id=obj.get("clientId") or "",
            codebase_path=obj.get("codebasePath") or "",
            extra_metadata=obj.get("extraMetadata") or "",
            file_list={str(k): str(v) for k, v in file_list.items()},
            timestamp=int(obj.get("timestamp") or 0),
        )


@dataclass
class FileInfo:
    """Information about a file or directory."""

    name: str
    path: str
    size: int = 0
    mod_time: datetime | None = None
    is_dir: bool = False
    mode: int = 0

    def _info_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"Language": self.name, "path": self.path}
        if self.size:
            out["size"] = self.size
        if self.mod_time is not None:
            out["modTime"] = self.mod_time.isoformat()
        out["IsDir"] = self.is_dir
        out["Mode"] = self.mode
        return out


@dataclass
class TreeNode(FileInfo):
    """A node of a directory tree; only directories have children."""

    children: list["TreeNode"] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the node as a JSON-ready mapping with the wire field names."""
        out = self._info_dict()
        if self.children:
            out["children"] = [child.to_dict() for child in self.children]
        return out


class SymbolRole(str, Enum):
    DEFINITION = "definition"
    REFERENCE = "reference"
    IMPORT = "import"
    IMPLEMENTATION = "implementation"
    TYPE_DEFINITION = "type_definition"


class SymbolType(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    PACKAGE = "package"
    VARIABLE = "variable"


class NodeType(str, Enum):
    DEFINITION = "definition"
    UNKNOWN = "unknown"
    REFERENCE = "reference"
    IMPLEMENTATION = "implementation"


@dataclass
class Position:
    """A source range; lines and columns count from 1."""

    start_line: int = 0
    start_column: int = 0
    end_line: int = 0
    end_column: int = 0


def _position_dict(pos: Position) -> dict[str, int]:
    return {
        "startLine": pos.start_line,
        "startColumn": pos.start_column,
        "endLine": pos.end_line,
        "endColumn": pos.end_column,
    }


def to_position(ranges: list[int]) -> Position:
    """Convert a zero-based 3- or 4-element range into a one-based Position.

    Any other length gives an empty Position.
    """
    values = list(ranges)
    if len(values) == 3:
        line, start_col, end_col = values
        return Position(line + 1, start_col + 1, line + 1, end_col + 1)
    if len(values) == 4:
        start_line, start_col, end_line, end_col = values
        return Position(start_line + 1, start_col + 1, end_line + 1, end_col + 1)
    return Position()


@dataclass
class GraphNode:
    """A node in a symbol relation tree."""

    file_path: str = ""
    symbol_name: str = ""
    identifier: str = ""
    position: Position = field(default_factory=Position)
    content: str = ""
    node_type: str = ""
    children: list["GraphNode"] = field(default_factory=list)
    caller: "GraphNode | None" = None

    def to_dict(self) -> dict[str, Any]:
        """Return the node as a JSON-ready mapping; the identifier is omitted."""
        out: dict[str, Any] = {
            "FilePath": self.file_path,
            "symbolName": self.symbol_name,
            "position": _position_dict(self.position),
            "content": self.content,
            "nodeType": self.node_type,
            "children": [child.to_dict() for child in self.children],
        }
        if self.caller is not None:
            out["caller"] = self.caller.to_dict()
        return out


@dataclass
class CodeFile:
    codebase_id: int = 0
    codebase_path: str = ""
    codebase_name: str = ""
    name: str = ""
    path: str = ""
    content: bytes = b""
    language: str = ""


@dataclass
class CodeChunk:
    """A chunk of code; range is zero-based [start_line, start_col, end_line, end_col]."""

    codebase_id: int = 0
    codebase_path: str = ""
    codebase_name: str = ""
    language: str = ""
    content: bytes = b""
    file_path: str = ""
    range: list[int] = field(default_factory=list)
    token_count: int = 0


@dataclass
class CodebaseSyncMessage:
    """A sync notification received from the message queue."""

    sync_id: int = 0
    codebase_id: int = 0
    codebase_path: str = ""
    codebase_name: str = ""
    sync_time: datetime | None = None


@dataclass
class Message:
    """A message read from a queue."""

    id: str
    body: bytes
    topic: str
    timestamp: datetime
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class ListOptions:
    recursive: bool = False
    limit: int = 0
    offset: int = 0
    exclude_pattern: re.Pattern[str] | None = None
    include_pattern: re.Pattern[str] | None = None


@dataclass
class TreeOptions:
    max_depth: int = 0
    exclude_pattern: re.Pattern[str] | None = None
    include_pattern: re.Pattern[str] | None = None


@dataclass
class ReadOptions:
    start_line: int = 0
    end_line: int = 0


@dataclass
class SemanticFileItem:
    content: str = ""
    file_path: str = ""
    score: float = 0.0


@dataclass
class StructureItem:
    name: str = ""
    item_type: str = ""
    position: Position = field(default_factory=Position)
    content: str = ""


@dataclass
class RelationQueryOptions:
    client_id: str = ""
    codebase_path: str = ""
    file_path: str = ""
    start_line: int = 0
    start_column: int = 0
    end_line: int = 0
    end_column: int = 0
    symbol_name: str = ""
    include_content: int = 0
    max_layer: int = 1


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"