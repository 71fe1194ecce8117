"""
Shared data models.
"""

from __future__ import annotations

import json
import os
import shutil
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: str = "text"


@dataclass(frozen=True)
class ToolUseBlock:
    id: str  # correlation id issued by the model
    name: str
    input: dict[str, Any]
    type: str = "tool_use"


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: str = "tool_result"


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


@dataclass(frozen=True)
class Message:
    role: Role
    content: str | list[ContentBlock]


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    input_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    arguments: dict[str, Any]
    # Set when the model produced arguments that are not a JSON object
    arguments_error: str | None = None


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    payload: Any = None
    error: str | None = None
    is_error: bool = False

    @classmethod
    def success(cls, tool_use_id: str, payload: Any) -> ToolResult:
        return cls(tool_use_id=tool_use_id, payload=payload)

    @classmethod
    def failure(cls, tool_use_id: str, error: str) -> ToolResult:
        return cls(tool_use_id=tool_use_id, error=error, is_error=True)

    def to_block(self) -> ToolResultBlock:
        if self.is_error:
            content = json.dumps({"error": self.error})
        elif isinstance(self.payload, str):
            content = self.payload
        else:
            content = json.dumps(self.payload)
        return ToolResultBlock(tool_use_id=self.tool_use_id, content=content, is_error=self.is_error)


@dataclass(frozen=True)
class ModelResponse:
    text: str
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    usage: dict[str, Any] = field(default_factory=dict)
    model_version: str | None = None


class LifecycleState(Enum):
    DISCONNECTED = "disconnected"
    STARTING = "starting"
    CONNECTED = "connected"
    STOPPING = "stopping"


@dataclass(frozen=True)
class ServerCommand:
    """How to launch a tool server process."""

    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    cwd: str | None = None

    def resolve_executable(self) -> str | None:
        """Absolute path of the executable, or None if it cannot be found."""
        if os.path.sep in self.command or (os.path.altsep and os.path.altsep in self.command):
            path = Path(self.command)
            if self.cwd and not path.is_absolute():
                path = Path(self.cwd) / path
            return str(path) if path.exists() else None
        return shutil.which(self.command)

    def script_path(self) -> str | None:
        """The script argument for interpreter launches (node index.js, python server.py)."""
        if self.args and Path(self.args[0]).suffix in (".js", ".mjs", ".cjs", ".py"):
            path = Path(self.args[0])
            if self.cwd and not path.is_absolute():
                path = Path(self.cwd) / path
            return str(path)
        return None

    def full_env(self) -> dict[str, str]:
        return {**os.environ, **(self.env or {})}

    def describe(self) -> str:
        return " ".join([self.command, *self.args])

    @classmethod
    def for_script(cls, path: str | Path) -> ServerCommand:
        """Pick an interpreter from the script extension: node for JS, python for .py."""
        path = Path(path)
        if path.suffix in (".js", ".mjs", ".cjs"):
            return cls(command="node", args=[str(path)])
        if path.suffix == ".py":
            return cls(command=sys.executable, args=[str(path)])
        return cls(command=str(path))


@dataclass(frozen=True)
class InstallConfig:
    """Location of a tool server package on GitHub."""

    owner: str
    repo: str
    branch: str = "main"
    subdirectory: str | None = None

    def to_dict(self) -> dict[str, str]:
        data = {"owner": self.owner, "repo": self.repo, "branch": self.branch}
        if self.subdirectory:
            data["subdirectory"] = self.subdirectory
        return data
