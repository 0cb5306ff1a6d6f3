from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class UserEntry(BaseModel):
    user_id: str
    project_id: str = "general"


class McpServerEntry(BaseModel):
    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class BridgeSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="wa_bridge_",
        extra="ignore",
        env_file=".env",
        enable_decoding=False,
    )

    # Session
    auth_dir: Path = Path.home() / ".wa-bridge" / "auth"
    reconnect_delay_seconds: float = 3.0
    transport_factory: str = ""  # "package.module:callable"

    # Claude CLI backend
    claude_command: str = "claude"
    claude_model: str = "sonnet"
    claude_max_turns: int = 5
    claude_home: str = ""  # empty = inherit $HOME, falling back to /home/claude
    dispatch_timeout_seconds: float = 120.0
    max_concurrent_dispatches: int = 0  # 0 = unbounded

    system_prompt: str = (
        "You are a helpful assistant providing status updates on projects via WhatsApp.\n"
        "You have access to project-manager MCP tools to check project status, sessions, and activity.\n"
        "\n"
        "When asked about projects:\n"
        "- Use get_project_status to check specific project activity\n"
        "- Use list_projects to see all available projects\n"
        "- Use search_memory to find relevant information\n"
        "\n"
        "Keep responses concise for WhatsApp (under 1000 chars when possible).\n"
        "Use plain text formatting, no markdown.\n"
        "\n"
        "User ID: {user_id}\n"
        "Phone: {external_id}"
    )
    registration_message: str = (
        "Your ID is not registered.\n\n"
        "Your WhatsApp ID: {external_id}\n\n"
        "Go to Settings > WhatsApp and enter this ID in the phone field, then save."
    )
    failure_message: str = "Sorry, I encountered an error. Please try again."

    # Authorization directory: identifier (phone or linked-device id) -> user
    users: dict[str, UserEntry] = Field(default_factory=dict)

    # Tool servers exposed to claude through --mcp-config
    mcp_servers: list[McpServerEntry] = Field(default_factory=list)
    mcp_config_path: Path = Path(tempfile.gettempdir()) / "whatsapp-mcp-config.json"

    log_level: str = "INFO"

    @field_validator("users", mode="before")
    @classmethod
    def _parse_users(cls, value: Any) -> Any:
        """Accept a JSON object or CSV of ``identifier=user_id[/project_id]``."""
        if value is None:
            return {}
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return {}
            if stripped.startswith("{"):
                return cls._parse_users(json.loads(stripped))
            parsed: dict[str, dict[str, str]] = {}
            for part in stripped.split(","):
                identifier, sep, target = part.partition("=")
                if not sep or not identifier.strip() or not target.strip():
                    raise ValueError(f"invalid user entry {part.strip()!r}, expected identifier=user_id[/project_id]")
                user_id, _, project_id = target.strip().partition("/")
                entry = {"user_id": user_id}
                if project_id:
                    entry["project_id"] = project_id
                parsed[identifier.strip()] = entry
            return parsed
        if isinstance(value, dict):
            # Shorthand {"15551234567": "user-1"}
            return {k: ({"user_id": v} if isinstance(v, str) else v) for k, v in value.items()}
        return value

    @field_validator("mcp_servers", mode="before")
    @classmethod
    def _parse_mcp_servers(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return []
            return json.loads(stripped)
        return value

    @field_validator("auth_dir", "mcp_config_path", mode="after")
    @classmethod
    def _expand_paths(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("claude_max_turns", mode="after")
    @classmethod
    def _positive_turns(cls, value: int) -> int:
        if value < 1:
            raise ValueError("claude_max_turns must be at least 1")
        return value

    def redacted_dump(self) -> dict[str, Any]:
        """Settings as JSON-friendly data with MCP server env values masked."""
        data = self.model_dump(mode="json")
        for server in data.get("mcp_servers", []):
            server["env"] = {key: "***" for key in server.get("env", {})}
        return data
