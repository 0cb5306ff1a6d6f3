from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Iterable

from .config import BridgeSettings, McpServerEntry

logger = logging.getLogger("wa_bridge.tool_config")


def server_key(name: str) -> str:
    """Normalize a server name into an ``mcpServers`` key."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower())


def build_mcp_config(servers: Iterable[McpServerEntry]) -> dict[str, dict[str, dict]]:
    mcp_servers: dict[str, dict] = {}
    for server in servers:
        if not server.enabled:
            continue
        entry: dict = {"command": server.command, "args": list(server.args)}
        if server.env:
            entry["env"] = dict(server.env)
        mcp_servers[server_key(server.name)] = entry
    return {"mcpServers": mcp_servers}


class McpConfigGenerator:
    """Write the enabled tool servers to a JSON file claude reads via --mcp-config.

    The file is rewritten on every call so edits to the server list take
    effect on the next message. Each write goes to a private (0600) temp
    file that is renamed over the target, so a running claude never reads a
    half-written file. With no enabled servers nothing is written
    and "" is returned.
    """

    def __init__(self, servers: Iterable[McpServerEntry], path: Path):
        self.servers = list(servers)
        self.path = Path(path)

    @classmethod
    def from_settings(cls, settings: BridgeSettings) -> "McpConfigGenerator":
        return cls(settings.mcp_servers, settings.mcp_config_path)

    def __call__(self) -> str:
        config = build_mcp_config(self.servers)
        if not config["mcpServers"]:
            return ""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._write(json.dumps(config, indent=2))
        logger.debug("Wrote MCP config with %d server(s) to %s", len(config["mcpServers"]), self.path)
        return str(self.path)

    def _write(self, payload: str) -> None:
        # mkstemp creates the file with mode 0600.
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_name, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
