"""MCP Server for fpbackup - exposes the backup engine to AI agents.

Tools exposed:
- backup_run: Take a Full or Incremental backup
- backup_verify: Verify a backup against its recorded fingerprints
- backup_restore: Restore the latest backed-up state into a directory
- backup_cleanup: Expire backups older than the retention window
- backup_list: List backups

Every tool returns a JSON document. Failures are reported as
{"error": {"code": ..., "message": ...}}.
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import Tool, TextContent

from fpbackup.backup import (
    BackupResult,
    list_backups,
    run_backup,
    run_cleanup,
    run_restore,
    run_verify,
)
from fpbackup.config import (
    Configuration,
    ConfigurationError,
    ValidationError,
    parse_config,
)
from fpbackup.errors import NotFoundError, ParseError


TOOL_DEFINITIONS = [
    (
        "backup_run",
        "Take a backup now. Incrementals fall back to Full when no usable base snapshot exists.",
        {
            "backup_type": ("string", "'full' or 'incremental' (default: incremental)"),
            "name": ("string", "Optional backup name"),
        },
        [],
    ),
    (
        "backup_verify",
        "Re-fingerprint a backup and report verified, corrupted, missing and extra files.",
        {"backup": ("string", "Backup name (default: the newest backup)")},
        [],
    ),
    (
        "backup_restore",
        "Restore the latest backed-up state (newest Full plus later Incrementals) into a directory.",
        {"destination": ("string", "Directory to restore into")},
        ["destination"],
    ),
    (
        "backup_cleanup",
        "Delete backups older than the retention window. Never deletes every backup.",
        {
            "days": ("integer", "Override retention.days"),
            "name_filter": ("string", "Only consider backups whose name matches (substring or glob)"),
        },
        [],
    ),
    (
        "backup_list",
        "List backups oldest first with type, timestamp and file count.",
        {},
        [],
    ),
]

TOOL_ARGUMENTS = {name: set(properties) for name, _, properties, _ in TOOL_DEFINITIONS}


def _object_schema(properties: Dict[str, tuple], required: List[str]) -> dict:
    """JSON schema for a tool taking named scalar arguments."""
    return {
        "type": "object",
        "properties": {
            name: {"type": json_type, "description": description}
            for name, (json_type, description) in properties.items()
        },
        "required": list(required),
    }


class FingerprintBackupMCPServer:
    """
    MCP Server exposing backup, verify, restore and cleanup operations.

    Configuration is loaded from the same config.toml file as the CLI.
    Blocking engine calls run in the default executor.
    """

    def __init__(self, config_path: Optional[Path] = None, config: Optional[Configuration] = None):
        """
        Initialize the MCP server.

        Args:
            config_path: Path to configuration file. Defaults to ~/.config/fpbackup/config.toml
            config: Pre-loaded configuration; config_path is ignored when given
        """
        self.config_path = config_path
        self._config: Optional[Configuration] = config
        self.server = Server("fpbackup")
        self._register_tools()

    def _load_config(self) -> Configuration:
        """
        Load configuration from file once.

        Raises:
            ConfigurationError: If config file is missing or invalid
            ValidationError: If config values have wrong types
        """
        if self._config is None:
            self._config = parse_config(self.config_path)
        return self._config

    def _error_response(self, code: str, message: str) -> str:
        """Create a JSON error response."""
        return json.dumps({
            "error": {
                "code": code,
                "message": message
            }
        }, indent=2)

    def _success_response(self, data: Any) -> str:
        """Create a JSON success response."""
        return json.dumps(data, indent=2, default=str)

    async def _run_blocking(self, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: func(*args, **kwargs))

    def _register_tools(self):
        """Register the tool list and the call dispatcher with the server."""
        handlers = {
            "backup_run": self._tool_backup_run,
            "backup_verify": self._tool_backup_verify,
            "backup_restore": self._tool_backup_restore,
            "backup_cleanup": self._tool_backup_cleanup,
            "backup_list": self._tool_backup_list,
        }

        @self.server.list_tools()
        async def list_tools() -> List[Tool]:
            return [
                Tool(name=name, description=description, inputSchema=_object_schema(properties, required))
                for name, description, properties, required in TOOL_DEFINITIONS
            ]

        @self.server.call_tool()
        async def call_tool(name: str, arguments: Dict[str, Any]) -> List[TextContent]:
            handler = handlers.get(name)
            if handler is None:
                text = self._error_response("UNKNOWN_TOOL", f"Unknown tool: {name}")
                return [TextContent(type="text", text=text)]

            known = TOOL_ARGUMENTS[name]
            kwargs = {k: v for k, v in (arguments or {}).items() if k in known}
            try:
                text = await handler(**kwargs)
            except Exception as e:
                text = self._error_response("INTERNAL_ERROR", str(e))
            return [TextContent(type="text", text=text)]

    async def _tool_backup_run(self, backup_type: str = "incremental", name: Optional[str] = None) -> str:
        """Take a backup and return the BackupResult as JSON."""
        try:
            config = self._load_config()
        except (ConfigurationError, ValidationError) as e:
            return self._error_response("CONFIG_ERROR", str(e))

        result: BackupResult = await self._run_blocking(
            run_backup, config, backup_type=backup_type, name=name
        )
        if not result.success:
            return self._error_response("BACKUP_FAILED", result.error_message or "Unknown error")
        return self._success_response(result.to_dict())

    async def _tool_backup_verify(self, backup: Optional[str] = None) -> str:
        """
        Verify a backup.

        Integrity findings are part of a successful response; only a missing
        backup or unreadable state is an error.
        """
        try:
            config = self._load_config()
        except (ConfigurationError, ValidationError) as e:
            return self._error_response("CONFIG_ERROR", str(e))

        try:
            result = await self._run_blocking(run_verify, config, backup)
        except NotFoundError as e:
            return self._error_response("NOT_FOUND", str(e))
        except ParseError as e:
            return self._error_response("PARSE_ERROR", str(e))
        return self._success_response(result.to_dict())

    async def _tool_backup_restore(self, destination: str = "") -> str:
        """Restore the latest state into destination."""
        if not destination:
            return self._error_response("INVALID_ARGUMENT", "destination is required")
        try:
            config = self._load_config()
        except (ConfigurationError, ValidationError) as e:
            return self._error_response("CONFIG_ERROR", str(e))

        try:
            result = await self._run_blocking(run_restore, config, Path(destination).expanduser())
        except NotFoundError as e:
            return self._error_response("NOT_FOUND", str(e))
        except (ParseError, ValidationError) as e:
            return self._error_response("PARSE_ERROR", str(e))

        if not result.success:
            return self._error_response("RESTORE_FAILED", result.error_message or "Unknown error")
        return self._success_response(result.to_dict())

    async def _tool_backup_cleanup(self, days: Optional[int] = None, name_filter: Optional[str] = None) -> str:
        """Expire old backups."""
        if days is not None and (not isinstance(days, int) or isinstance(days, bool) or days < 0):
            return self._error_response("INVALID_ARGUMENT", "days must be a non-negative integer")
        try:
            config = self._load_config()
        except (ConfigurationError, ValidationError) as e:
            return self._error_response("CONFIG_ERROR", str(e))

        result = await self._run_blocking(
            run_cleanup, config, retention_days=days, name_filter=name_filter
        )
        return self._success_response(result.to_dict())

    async def _tool_backup_list(self) -> str:
        """List backups."""
        try:
            config = self._load_config()
        except (ConfigurationError, ValidationError) as e:
            return self._error_response("CONFIG_ERROR", str(e))

        try:
            backups = await self._run_blocking(list_backups, config)
        except NotFoundError:
            backups = []
        except ParseError as e:
            return self._error_response("PARSE_ERROR", str(e))
        return self._success_response({
            "count": len(backups),
            "backups": [backup.to_dict() for backup in backups],
        })

    async def run(self):
        """Start the MCP server using stdio transport."""
        async with stdio_server() as (read_stream, write_stream):
            await self.server.run(
                read_stream,
                write_stream,
                self.server.create_initialization_options()
            )


def run_server(config_path: Optional[Path] = None):
    """
    Entry point for MCP server.

    This function is called by the CLI `fpbackup mcp-server` command.
    """
    server = FingerprintBackupMCPServer(config_path=config_path)
    asyncio.run(server.run())
