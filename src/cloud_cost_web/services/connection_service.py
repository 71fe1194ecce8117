"""
Connection Service

Tracks which GitHub tool server is installed and connected, and serializes connect and
disconnect requests from the administrative routes.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Literal

from cloud_cost_shared.data_models import InstallConfig, ToolDescriptor
from cloud_cost_shared.exceptions import CloudCostError, UnexpectedExitError
from cloud_cost_shared.github_installer import GitHubInstaller
from cloud_cost_shared.mcp_lifecycle import ToolServerManager

Status = Literal["disconnected", "installing", "connecting", "connected", "error"]


class ConnectInProgressError(CloudCostError):
    """A connect for a different configuration is already running."""


@dataclass
class StatusState:
    status: Status = "disconnected"
    config: InstallConfig | None = None
    tools: list[ToolDescriptor] | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status}
        if self.config is not None:
            data["config"] = self.config.to_dict()
        if self.tools is not None:
            data["tools"] = [t.to_dict() for t in self.tools]
        if self.message:
            data["message"] = self.message
        return data


class ConnectionService:
    def __init__(
        self,
        installer: GitHubInstaller,
        manager: ToolServerManager,
        logger: logging.Logger,
    ) -> None:
        self.installer = installer
        self.manager = manager
        self.logger = logger
        self.state = StatusState()
        self._connect_task: asyncio.Task[dict[str, Any]] | None = None
        self._pending_config: InstallConfig | None = None
        self._lock = asyncio.Lock()

        manager.subscribe("unexpected_exit", self._on_unexpected_exit)

    @property
    def connecting(self) -> bool:
        return self._connect_task is not None and not self._connect_task.done()

    async def connect(self, config: InstallConfig) -> dict[str, Any]:
        """
        Install `config` from GitHub, start it and list its tools.

        A request for the configuration already being connected joins the running
        attempt; a request for the configuration already connected returns the status.

        Raises:
            ConnectInProgressError: If a connect for a different configuration is running.
            InstallError, StartupError: If installing or starting the server fails.
        """
        if self.connecting:
            assert self._connect_task is not None
            if config != self._pending_config:
                pending = self._pending_config
                raise ConnectInProgressError(
                    f"Already connecting to {pending.owner}/{pending.repo}" if pending else "Already connecting"
                )
            return await asyncio.shield(self._connect_task)

        if self.manager.is_connected() and self.state.config == config:
            return await self.status()

        self._pending_config = config
        self._connect_task = asyncio.create_task(self._connect(config))
        return await asyncio.shield(self._connect_task)

    async def _connect(self, config: InstallConfig) -> dict[str, Any]:
        async with self._lock:
            previous = self.state.config
            if previous is not None:
                self.logger.info(f"Replacing MCP server {previous.owner}/{previous.repo}")
                await self.manager.stop()
                if previous != config:
                    await asyncio.to_thread(self.installer.cleanup, previous)

            try:
                self.state = StatusState(status="installing", config=config)
                self.logger.info(f"Installing MCP: {config.owner}/{config.repo}#{config.branch}")
                server = await asyncio.to_thread(self.installer.install, config)

                self.state = StatusState(status="connecting", config=config)
                await self.manager.start(server)
                tools = await self.manager.list_tools()

            except CloudCostError as e:
                self.logger.error(f"Connection error: {e}")
                self.state = StatusState(status="error", config=config, message=str(e))
                raise

            self.state = StatusState(
                status="connected",
                config=config,
                tools=tools,
                message=f"Connected to {config.owner}/{config.repo}",
            )
            return self.state.to_dict()

    async def disconnect(self) -> dict[str, Any]:
        """Stop the tool server and remove its installation."""
        async with self._lock:
            await self.manager.stop()
            if self.state.config is not None:
                await asyncio.to_thread(self.installer.cleanup, self.state.config)
            self.state = StatusState()
            return self.state.to_dict()

    async def status(self) -> dict[str, Any]:
        connected = self.manager.is_connected()
        # If connected but we don't have tools in status, fetch them
        if connected and self.state.tools is None:
            try:
                self.state.tools = await self.manager.list_tools()
            except CloudCostError as e:
                self.logger.error(f"Status error: {e}")
        return {**self.state.to_dict(), "connected": connected}

    async def list_tools(self) -> list[ToolDescriptor]:
        return await self.manager.list_tools()

    async def close(self) -> None:
        """Stop the tool server and clean up. Used on application shutdown."""
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        await self.manager.stop()
        if self.state.config is not None:
            await asyncio.to_thread(self.installer.cleanup, self.state.config)

    def _on_unexpected_exit(self, error: UnexpectedExitError) -> None:
        self.state = StatusState(status="error", config=self.state.config, message=str(error))
