"""
MCP Server Lifecycle Management

Spawns a tool server as a child process, speaks MCP (newline-delimited JSON-RPC 2.0) over
its stdin/stdout, supervises it, and shuts it down with SIGTERM followed by SIGKILL.

State machine:

    DISCONNECTED --start()--> STARTING --handshake ok--> CONNECTED
    STARTING --spawn/handshake failure--> DISCONNECTED (StartupError)
    STARTING --stop() or cancellation--> DISCONNECTED (child killed)
    CONNECTED --stop()--> STOPPING --cleanup--> DISCONNECTED
    CONNECTED --child exits on its own--> DISCONNECTED (UnexpectedExitError to observers)
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

from mcp.types import (
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    CallToolResult,
    ClientCapabilities,
    ErrorData,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    TextContent,
)
from pydantic import BaseModel, ValidationError

from cloud_cost_shared import __version__
from cloud_cost_shared.data_models import LifecycleState, ServerCommand, ToolDescriptor
from cloud_cost_shared.events import EventHub
from cloud_cost_shared.exceptions import (
    CloudCostError,
    ConnectionLostError,
    InvocationError,
    NotConnectedError,
    ProtocolError,
    StartupError,
    UnexpectedExitError,
)
from cloud_cost_shared.platform_manager import create_logger

KILL_GRACE_PERIOD = 2.0  # seconds between SIGTERM and SIGKILL
HANDSHAKE_TIMEOUT = 30.0
STREAM_LIMIT = 4 * 1024 * 1024  # max bytes in one JSON-RPC line
ERROR_PREFIX = "Error:"
DEFAULT_INPUT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


class ToolServerManager:
    """
    Owns one tool server child process and its stdio transport.

    Usage:
        manager = ToolServerManager(ServerCommand("node", ["dist/index.js"]))
        manager.subscribe("unexpected_exit", on_exit)
        await manager.start()
        tools = await manager.list_tools()
        result = await manager.call_tool("calculate_instance_savings", {...})
        await manager.stop()

    Events: "connected", "disconnected" (no arguments) and "unexpected_exit"
    (the UnexpectedExitError). Delivery is synchronous on the event loop.
    """

    def __init__(
        self,
        server: ServerCommand | None = None,
        *,
        client_name: str = "cloud-cost-client",
        client_version: str = __version__,
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
        kill_grace_period: float = KILL_GRACE_PERIOD,
        logger: logging.Logger | None = None,
    ) -> None:
        self._server = server
        self._client_info = Implementation(name=client_name, version=client_version)
        self._handshake_timeout = handshake_timeout
        self._kill_grace_period = kill_grace_period
        self._logger = logger or create_logger(logger_name="mcp-lifecycle")

        self._state = LifecycleState.DISCONNECTED
        self._process: asyncio.subprocess.Process | None = None
        self._tasks: list[asyncio.Task[Any]] = []
        self._server_requests: set[asyncio.Task[None]] = set()
        self._stop_requested = False
        self._pending: dict[int | str, asyncio.Future[dict[str, Any]]] = {}
        self._pending_methods: dict[int | str, str] = {}
        self._request_ids = itertools.count(1)
        self._start_lock = asyncio.Lock()
        self._stop_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._events = EventHub("connected", "disconnected", "unexpected_exit", logger=self._logger)

        self.server_info: Implementation | None = None
        self.exit_error: UnexpectedExitError | None = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def server(self) -> ServerCommand | None:
        return self._server

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def is_connected(self) -> bool:
        return self._state is LifecycleState.CONNECTED

    def subscribe(self, event: str, callback: Callable[..., Any]) -> Callable[[], None]:
        return self._events.subscribe(event, callback)

    # ------------------------------------------------------------------ lifecycle

    async def start(self, server: ServerCommand | None = None) -> None:
        """
        Spawn the tool server and perform the MCP handshake.

        A no-op when already connected. Concurrent callers are serialized so only one
        child process is ever spawned.

        Raises:
            StartupError: If the executable is missing, the spawn fails, the handshake
                fails or times out, or stop() is called before the handshake completes.
        """
        async with self._start_lock:
            if self._state is LifecycleState.CONNECTED:
                self._logger.info("MCP server already running")
                return

            if server is not None:
                self._server = server
            if self._server is None:
                raise StartupError("No MCP server command configured")

            command = self._server
            executable = command.resolve_executable()
            if executable is None:
                raise StartupError(f"MCP server executable not found: {command.command}")
            script = command.script_path()
            if script is not None and not Path(script).exists():
                raise StartupError(f"MCP server script not found: {script}")

            self._logger.info(f"Starting MCP server: {command.describe()}")
            self._state = LifecycleState.STARTING
            self._stop_requested = False
            self.exit_error = None
            self.server_info = None

            try:
                process = await asyncio.create_subprocess_exec(
                    executable,
                    *command.args,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=command.full_env(),
                    cwd=command.cwd,
                    limit=STREAM_LIMIT,
                )
            except OSError as e:
                self._state = LifecycleState.DISCONNECTED
                raise StartupError(f"Failed to start MCP server: {e}") from e
            except BaseException:
                self._state = LifecycleState.DISCONNECTED
                raise

            self._process = process
            self._tasks = [
                asyncio.create_task(self._read_stdout_loop(process), name="mcp-stdout-reader"),
                asyncio.create_task(self._pump_stderr(process), name="mcp-stderr-pump"),
                asyncio.create_task(self._watch_exit(process), name="mcp-exit-watcher"),
            ]

            try:
                # stop() may have run while the process was being spawned
                if self._stop_requested:
                    raise ConnectionLostError("MCP server was stopped during startup")
                await asyncio.wait_for(self._handshake(), timeout=self._handshake_timeout)
            except (TimeoutError, asyncio.TimeoutError) as e:
                await self._teardown()
                raise StartupError(
                    f"MCP server did not answer the handshake within {self._handshake_timeout}s"
                ) from e
            except (CloudCostError, ValidationError) as e:
                await self._teardown()
                raise StartupError(f"Failed to connect to MCP server: {e}") from e
            except BaseException:
                # Cancelled: kill the half-started child before propagating
                await asyncio.shield(self._teardown())
                raise

            if self._process is not process:
                raise StartupError("Failed to connect to MCP server: stopped during startup")

            self._state = LifecycleState.CONNECTED
            name = self.server_info.name if self.server_info else "unknown"
            self._logger.info(f"MCP server connected successfully ({name}, pid {process.pid})")
            self._events.emit("connected")

    async def stop(self) -> None:
        """
        Stop the tool server. Idempotent: safe to call when already disconnected.

        In-flight requests fail with ConnectionLostError. The child gets SIGTERM and, if
        it is still alive after the grace period, SIGKILL. A start() still in progress
        fails with StartupError instead of connecting.
        """
        async with self._stop_lock:
            if self._state is LifecycleState.DISCONNECTED and self._process is None:
                return
            if self._state is LifecycleState.STARTING:
                self._stop_requested = True

            self._logger.info("Shutting down MCP server...")
            self._state = LifecycleState.STOPPING
            await self._teardown()
            self._logger.info("MCP server stopped")
            self._events.emit("disconnected")

    async def _teardown(self) -> None:
        process, self._process = self._process, None
        self._fail_pending(lambda: ConnectionLostError("MCP server connection closed"))

        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                await self._terminate(process)

        current = asyncio.current_task()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not current), return_exceptions=True)

        self._state = LifecycleState.DISCONNECTED

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self._kill_grace_period)
            return
        except (TimeoutError, asyncio.TimeoutError):
            self._logger.warning(
                f"MCP server did not exit within {self._kill_grace_period}s, sending SIGKILL"
            )
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()

    # ------------------------------------------------------------------ operations

    async def list_tools(self) -> list[ToolDescriptor]:
        """Enumerate the tools exposed by the server, following pagination cursors."""
        self._ensure_connected()
        tools: list[ToolDescriptor] = []
        cursor: str | None = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = ListToolsResult.model_validate(await self._request("tools/list", params))
            for tool in result.tools:
                tools.append(
                    ToolDescriptor(
                        name=tool.name,
                        description=tool.description or "",
                        input_schema=tool.inputSchema or dict(DEFAULT_INPUT_SCHEMA),
                    )
                )
            cursor = result.nextCursor
            if not cursor:
                return tools

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> Any:
        """
        Invoke a tool and return its parsed JSON payload.

        Raises:
            NotConnectedError: If the server is not connected. The process is not touched.
            InvocationError: If the server reports a tool-level error.
            ConnectionLostError: If the transport goes away while waiting.
        """
        self._ensure_connected()
        try:
            raw = await self._request("tools/call", {"name": name, "arguments": arguments or {}})
        except ProtocolError as e:
            raise InvocationError(name, str(e)) from e

        try:
            result = CallToolResult.model_validate(raw)
        except ValidationError as e:
            raise InvocationError(name, f"Malformed response from MCP server: {e}") from e

        text = next((c.text for c in result.content if isinstance(c, TextContent)), None)
        if result.isError:
            raise InvocationError(name, _strip_error_prefix(text or "Tool reported an error"))
        if not result.content:
            raise InvocationError(name, "Empty response from MCP server")
        if text is None:
            raise InvocationError(name, "No text content in MCP response")
        if text.startswith(ERROR_PREFIX):
            raise InvocationError(name, _strip_error_prefix(text))

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text

    def _ensure_connected(self) -> None:
        if self._state is not LifecycleState.CONNECTED or self._process is None:
            raise NotConnectedError("MCP client not connected. Call start() first.")

    # ------------------------------------------------------------------ protocol

    async def _handshake(self) -> None:
        params = InitializeRequestParams(
            protocolVersion=LATEST_PROTOCOL_VERSION,
            capabilities=ClientCapabilities(),
            clientInfo=self._client_info,
        )
        result = InitializeResult.model_validate(await self._request("initialize", _dump(params)))
        self.server_info = result.serverInfo
        await self._send(JSONRPCNotification(jsonrpc="2.0", method="notifications/initialized"))

    async def _request(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        process = self._process
        if process is None or process.returncode is not None:
            raise ConnectionLostError("MCP server process is not running")

        request_id = next(self._request_ids)
        future: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._pending_methods[request_id] = method
        try:
            await self._send(JSONRPCRequest(jsonrpc="2.0", id=request_id, method=method, params=params))
            return await future
        finally:
            self._pending.pop(request_id, None)
            self._pending_methods.pop(request_id, None)

    async def _send(self, message: BaseModel) -> None:
        process = self._process
        stdin = process.stdin if process else None
        if stdin is None or stdin.is_closing():
            raise ConnectionLostError("MCP server stdin is closed")

        data = message.model_dump_json(by_alias=True, exclude_none=True) + "\n"
        async with self._write_lock:
            try:
                stdin.write(data.encode("utf-8"))
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise ConnectionLostError(f"Failed to write to MCP server: {e}") from e

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "id" in message and ("result" in message or "error" in message):
            future = self._pending.get(message["id"])
            if future is None or future.done():
                self._logger.warning(f"Discarding response for unknown request id {message['id']}")
                return
            if "result" in message:
                future.set_result(JSONRPCResponse.model_validate(message).result)
            else:
                error = JSONRPCError.model_validate(message).error
                method = self._pending_methods.get(message["id"], "request")
                future.set_exception(ProtocolError(method, error.code, error.message))
        elif "method" in message and "id" in message:
            task = asyncio.create_task(self._answer_server_request(JSONRPCRequest.model_validate(message)))
            self._server_requests.add(task)
            task.add_done_callback(self._server_requests.discard)
        elif "method" in message:
            self._logger.debug(f"MCP notification: {message['method']}")
        else:
            self._logger.warning(f"Ignoring message with unknown structure: {str(message)[:100]}")

    async def _answer_server_request(self, request: JSONRPCRequest) -> None:
        reply: BaseModel
        if request.method == "ping":
            reply = JSONRPCResponse(jsonrpc="2.0", id=request.id, result={})
        else:
            reply = JSONRPCError(
                jsonrpc="2.0",
                id=request.id,
                error=ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )
        try:
            await self._send(reply)
        except ConnectionLostError as e:
            self._logger.debug(f"Could not answer server request {request.method}: {e}")

    def _fail_pending(self, make_error: Callable[[], Exception]) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(make_error())

    # ------------------------------------------------------------------ background tasks

    async def _read_stdout_loop(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    self._logger.debug(f"Skipping non-JSON stdout line: {text[:100]}")
                    continue
                if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
                    self._logger.debug(f"Skipping non JSON-RPC stdout line: {text[:100]}")
                    continue
                try:
                    self._dispatch(message)
                except ValidationError as e:
                    self._logger.error(f"Invalid JSON-RPC message from MCP server: {e}")
        except (ValueError, ConnectionResetError) as e:
            # ValueError: a line longer than STREAM_LIMIT
            self._logger.error(f"Error reading MCP server output: {e}")
        finally:
            if process is self._process:
                self._fail_pending(lambda: ConnectionLostError("MCP server closed its output stream"))

    async def _pump_stderr(self, process: asyncio.subprocess.Process) -> None:
        assert process.stderr is not None
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            message = line.decode("utf-8", errors="replace").rstrip()
            if message:
                self._logger.info(f"[MCP Server] {message}")

    async def _watch_exit(self, process: asyncio.subprocess.Process) -> None:
        returncode = await process.wait()
        if process is not self._process:
            return

        if self._state is LifecycleState.STARTING:
            self._fail_pending(
                lambda: ConnectionLostError(f"MCP server exited during startup with code {returncode}")
            )
            return

        if self._state is LifecycleState.CONNECTED:
            error = UnexpectedExitError(returncode)
            self._logger.error(str(error))
            self.exit_error = error
            self._process = None
            self._fail_pending(
                lambda: ConnectionLostError(f"MCP server exited with code {returncode}")
            )
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            self._state = LifecycleState.DISCONNECTED
            readers, self._tasks = [t for t in self._tasks if t is not asyncio.current_task()], []
            self._events.emit("unexpected_exit", error)
            self._events.emit("disconnected")

            # Readers end at EOF unless a grandchild still holds the pipes
            if readers:
                _, stuck = await asyncio.wait(readers, timeout=self._kill_grace_period)
                for task in stuck:
                    task.cancel()
                await asyncio.gather(*readers, return_exceptions=True)


def _strip_error_prefix(text: str) -> str:
    if text.startswith(ERROR_PREFIX):
        return text[len(ERROR_PREFIX) :].strip()
    return text
