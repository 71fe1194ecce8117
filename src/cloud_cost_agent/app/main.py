import argparse
import asyncio
import contextlib
import shlex
import signal
import sys
import threading
from collections.abc import Callable
from typing import Any

from dotenv import load_dotenv

from cloud_cost_agent import __version__
from cloud_cost_agent.app.config import REMOTE_SERVER, AgentSettings, get_settings
from cloud_cost_agent.app.logging import log_tool_call, log_turn
from cloud_cost_agent.services.renderer_service import render_help, render_prompt, render_welcome
from cloud_cost_shared.conversation import ConversationEngine
from cloud_cost_shared.data_models import ServerCommand
from cloud_cost_shared.exceptions import (
    ConnectionLostError,
    InstallError,
    NotConnectedError,
    StartupError,
    TurnError,
    TurnInProgressError,
    UnexpectedExitError,
)
from cloud_cost_shared.github_installer import GitHubInstaller
from cloud_cost_shared.mcp_lifecycle import ToolServerManager
from cloud_cost_shared.openai_gpt_manager import OpenAIChat
from cloud_cost_shared.platform_manager import create_logger

logger = create_logger(logger_name="cloud-cost-cli", log_level="WARNING")

QUIT_COMMANDS = ("quit", "exit")
FATAL_ERRORS = (NotConnectedError, ConnectionLostError, UnexpectedExitError)

Output = Callable[[str], None]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments for the terminal client.

    Returns:
        argparse.Namespace: Parsed arguments
    """
    parser = argparse.ArgumentParser(
        prog="cloud-cost-cli",
        description="CLI client for cloud cost comparison using MCP",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--remote",
        "-r",
        action="store_true",
        help="Use MCP server from GitHub instead of the bundled one",
    )
    parser.add_argument(
        "--server-path",
        "-s",
        help="Path to an MCP server script (.js or .py) or executable",
    )
    parser.add_argument("--model", "-m", help="OpenAI model (default: OPENAI_MODEL or gpt-5-mini)")
    return parser.parse_args(argv)


def resolve_server_command(args: argparse.Namespace, settings: AgentSettings) -> ServerCommand:
    """Pick the tool server to launch: --server-path, then environment overrides, then bundled."""
    if args.server_path:
        return ServerCommand.for_script(args.server_path)
    if settings.mcp_server_command:
        command, *command_args = shlex.split(settings.mcp_server_command)
        return ServerCommand(command=command, args=command_args)
    if settings.mcp_server_path:
        return ServerCommand.for_script(settings.mcp_server_path)
    return ServerCommand(command=sys.executable, args=["-m", "cloud_cost_mcp"])


def _read_line(loop: asyncio.AbstractEventLoop, prompt: str) -> "asyncio.Future[str | None]":
    """
    Read one line from the terminal on a daemon thread.

    Resolves to None on EOF. A daemon thread (rather than the default executor) lets the
    process exit while the user is still at the prompt.
    """
    future: asyncio.Future[str | None] = loop.create_future()

    def resolve(value: str | None) -> None:
        if not future.done():
            future.set_result(value)

    def worker() -> None:
        try:
            line: str | None = input(prompt)
        except (EOFError, KeyboardInterrupt):
            line = None
        loop.call_soon_threadsafe(resolve, line)

    threading.Thread(target=worker, name="terminal-input", daemon=True).start()
    return future


class TerminalSession:
    """Reads user input, runs turns on the engine and prints the answers."""

    def __init__(
        self,
        engine: ConversationEngine,
        manager: ToolServerManager,
        output: Output = print,
    ) -> None:
        self.engine = engine
        self.manager = manager
        self.output = output
        self.exit_code = 0
        self._stop = asyncio.Event()

        self._unsubscribers = [
            manager.subscribe("unexpected_exit", self._on_unexpected_exit),
            engine.subscribe("tool_call", self._on_tool_call),
        ]

    def request_stop(self, exit_code: int = 0) -> None:
        self.exit_code = max(self.exit_code, exit_code)
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_unexpected_exit(self, error: UnexpectedExitError) -> None:
        self.output(f"\nError: {error}")
        self.request_stop(1)

    def _on_tool_call(self, name: str, arguments: dict[str, Any]) -> None:
        log_tool_call(name, arguments, logger)
        self.output(f"[Calling tool: {name}]")

    async def handle_line(self, line: str) -> bool:
        """
        Handle one line of user input.

        Returns:
            bool: False when the session should end.
        """
        text = line.strip()
        if not text:
            return True

        command = text.lower()
        if command in QUIT_COMMANDS:
            self.output("\nThank you for using Cloud Cost Comparison Assistant!")
            return False
        if command == "help":
            self.output(render_help())
            return True
        if command == "reset":
            self.engine.reset()
            self.output("\nConversation reset. What would you like to compare?\n")
            return True

        self.output("\n[Thinking...]")
        try:
            response = await self.engine.send_message(text)
        except FATAL_ERRORS as e:
            self.output(f"\nError: {e}")
            self.output("MCP server error detected. Exiting...\n")
            self.exit_code = 1
            return False
        except TurnInProgressError:
            self.output("Please wait for the current request to complete...")
            return True
        except TurnError as e:
            self.output(f"\nError: {e}")
            self.output("\nThe application encountered an error. Please try again or restart.\n")
            return True

        log_turn(self.engine.get_history(), logger)
        self.output(f"\nAssistant: {response}\n")
        return True

    async def run(self, prompt: str = "You: ") -> int:
        """Run the read-eval-print loop until quit, EOF, a signal or a fatal error."""
        loop = asyncio.get_running_loop()
        stop_waiter = asyncio.create_task(self._stop.wait())
        try:
            while not self.stopped:
                line_future = _read_line(loop, prompt)
                await asyncio.wait({line_future, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if self.stopped:
                    break

                line = line_future.result()
                if line is None:  # EOF / Ctrl-D
                    break
                # Ctrl-C must not wait out a slow model call or its retry sleeps
                turn = asyncio.create_task(self.handle_line(line))
                await asyncio.wait({turn, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
                if not turn.done():
                    turn.cancel()
                    await asyncio.gather(turn, return_exceptions=True)
                    break
                if not turn.result():
                    break
        finally:
            stop_waiter.cancel()
        return self.exit_code


async def run(args: argparse.Namespace, settings: AgentSettings) -> int:
    """
    Start the tool server, run the terminal session and shut everything down.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    installer: GitHubInstaller | None = None
    if args.remote:
        print("\nInstalling MCP server from GitHub...")
        installer = GitHubInstaller(settings.mcp_install_dir)
        try:
            server = await asyncio.to_thread(installer.install, REMOTE_SERVER)
        except InstallError as e:
            print(f"\nFailed to install remote MCP server: {e}", file=sys.stderr)
            return 1
        print("MCP server installed from GitHub\n")
    else:
        server = resolve_server_command(args, settings)

    manager = ToolServerManager(
        server, client_name="cloud-cost-cli", client_version=__version__, logger=logger
    )
    loop = asyncio.get_running_loop()

    try:
        try:
            await manager.start()
        except StartupError as e:
            print(f"\nFailed to start application: {e}", file=sys.stderr)
            print("\nPlease check that:", file=sys.stderr)
            print("  1. The MCP server command or script exists", file=sys.stderr)
            print("  2. The MCP server dependencies are installed", file=sys.stderr)
            print("  3. The pricing data file is readable (PRICING_DATA_PATH)\n", file=sys.stderr)
            return 1

        llm = OpenAIChat(model=args.model or settings.openai_model, api_key=settings.openai_api_key)
        engine = ConversationEngine(
            llm,
            manager,
            render_prompt(),
            max_tool_iterations=settings.max_tool_iterations,
            logger=logger,
        )
        session = TerminalSession(engine, manager)

        # Signal handlers belong to the host, not the core
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, session.request_stop, 0)

        print(render_welcome(remote=args.remote))
        exit_code = await session.run()
        session.close()
        engine.close()
        return exit_code

    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.remove_signal_handler(sig)
        await manager.stop()
        if installer is not None:
            installer.cleanup(REMOTE_SERVER)


def main(argv: list[str] | None = None) -> int:
    """
    Main function to run the terminal client from the command line.

    Returns:
        int: Exit code (0 for success, 1 for error)
    """
    args = parse_args(argv)
    load_dotenv()

    try:
        settings = get_settings()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        if "OPENAI_API_KEY" in str(e):
            print("\nPlease create a .env file with your API key:", file=sys.stderr)
            print("  OPENAI_API_KEY=your_api_key_here\n", file=sys.stderr)
        return 1

    logger.setLevel(settings.log_level)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 0
    except Exception as e:
        logger.error(f"Unhandled error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
