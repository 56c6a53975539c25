"""Async Unix socket server for the Styrby daemon.

This module implements the long-running daemon process that:
1. Keeps one outbound relay connection alive across terminal sessions
2. Serves newline-delimited JSON commands on ~/.styrby/daemon.sock
3. Writes a status snapshot to ~/.styrby/daemon.status.json every 10s

Lifecycle:
1. The supervisor spawns ``python -m styrby.daemon.server --daemon`` with a
   handshake pipe in STYRBY_READY_FD
2. The daemon writes its PID file, installs signal handlers, binds the
   socket, starts the relay connection and the status writer
3. It writes one {"type": "ready"} line to the pipe and closes it
4. On SIGTERM/SIGINT or an IPC stop/shutdown it disconnects cleanly,
   removes its files and exits

Usage:
    python -m styrby.daemon.server --daemon [--config-dir PATH]
"""

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Callable, Dict, Optional, Set, Tuple

from styrby.core.configs import (
    DAEMON_ENV,
    READY_FD_ENV,
    STATUS_WRITE_INTERVAL,
    Credentials,
    DaemonPaths,
    RelaySettings,
    ensure_config_dir,
    get_daemon_paths,
    get_relay_settings,
    load_credentials,
    load_env_file,
    load_raw_config,
)
from styrby.core.log import setup_logging
from styrby.daemon.files import remove_files, write_daemon_status_file, write_pid_file
from styrby.daemon.protocol import LineBuffer, decode_command, encode_response
from styrby.daemon.state import DaemonRuntimeState
from styrby.errors import ProtocolError
from styrby.relay import Relay, RelayEventHandler, create_relay
from styrby.relay.events import RelayConnecting, RelayEvent, RelayFailed

logger = logging.getLogger(__name__)

# Upper bound on how long startup waits for the first relay attempt before
# reporting ready; the attempt keeps running in the background afterwards.
RELAY_CONNECT_WAIT = 5.0

RelayFactory = Callable[[Credentials, RelaySettings, RelayEventHandler], Relay]


class DaemonServer:
    """
    Async Unix socket server for the daemon.

    Owns one DaemonRuntimeState; every handler reads and writes state only
    through this instance.
    """

    def __init__(
        self,
        paths: Optional[DaemonPaths] = None,
        relay_factory: RelayFactory = create_relay,
        relay_settings: Optional[RelaySettings] = None,
        status_interval: float = STATUS_WRITE_INTERVAL,
        relay_connect_wait: float = RELAY_CONNECT_WAIT,
        install_signal_handlers: bool = True,
        ready_callback: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize daemon server.

        Args:
            paths: Daemon file layout (default: ~/.styrby)
            relay_factory: Builds the outbound relay from credentials
            relay_settings: Relay URL/key (default: environment + config.cfg)
            status_interval: Seconds between status file writes
            relay_connect_wait: Max seconds startup waits on the first relay attempt
            install_signal_handlers: Handle SIGTERM/SIGINT on the event loop
            ready_callback: Called exactly once when startup has finished
        """
        self.paths = paths or get_daemon_paths()
        self.relay_factory = relay_factory
        self.relay_settings = relay_settings
        self.status_interval = status_interval
        self.relay_connect_wait = relay_connect_wait
        self.install_signal_handlers = install_signal_handlers
        self.ready_callback = ready_callback

        self.state = DaemonRuntimeState(pid=os.getpid())
        self.relay: Optional[Relay] = None
        self.server: Optional[asyncio.AbstractServer] = None

        self._status_task: Optional[asyncio.Task] = None
        self._relay_task: Optional[asyncio.Task] = None
        self._connections: Set[asyncio.StreamWriter] = set()
        self._signals_installed: list = []
        self._ready_sent = False
        self._shutdown_event: Optional[asyncio.Event] = None
        self.ready = asyncio.Event()
        self.stopped = asyncio.Event()

    async def start(self) -> None:
        """Start the daemon and serve until shutdown."""
        logger.info(f"Daemon process starting (pid {self.state.pid})")
        self._shutdown_event = asyncio.Event()

        ensure_config_dir(self.paths.config_dir)
        write_pid_file(self.paths.pid_file, self.state.pid)

        loop = asyncio.get_running_loop()
        self._setup_handlers(loop)

        await self._start_ipc_server()
        await self._connect_relay()
        self._start_status_writer()

        self._signal_ready()
        logger.info("Daemon process ready")

        await self._shutdown_event.wait()
        await self._cleanup()

    def request_shutdown(self, reason: str) -> None:
        """Trigger graceful shutdown. A second call is a no-op."""
        if self.state.shutting_down:
            return
        self.state.shutting_down = True
        logger.info(f"Graceful shutdown initiated ({reason})")
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    # ========================================================================
    # Startup
    # ========================================================================

    def _setup_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        loop.set_exception_handler(self._handle_loop_exception)

        if not self.install_signal_handlers:
            return
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown, sig.name)
            self._signals_installed.append(sig)

    def _handle_loop_exception(
        self, loop: asyncio.AbstractEventLoop, context: Dict
    ) -> None:
        """Uncaught exceptions become error state instead of crashing the daemon."""
        exc = context.get("exception")
        message = str(exc) if exc is not None else context.get("message", "unknown error")
        logger.error(f"Uncaught exception: {message}", exc_info=exc)
        self.state.record_error(f"Uncaught: {message}")

    async def _start_ipc_server(self) -> None:
        socket_path = self.paths.socket_path
        remove_files([socket_path])

        self.server = await asyncio.start_unix_server(
            self._handle_client,
            path=str(socket_path),
        )

        try:
            os.chmod(socket_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not restrict socket permissions: {e}")

        logger.info(f"IPC server listening on {socket_path}")

    async def _connect_relay(self) -> None:
        """Start the relay connection with stored credentials."""
        self.state.apply(RelayConnecting())

        credentials = load_credentials(self.paths.data_file)
        if credentials is None:
            self._fail_connection(f"Not authenticated: no valid credentials in {self.paths.data_file}")
            return

        settings = self.relay_settings or get_relay_settings(
            load_raw_config(self.paths.config_file)
        )
        if not settings.url:
            self._fail_connection("SUPABASE_URL not set. Cannot connect to relay.")
            return
        if not settings.anon_key:
            self._fail_connection("SUPABASE_ANON_KEY not set. Cannot connect to relay.")
            return

        try:
            self.relay = self.relay_factory(credentials, settings, self._on_relay_event)
        except Exception as e:
            self._fail_connection(str(e) or "Unknown connection error")
            return

        self._relay_task = asyncio.create_task(self._run_relay_connect())
        await asyncio.wait({self._relay_task}, timeout=self.relay_connect_wait)

    async def _run_relay_connect(self) -> None:
        try:
            await self.relay.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail_connection(str(e) or "Unknown connection error")

    def _fail_connection(self, message: str) -> None:
        logger.error(f"Cannot connect to relay: {message}")
        self.state.apply(RelayFailed(message))

    def _on_relay_event(self, event: RelayEvent) -> None:
        before = self.state.connection_state
        after = self.state.apply(event).state
        if before != after:
            logger.info(f"Relay {event.type}: {before.value} -> {after.value}")

    def _start_status_writer(self) -> None:
        self._write_status()
        self._status_task = asyncio.create_task(self._status_loop())

    async def _status_loop(self) -> None:
        while True:
            await asyncio.sleep(self.status_interval)
            self._write_status()

    def _write_status(self) -> None:
        try:
            write_daemon_status_file(
                self.paths, self.state.status_file_payload(self._active_sessions())
            )
        except OSError as e:
            logger.warning(f"Failed to write status file: {e}")

    def _active_sessions(self) -> int:
        return len(self._connected_devices())

    def _connected_devices(self) -> list:
        if self.relay is None:
            return []
        return list(self.relay.get_connected_devices())

    def _signal_ready(self) -> None:
        if self._ready_sent:
            return
        self._ready_sent = True
        self.ready.set()
        if self.ready_callback is not None:
            try:
                self.ready_callback()
            except OSError as e:
                logger.warning(f"Failed to send ready handshake: {e}")

    # ========================================================================
    # IPC
    # ========================================================================

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one client connection; every complete line is one command."""
        self._connections.add(writer)
        buffer = LineBuffer()
        try:
            while True:
                chunk = await reader.read(65536)
                if not chunk:
                    break

                try:
                    lines = buffer.feed(chunk)
                except ProtocolError as e:
                    writer.write(encode_response(False, error=str(e)))
                    await writer.drain()
                    break

                stop_requested = False
                for line in lines:
                    response, shutdown_after = self._handle_command(line)
                    writer.write(response)
                    await writer.drain()
                    if shutdown_after:
                        stop_requested = True
                        self.request_shutdown("IPC stop command")
                        break
                if stop_requested:
                    break

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"IPC client error: {e}")
        except Exception as e:
            logger.exception(f"Error handling client: {e}")
        finally:
            self._connections.discard(writer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    def _handle_command(self, line: str) -> Tuple[bytes, bool]:
        """
        Dispatch one command line.

        Returns:
            (encoded response, whether to shut down after sending it)
        """
        try:
            command = decode_command(line)
        except ProtocolError as e:
            return encode_response(False, error=str(e)), False

        command_type = command["type"]
        try:
            if command_type == "ping":
                return encode_response(True, {"pong": True, "pid": self.state.pid}), False

            if command_type == "status":
                snapshot = self.state.snapshot(self._active_sessions())
                return encode_response(True, snapshot.to_dict()), False

            if command_type == "list-sessions":
                return encode_response(True, {"devices": self._connected_devices()}), False

            if command_type in ("stop", "shutdown"):
                return encode_response(True, {"stopping": True}), True

            if command_type in ("start-session", "stop-session", "send-message"):
                return encode_response(
                    False, error=f"Command '{command_type}' is not supported by the daemon"
                ), False

        except Exception as e:
            logger.exception(f"Error in {command_type} handler: {e}")
            return encode_response(False, error=str(e)), False

        return encode_response(False, error=f"Unknown command: {command_type}"), False

    # ========================================================================
    # Shutdown
    # ========================================================================

    async def _cleanup(self) -> None:
        """Stop timers, disconnect the relay, close IPC and remove files."""
        logger.info("Cleaning up...")

        for task in (self._status_task, self._relay_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._status_task = None
        self._relay_task = None

        if self.relay is not None:
            try:
                await asyncio.wait_for(self.relay.disconnect(), timeout=5.0)
            except Exception as e:
                logger.warning(f"Error disconnecting relay: {e}")
            self.relay = None

        if self.server is not None:
            self.server.close()
            for writer in list(self._connections):
                writer.close()
            try:
                await asyncio.wait_for(self.server.wait_closed(), timeout=2.0)
            except asyncio.TimeoutError:
                logger.debug("Timed out waiting for IPC connections to close")
            self.server = None

        remove_files([self.paths.socket_path, self.paths.pid_file, self.paths.status_file])

        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed = []

        logger.info("Daemon shut down cleanly")
        self.stopped.set()


def make_ready_notifier(fd_value: Optional[str]) -> Callable[[], None]:
    """
    Build the callback that sends the one-shot ready handshake.

    The message is written to the inherited pipe and the pipe is closed
    immediately; it is never used again.
    """

    def notify() -> None:
        if not fd_value:
            return
        try:
            fd = int(fd_value)
        except ValueError:
            logger.warning(f"Invalid {READY_FD_ENV}: {fd_value!r}")
            return
        with os.fdopen(fd, "wb") as pipe:
            pipe.write(json.dumps({"type": "ready"}).encode("utf-8") + b"\n")

    return notify


def run_daemon(argv: Optional[list] = None) -> int:
    """
    Run the daemon process.

    Refuses to run unless started in daemon mode (--daemon or STYRBY_DAEMON=1).

    Returns:
        Process exit code
    """
    parser = argparse.ArgumentParser(description="Styrby daemon process")
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Confirm this process was started by the daemon supervisor",
    )
    parser.add_argument(
        "--config-dir",
        help="Directory holding daemon files (default: ~/.styrby)",
    )
    args = parser.parse_args(argv)

    if not args.daemon and os.environ.get(DAEMON_ENV) != "1":
        print("This script should only be run by the Styrby daemon system.", file=sys.stderr)
        return 1

    config_dir = Path(args.config_dir) if args.config_dir else None
    load_env_file(config_dir)
    paths = get_daemon_paths(config_dir)
    relay_settings = get_relay_settings(load_raw_config(paths.config_file))
    setup_logging("debug" if relay_settings.debug else None)

    server = DaemonServer(
        paths=paths,
        relay_settings=relay_settings,
        ready_callback=make_ready_notifier(os.environ.get(READY_FD_ENV)),
    )

    try:
        asyncio.run(server.start())
    except Exception as e:
        logger.exception(f"Daemon fatal error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(run_daemon())
