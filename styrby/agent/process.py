"""
Shared machinery for agents that run one CLI subprocess per prompt.

Subclasses provide the command line and the stdout interpretation; this
module handles spawning, stream pumping, cancellation, exit bookkeeping and
disposal.
"""

import asyncio
import codecs
import logging
import os
import uuid
from abc import abstractmethod
from typing import Dict, List, Optional

from styrby.agent.core import (
    EphemeralAgentBackend,
    SessionStatus,
    StatusMessage,
)
from styrby.core.configs import CANCEL_GRACE_PERIOD, RESPONSE_COMPLETE_TIMEOUT
from styrby.errors import AgentProcessError, BackendDisposedError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
STDERR_ERROR_MARKERS = ("Error", "error", "Exception")


class SubprocessAgentBackend(EphemeralAgentBackend):
    """
    Ephemeral backend spawning ``executable`` once per prompt.

    Hooks for subclasses:
        build_args(prompt)      argv after the executable
        build_env()             extra environment variables
        handle_stdout(text)     decoded stdout chunk
        handle_stdout_end()     stdout reached EOF
        handle_exit(code)       emit accounting after the process exited
    """

    executable: str = ""
    display_name: str = ""

    def __init__(self, options=None):
        super().__init__(options)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._exit_future: Optional[asyncio.Future] = None
        self._kill_handle: Optional[asyncio.TimerHandle] = None
        self.input_tokens = 0
        self.output_tokens = 0

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def build_args(self, prompt: str) -> List[str]:
        ...

    def build_env(self) -> Dict[str, str]:
        return {}

    def reset_session_state(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0

    def before_prompt(self, prompt: str) -> None:
        pass

    @abstractmethod
    def handle_stdout(self, text: str) -> None:
        ...

    def handle_stdout_end(self) -> None:
        pass

    def handle_exit(self, code: int) -> None:
        pass

    # ------------------------------------------------------------------
    # AgentBackend
    # ------------------------------------------------------------------

    async def start_session(self, initial_prompt: Optional[str] = None) -> str:
        if self._disposed:
            raise BackendDisposedError()

        self.session_id = str(uuid.uuid4())
        self.reset_session_state()
        self._emit(StatusMessage(SessionStatus.STARTING))
        logger.debug(f"[{self.display_name}] Starting session: {self.session_id}")

        if initial_prompt:
            await self.send_prompt(self.session_id, initial_prompt)
        else:
            self._emit(StatusMessage(SessionStatus.IDLE))

        return self.session_id

    async def send_prompt(self, session_id: str, prompt: str) -> None:
        """
        Run ``prompt`` in a new agent process and wait for it to exit.

        Raises:
            BackendDisposedError: After dispose()
            SessionMismatchError: If session_id is not the active session
            AgentProcessError: If the process cannot be spawned or exits nonzero
        """
        self._check_session(session_id)
        self._emit(StatusMessage(SessionStatus.RUNNING))
        self.before_prompt(prompt)

        argv = [self.executable] + self.build_args(prompt)
        env = dict(os.environ)
        env.update(self.options.env)
        env.update(self.build_env())
        logger.debug(f"[{self.display_name}] Spawning: {argv}")

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=self.options.cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"[{self.display_name}] Process error: {e}")
            self._emit(StatusMessage(SessionStatus.ERROR, str(e)))
            raise AgentProcessError(f"Failed to start {self.executable}: {e}") from e

        if process.stdout is None or process.stderr is None:
            process.kill()
            await process.wait()
            self._emit(StatusMessage(SessionStatus.ERROR, "Failed to create stdio pipes"))
            raise AgentProcessError("Failed to create stdio pipes")

        # The prompt travels in argv; nothing is ever written to stdin.
        if process.stdin is not None:
            process.stdin.close()

        self._process = process
        self._exit_future = asyncio.get_running_loop().create_future()
        try:
            await asyncio.gather(
                self._pump_stdout(process.stdout),
                self._pump_stderr(process.stderr),
            )
            code = await process.wait()
        finally:
            # Cancelled or a hook raised: the child must not outlive the prompt.
            if process.returncode is None:
                await self._kill_and_reap(process)
            self._process = None
            self._cancel_kill_timer()
            if not self._exit_future.done():
                self._exit_future.set_result(process.returncode)

        logger.debug(f"[{self.display_name}] Process exited with code: {code}")
        if self._disposed:
            return

        self.handle_exit(code)
        if code == 0:
            self._emit(StatusMessage(SessionStatus.IDLE))
            return

        message = f"{self.display_name} exited with code {code}"
        self._emit(StatusMessage(SessionStatus.ERROR, message))
        raise AgentProcessError(message, exit_code=code)

    async def cancel(self, session_id: str) -> None:
        self._check_session(session_id)

        if self.is_running:
            logger.debug(f"[{self.display_name}] Cancelling process")
            self._signal("terminate")
            if self._kill_handle is None:
                loop = asyncio.get_running_loop()
                self._kill_handle = loop.call_later(CANCEL_GRACE_PERIOD, self._force_kill)

        self._emit(StatusMessage(SessionStatus.IDLE))

    async def wait_for_response_complete(
        self, timeout: float = RESPONSE_COMPLETE_TIMEOUT
    ) -> None:
        if self._exit_future is None or self._exit_future.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_future), timeout)
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"Timeout waiting for {self.display_name} response"
            ) from None

    async def dispose(self) -> None:
        self._disposed = True
        self._cancel_kill_timer()
        if self.is_running:
            self._signal("kill")
        self._listeners.clear()
        logger.debug(f"[{self.display_name}] Disposed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _pump_stdout(self, stream: asyncio.StreamReader) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = decoder.decode(chunk)
            if text:
                self.handle_stdout(text)
        tail = decoder.decode(b"", final=True)
        if tail:
            self.handle_stdout(tail)
        self.handle_stdout_end()

    async def _pump_stderr(self, stream: asyncio.StreamReader) -> None:
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            text = chunk.decode("utf-8", errors="replace")
            logger.debug(f"[{self.display_name}] stderr: {text.strip()}")
            if any(marker in text for marker in STDERR_ERROR_MARKERS):
                self._emit(StatusMessage(SessionStatus.ERROR, text.strip()))

    def _signal(self, action: str) -> None:
        process = self._process
        if process is None or process.returncode is not None:
            return
        try:
            getattr(process, action)()
        except ProcessLookupError:
            pass

    async def _kill_and_reap(self, process: asyncio.subprocess.Process) -> None:
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await asyncio.shield(process.wait())

    def _force_kill(self) -> None:
        self._kill_handle = None
        if self.is_running:
            logger.debug(f"[{self.display_name}] Process ignored SIGTERM, sending SIGKILL")
            self._signal("kill")

    def _cancel_kill_timer(self) -> None:
        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None
