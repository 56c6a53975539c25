"""Newline-delimited JSON protocol for daemon IPC.

Each client connection sends one JSON object terminated by ``\\n`` and
receives one JSON object terminated by ``\\n``. The socket is a byte stream,
so both sides buffer partial reads until a newline arrives (see LineBuffer).

Request format (discriminated by ``type``):
    {"type": "ping"}
    {"type": "status"}
    {"type": "stop"}
    {"type": "shutdown"}
    {"type": "list-sessions"}
    {"type": "start-session", "agentType": str, "projectPath": str}
    {"type": "stop-session", "sessionId": str}
    {"type": "send-message", "sessionId": str, "message": str}

Response format:
    {
        "success": bool,
        "data": Any,            # Optional command result
        "error": str,           # Optional, present when success is false
    }
"""

import json
from typing import Any, Dict, List, Optional

from styrby.errors import ProtocolError

# Command type -> required string fields
COMMAND_FIELDS: Dict[str, tuple] = {
    "ping": (),
    "status": (),
    "stop": (),
    "shutdown": (),
    "list-sessions": (),
    "start-session": ("agentType", "projectPath"),
    "stop-session": ("sessionId",),
    "send-message": ("sessionId", "message"),
}

COMMAND_TYPES = frozenset(COMMAND_FIELDS)

DELIMITER = b"\n"


def encode_command(command: Dict[str, Any]) -> bytes:
    """
    Serialize a command for socket transmission.

    Args:
        command: Command dict with at least a ``type`` key

    Returns:
        UTF-8 encoded JSON bytes terminated by a newline
    """
    return json.dumps(command).encode("utf-8") + DELIMITER


def decode_command(line: str) -> Dict[str, Any]:
    """
    Parse and validate one command line.

    Unknown command types are returned as-is so the server can answer with
    an "Unknown command" response; missing required fields are rejected.

    Raises:
        ProtocolError: If the line is not a JSON object or lacks fields
    """
    try:
        command = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(command, dict):
        raise ProtocolError("Command must be a JSON object")

    command_type = command.get("type")
    if not isinstance(command_type, str) or not command_type:
        raise ProtocolError("Command is missing 'type'")

    for field in COMMAND_FIELDS.get(command_type, ()):
        if not isinstance(command.get(field), str):
            raise ProtocolError(f"Command '{command_type}' is missing '{field}'")

    return command


def encode_response(
    success: bool,
    data: Any = None,
    error: Optional[str] = None,
) -> bytes:
    """
    Serialize a response for socket transmission.

    ``data`` and ``error`` are omitted when None.
    """
    response: Dict[str, Any] = {"success": success}
    if data is not None:
        response["data"] = data
    if error is not None:
        response["error"] = error
    return json.dumps(response).encode("utf-8") + DELIMITER


def decode_response(line: str) -> Dict[str, Any]:
    """
    Parse one response line.

    Raises:
        ProtocolError: If the line is not a JSON object with a boolean 'success'
    """
    try:
        response = json.loads(line)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Invalid response from daemon: {e}") from e

    if not isinstance(response, dict) or not isinstance(response.get("success"), bool):
        raise ProtocolError("Invalid response from daemon: missing 'success'")

    return response


class LineBuffer:
    """
    Accumulates stream chunks and yields complete newline-terminated lines.

    A chunk may hold a partial line, one line, or several lines; the
    incomplete tail is kept until the next feed().
    """

    def __init__(self, max_size: int = 1024 * 1024):
        self._buffer = b""
        self.max_size = max_size

    def feed(self, chunk: bytes) -> List[str]:
        """
        Add a chunk and return every complete, non-blank line it finished.

        Raises:
            ProtocolError: If the pending partial line exceeds max_size
        """
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(DELIMITER)

        if len(self._buffer) > self.max_size:
            self._buffer = b""
            raise ProtocolError("Message exceeds maximum size")

        decoded = []
        for raw in lines:
            text = raw.decode("utf-8", errors="replace").strip()
            if text:
                decoded.append(text)
        return decoded

    @property
    def pending(self) -> bytes:
        """Bytes received after the last newline."""
        return self._buffer
