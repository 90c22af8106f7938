"""Resolve a stored agent session identifier to the agent's resume index.

The generator CLI only resumes sessions by their position in its own
listing, so the identifier captured when a change was proposed has to be
looked up again before every revision::

    Available sessions for this project (3):
      1. Draft the proposal for ... (2 hours ago) [3f2b...]
      2. Revise specs ... (5 minutes ago) [9c41...]

A session missing from the listing is an error; there is no fallback to
"latest".
"""

from __future__ import annotations

import asyncio
import re
import shlex
from pathlib import Path

from .config import settings
from .errors import SessionCommandFailed, SessionListingUnparsable, SessionNotFound

_HEADER_MARKER = "Available sessions"
_ENTRY_RE = re.compile(r"^\s*(?P<index>\d+)\.\s+.*\[(?P<session_id>[A-Za-z0-9-]+)\]")


def find_session_index(listing: str, session_id: str) -> int:
    """Return the resume index of ``session_id`` in a session listing."""
    if _HEADER_MARKER.lower() not in listing.lower():
        raise SessionListingUnparsable("Session listing has no 'Available sessions' header")

    entries = 0
    for line in listing.splitlines():
        match = _ENTRY_RE.match(line)
        if not match:
            continue
        entries += 1
        if match.group("session_id") == session_id:
            return int(match.group("index"))

    if entries == 0:
        raise SessionListingUnparsable("Session listing has no [session-id] entries")
    raise SessionNotFound(session_id)


class SessionResolver:
    """Runs the agent's session listing command and finds a session in it."""

    def __init__(
        self,
        project_root: Path,
        command: list[str] | None = None,
        timeout: float | None = None,
    ):
        self.project_root = project_root
        self.command = command or [*shlex.split(settings.gemini_cmd), "--list-sessions"]
        self.timeout = timeout if timeout is not None else settings.list_sessions_timeout

    async def list_sessions(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.project_root,
            )
        except OSError as exc:
            raise SessionCommandFailed(f"Failed to run {self.command[0]}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise SessionCommandFailed(
                f"Session listing timed out after {self.timeout} seconds"
            ) from exc

        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip() or "no stderr output"
            raise SessionCommandFailed(
                f"Session listing exited with status {proc.returncode}: {detail}"
            )
        return stdout.decode(errors="replace")

    async def resolve(self, session_id: str) -> int:
        listing = await self.list_sessions()
        return find_session_index(listing, session_id)
