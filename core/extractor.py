"""Rsync Guard — Command Extractor

Reads the client's request from the environment sshd sets up for a forced
command and decides, before anything else is parsed, whether it is an rsync
server invocation at all and which side of the transfer it asks us to play.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Mapping

from core.errors import NotInvokedUnderTransport, RoleConflict, UnexpectedTool
from models.models import Role, SessionFlags

logger = logging.getLogger("rsync_guard.extractor")

COMMAND_ENV = "SSH_ORIGINAL_COMMAND"
TOOL_NAME = "rsync"
SERVER_MARKER = "--server"
SENDER_MARKER = "--sender"
MAX_COMMAND_LENGTH = 64 * 1024


@dataclass(frozen=True)
class ExtractedCommand:
    role: Role
    remainder: str
    raw: str


def extract_command(environ: Mapping[str, str], flags: SessionFlags) -> ExtractedCommand:
    raw = environ.get(COMMAND_ENV)
    if not raw:
        raise NotInvokedUnderTransport(f"not invoked through sshd properly (no {COMMAND_ENV})")
    if len(raw) > MAX_COMMAND_LENGTH:
        raise UnexpectedTool(f"command too long ({len(raw):,} chars)", token=raw[:80])

    words = raw.split(" ", 2)
    if words[0] != TOOL_NAME:
        raise UnexpectedTool(f"{COMMAND_ENV} does not run {TOOL_NAME}", token=words[0])
    if words[1:2] != [SERVER_MARKER]:
        raise UnexpectedTool(f"{SERVER_MARKER} is not the first argument", token=raw[:80])
    remainder = words[2] if len(words) > 2 else ""

    # Only the position right after the server marker counts.
    if remainder.startswith(SENDER_MARKER + " "):
        role = Role.SENDER
        remainder = remainder[len(SENDER_MARKER) + 1:]
    else:
        role = Role.RECEIVER

    if flags.restrict_to_read_only and role is Role.RECEIVER:
        raise RoleConflict("sending to a read-only server is not allowed")
    if flags.restrict_to_write_only and role is Role.SENDER:
        raise RoleConflict("reading from a write-only server is not allowed")

    logger.debug("Extracted rsync server command: role=%s", role.value)
    return ExtractedCommand(role=role, remainder=remainder, raw=raw)
