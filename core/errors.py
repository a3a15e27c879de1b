"""Rsync Guard — Error Taxonomy

Every error is fatal to the invocation. `public_message` is what the SSH
client gets to see; `detail` and `token` only go to the audit log and the
diagnostic logger. Policy and confinement rejections share one fixed
message each so a client cannot map the allow-list by trial and error.
"""

from __future__ import annotations
from typing import Optional


class GuardError(Exception):
    """Base class for every reason the guard refuses to run rsync."""

    kind = "GuardError"
    generic_message: Optional[str] = None

    def __init__(self, detail: str, token: Optional[str] = None, position: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        self.token = token
        self.position = position

    @property
    def public_message(self) -> str:
        if self.generic_message is not None:
            return self.generic_message
        if self.position is not None:
            return f"{self.detail} (at token {self.position})"
        return self.detail


class NotInvokedUnderTransport(GuardError):
    kind = "NotInvokedUnderTransport"


class UnexpectedTool(GuardError):
    kind = "UnexpectedTool"
    generic_message = "only rsync server invocations are allowed"


class RoleConflict(GuardError):
    kind = "RoleConflict"


class MalformedSyntax(GuardError):
    kind = "MalformedSyntax"


class DisallowedOption(GuardError):
    kind = "DisallowedOption"
    generic_message = "option not allowed on this server"


class ConfinementViolation(GuardError):
    kind = "ConfinementViolation"
    generic_message = "path not allowed on this server"


class LockUnavailable(GuardError):
    kind = "LockUnavailable"
    generic_message = "unable to lock the restricted directory"


class ExecFailure(GuardError):
    kind = "ExecFailure"
    generic_message = "unable to start rsync"
