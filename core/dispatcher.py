"""Rsync Guard — Core Dispatcher

Runs one invocation straight through:
extract → lock → policy table → tokenize/classify → confine → audit → exec

No stage reopens a decision made by an earlier one. Every request gets one
audit record (best-effort), written before rsync starts.
"""

from __future__ import annotations
import logging
from typing import Mapping, Optional

from core.audit_log import AuditLogger, client_identity
from core.confinement import PathConfinementValidator
from core.errors import GuardError
from core.executor import Executor
from core.extractor import ExtractedCommand, extract_command
from core.lock_manager import LockManager
from core.option_policy import build_policy_table
from core.tokenizer import tokenize
from models.models import (
    AuditRecord, Outcome, RestrictedRoot, SanitizedInvocation, SessionFlags,
)

logger = logging.getLogger("rsync_guard.dispatcher")


class GuardDispatcher:
    def __init__(
        self,
        flags: SessionFlags,
        root: RestrictedRoot,
        audit_logger: AuditLogger,
        lock_manager: Optional[LockManager],
        executor: Executor,
        dry_run: bool = False,
        resolve_hosts: bool = True,
    ):
        self.flags = flags
        self.root = root
        self.audit_logger = audit_logger
        self.lock_manager = lock_manager
        self.executor = executor
        self.dry_run = dry_run
        self.resolve_hosts = resolve_hosts
        self.exit_status: Optional[int] = None

    def handle(self, environ: Mapping[str, str]) -> SanitizedInvocation:
        """Vet and run the request in `environ`.

        Returns in dry-run mode, or after rsync exits when it runs under a
        privilege helper (its status is left in `exit_status`); otherwise
        the process image is replaced by rsync or a GuardError is raised.
        Exactly one audit record is written per request.
        """
        extracted: Optional[ExtractedCommand] = None
        argv = None
        try:
            extracted = extract_command(environ, self.flags)
            if self.lock_manager is not None and not self.flags.disable_locking:
                self.lock_manager.acquire(extracted.role)

            table = build_policy_table(self.flags, self.root)
            validator = PathConfinementValidator(self.root)
            invocation = tokenize(extracted.remainder, table, validator, extracted.role)
            if not self.dry_run:
                argv = self.executor.prepare(invocation)
        except GuardError as e:
            self._audit_rejection(environ, e, extracted)
            raise

        outcome = Outcome.DRY_RUN if self.dry_run else Outcome.ACCEPTED
        self.audit_logger.record(AuditRecord(
            client_identity=client_identity(environ, resolve=self.resolve_hosts),
            session_flags=self.flags,
            restricted_root=self.root.path,
            outcome=outcome,
            sanitized_invocation=invocation,
        ))
        logger.info(
            "Accepted %s request: %d option(s), %d path(s)",
            invocation.role.direction, len(invocation.options), len(invocation.paths),
        )
        if self.dry_run:
            return invocation

        self.exit_status = self.executor.run(argv)
        return invocation

    def _audit_rejection(self, environ: Mapping[str, str], error: GuardError,
                         extracted: Optional[ExtractedCommand]) -> None:
        logger.warning("Rejected (%s): %s", error.kind, error.detail)
        self.audit_logger.record(AuditRecord(
            client_identity=client_identity(environ, resolve=self.resolve_hosts),
            session_flags=self.flags,
            restricted_root=self.root.path,
            outcome=Outcome.REJECTED,
            role=extracted.role if extracted is not None else None,
            error_kind=error.kind,
            rejected_token=error.token,
            raw_command=environ.get("SSH_ORIGINAL_COMMAND"),
        ))
