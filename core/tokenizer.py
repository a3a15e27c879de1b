"""Rsync Guard — Tokenizer & Option Classifier

The remainder of the command (everything after "rsync --server [--sender]")
is split on whitespace, with backslash escaping the next character, and
scanned once by a three-state machine:

    OPTIONS --"."--> ARGUMENTS
    OPTIONS --value-taking option without "="--> CHECK_ARG --any token--> OPTIONS

Any unknown or disabled option aborts the whole invocation; nothing is
skipped.
"""

from __future__ import annotations
import glob
import itertools
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from core.confinement import PathConfinementValidator, reject_parent_refs
from core.errors import DisallowedOption, MalformedSyntax
from core.option_policy import PER_DIRECTORY_VALUES, PolicyTable, SHORT_NO_ARG, SHORT_WITH_NUM
from models.models import (
    OptionPolicy, RestrictedRoot, Role, SafePath, SanitizedInvocation, Token, TokenKind,
)

logger = logging.getLogger("rsync_guard.tokenizer")

MAX_TOKENS = 4096
MAX_GLOB_MATCHES = 1000

REGION_SEPARATOR = "."

SHORT_CLUSTER_RE = re.compile(
    r"^-[" + re.escape("".join(SHORT_NO_ARG)) + r"]*(e\d*\.\w*)?$"
)
SHORT_NUMERIC_RE = re.compile(
    r"^-([" + re.escape("".join(SHORT_WITH_NUM)) + r"])(\d+)$"
)
LONG_OPTION_RE = re.compile(r"^--([A-Za-z0-9][A-Za-z0-9-]*)(?:=(.*))?$", re.DOTALL)
_GLOB_MAGIC_RE = re.compile(r"[*?[]")


class ScanState(Enum):
    OPTIONS = "OPTIONS"
    CHECK_ARG = "CHECK_ARG"
    ARGUMENTS = "ARGUMENTS"


@dataclass(frozen=True)
class RawToken:
    raw: str
    text: str
    position: int


def split_command(remainder: str) -> List[RawToken]:
    """Split on unescaped whitespace; a backslash escapes the next character."""
    tokens: List[RawToken] = []
    raw: List[str] = []
    text: List[str] = []

    def flush():
        if len(tokens) >= MAX_TOKENS:
            raise MalformedSyntax("too many tokens", position=len(tokens))
        tokens.append(RawToken("".join(raw), "".join(text), len(tokens) + 1))
        raw.clear()
        text.clear()

    i = 0
    n = len(remainder)
    while i < n:
        ch = remainder[i]
        if ch == "\\":
            if i + 1 >= n:
                raise MalformedSyntax(
                    "dangling escape at end of command", position=len(tokens) + 1
                )
            raw.append(remainder[i:i + 2])
            text.append(remainder[i + 1])
            i += 2
        elif ch.isspace():
            if raw:
                flush()
            i += 1
        else:
            raw.append(ch)
            text.append(ch)
            i += 1
    if raw:
        flush()
    return tokens


def _disallowed(tok: RawToken, what: str) -> DisallowedOption:
    logger.warning("Disallowed option at token %d: %r (%s)", tok.position, tok.text, what)
    return DisallowedOption(f"{what}: {tok.text!r}", token=tok.text, position=tok.position)


def _classify_short_cluster(tok: RawToken, table: PolicyTable) -> Token:
    m = SHORT_CLUSTER_RE.match(tok.text)
    letters = tok.text[1:m.start(1)] if m.group(1) else tok.text[1:]
    for letter in letters:
        if not table.short(letter).enabled:
            raise _disallowed(tok, f"short option -{letter} disabled")
    return Token(TokenKind.SHORT_CLUSTER, tok.text, tok.raw, tok.position)


def _classify_numeric(tok: RawToken, table: PolicyTable) -> Token:
    m = SHORT_NUMERIC_RE.match(tok.text)
    policy = table.numeric(m.group(1))
    if not policy.enabled:
        raise _disallowed(tok, f"short option -{m.group(1)} disabled")
    return Token(TokenKind.SHORT_CLUSTER, tok.text, tok.raw, tok.position,
                 name=policy.name, value=m.group(2))


def _looks_like_option(tok: RawToken, table: PolicyTable) -> bool:
    """A known option spelled where only paths belong."""
    m = LONG_OPTION_RE.match(tok.text)
    if m:
        return m.group(1) in table
    if tok.text == "-":
        return False
    return bool(SHORT_CLUSTER_RE.match(tok.text) or SHORT_NUMERIC_RE.match(tok.text))


def classify_tokens(raw_tokens: List[RawToken], table: PolicyTable) -> List[Token]:
    """Run the OPTIONS / CHECK_ARG / ARGUMENTS scan over the raw tokens."""
    state = ScanState.OPTIONS
    pending: Optional[Token] = None
    out: List[Token] = []

    for tok in raw_tokens:
        if state is ScanState.ARGUMENTS:
            if _looks_like_option(tok, table):
                raise _disallowed(tok, "option after the '.' separator")
            out.append(Token(TokenKind.PATH_ARGUMENT, tok.text, tok.raw, tok.position))
            continue

        if state is ScanState.CHECK_ARG:
            out.append(Token(TokenKind.OPTION_VALUE, tok.text, tok.raw, tok.position,
                             name=pending.name, value=tok.text))
            pending = None
            state = ScanState.OPTIONS
            continue

        if tok.raw == REGION_SEPARATOR:
            out.append(Token(TokenKind.REGION_SEPARATOR, tok.text, tok.raw, tok.position))
            state = ScanState.ARGUMENTS
            continue

        if tok.text.startswith("--"):
            m = LONG_OPTION_RE.match(tok.text)
            if not m:
                raise _disallowed(tok, "unrecognised long option")
            name, value = m.group(1), m.group(2)
            policy = table.lookup(name)
            if not policy.enabled:
                raise _disallowed(tok, f"--{name} disabled")
            if value is not None and not policy.takes_value:
                raise MalformedSyntax(f"--{name} does not take a value", position=tok.position)
            token = Token(TokenKind.LONG_OPTION, tok.text, tok.raw, tok.position,
                          name=name, value=value)
            out.append(token)
            if policy.takes_value and value is None:
                pending = token
                state = ScanState.CHECK_ARG
            continue

        if SHORT_CLUSTER_RE.match(tok.text) and tok.text != "-":
            out.append(_classify_short_cluster(tok, table))
            continue

        if SHORT_NUMERIC_RE.match(tok.text):
            out.append(_classify_numeric(tok, table))
            continue

        if tok.text.startswith("-"):
            raise _disallowed(tok, "unrecognised short option")

        raise MalformedSyntax("path argument before the '.' separator", position=tok.position)

    if state is ScanState.CHECK_ARG:
        raise MalformedSyntax(f"--{pending.name} is missing its value", position=pending.position)
    if state is not ScanState.ARGUMENTS:
        raise MalformedSyntax("missing '.' separator", position=len(raw_tokens))
    return out


def expand_path_argument(token: Token, validator: PathConfinementValidator) -> List[SafePath]:
    """Glob-expand one transfer path (non-recursive, bounded) and confine every match."""
    text = token.text
    reject_parent_refs(text)
    candidates = [text]
    if _GLOB_MAGIC_RE.search(text) and not re.search(r"\\[*?[]", token.raw):
        pattern = text.lstrip("/")
        matches = list(itertools.islice(
            glob.iglob(pattern, root_dir=validator.root.path, recursive=False),
            MAX_GLOB_MATCHES + 1,
        ))
        if len(matches) > MAX_GLOB_MATCHES:
            raise MalformedSyntax("pattern matches too many paths", position=token.position)
        if matches:
            candidates = sorted(matches)
    return [validator.validate(c, anchor_absolute=True) for c in candidates]


def destination_anchors(root: RestrictedRoot, safe_paths: List[SafePath]) -> List[str]:
    """Directories rsync may resolve a relative option value from.

    The root (rsync's working directory), each transfer path and each
    transfer path's parent, since rsync changes into the destination
    directory before it looks at --link-dest and friends.
    """
    anchors = [root.path]
    for safe in safe_paths:
        for candidate in (safe.canonical, os.path.dirname(safe.canonical)):
            if root.contains(candidate) and candidate not in anchors:
                anchors.append(candidate)
    return anchors


def _validated_value(value: str, policy: OptionPolicy, role: Role,
                     validator: PathConfinementValidator, anchors: List[str]) -> str:
    if not policy.argument_mode.is_checked_for(role):
        return value
    return validator.validate_value(
        value, anchors, per_directory=policy.name in PER_DIRECTORY_VALUES,
    ).forwarded


def sanitize(tokens: List[Token], table: PolicyTable, validator: PathConfinementValidator,
             role: Role) -> SanitizedInvocation:
    """Turn classified tokens into the vetted option and path vectors."""
    safe_paths: List[SafePath] = []
    for token in tokens:
        if token.kind is TokenKind.PATH_ARGUMENT:
            safe_paths.extend(expand_path_argument(token, validator))
    anchors = destination_anchors(validator.root, safe_paths)

    options: List[str] = []
    for token in tokens:
        if token.kind is TokenKind.SHORT_CLUSTER:
            options.append(token.text)
        elif token.kind is TokenKind.LONG_OPTION:
            policy = table.lookup(token.name)
            if token.value is not None:
                value = _validated_value(token.value, policy, role, validator, anchors)
                options.append(f"--{token.name}={value}")
            elif not policy.takes_value:
                options.append(f"--{token.name}")
        elif token.kind is TokenKind.OPTION_VALUE:
            policy = table.lookup(token.name)
            value = _validated_value(token.value, policy, role, validator, anchors)
            options.append(f"--{token.name}={value}")
    return SanitizedInvocation(
        role=role,
        options=tuple(options),
        paths=tuple(safe.forwarded for safe in safe_paths),
    )


def tokenize(remainder: str, table: PolicyTable, validator: PathConfinementValidator,
             role: Role) -> SanitizedInvocation:
    return sanitize(classify_tokens(split_command(remainder), table), table, validator, role)
