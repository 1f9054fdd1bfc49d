"""
CraftGate - Command Validation

Decides whether a raw command string may ever reach process creation.

The validator supports a deliberately small grammar:
- whitespace separated tokens
- single quotes, fully literal
- double quotes, literal except for the escapes \\" and \\\\
- adjacent quoted and unquoted pieces concatenate into one token

Anything a shell would interpret (pipes, redirection, substitution,
globbing, grouping, history expansion, comments) is rejected outright.
The first token must resolve to a whitelisted executable.

Validation is pure: it performs no filesystem, environment or network
access. Filesystem resolution of whitelist entries happens once, when the
Whitelist is built.
"""

import os
import posixpath
import re
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Optional, Pattern, Tuple

from ..core.config import DEFAULT_SEARCH_PATH, WhitelistConfig
from ..core.exceptions import (
    ConfigError,
    DisallowedArgumentError,
    DisallowedMetacharacterError,
    EmptyCommandError,
    MalformedQuotingError,
    UnknownExecutableError,
    ValidationError,
)

# Characters a shell would interpret when they appear outside quotes.
METACHARACTERS = frozenset(";&|<>$`\\*?[]{}()~!#\n\r")

WHITESPACE = frozenset(" \t")

MAX_ARGUMENT_LENGTH = 4096
MAX_COMMAND_LENGTH = 65536


class RejectionReason(Enum):
    """Why a command was rejected."""
    EMPTY_COMMAND = "EMPTY_COMMAND"
    MALFORMED_QUOTING = "MALFORMED_QUOTING"
    DISALLOWED_METACHARACTER = "DISALLOWED_METACHARACTER"
    UNKNOWN_EXECUTABLE = "UNKNOWN_EXECUTABLE"
    DISALLOWED_ARGUMENT = "DISALLOWED_ARGUMENT"


_REASON_ERRORS = {
    RejectionReason.EMPTY_COMMAND: EmptyCommandError,
    RejectionReason.MALFORMED_QUOTING: MalformedQuotingError,
    RejectionReason.DISALLOWED_METACHARACTER: DisallowedMetacharacterError,
    RejectionReason.UNKNOWN_EXECUTABLE: UnknownExecutableError,
    RejectionReason.DISALLOWED_ARGUMENT: DisallowedArgumentError,
}

_MINT = object()


class Argv:
    """
    Validated argument vector.

    Only CommandValidator can create instances. An Argv carries the exact
    token list that was approved together with the canonical executable
    path it resolved to, and may be executed once.
    """

    __slots__ = ("_tokens", "_executable", "_command", "_consumed", "_lock")

    def __init__(
        self,
        tokens: Iterable[str],
        executable: str,
        command: str,
        *,
        _token: Any = None,
    ):
        if _token is not _MINT:
            raise TypeError("Argv instances are created by CommandValidator only")
        self._tokens = tuple(tokens)
        self._executable = executable
        self._command = command
        self._consumed = False
        self._lock = threading.Lock()

    @property
    def tokens(self) -> Tuple[str, ...]:
        return self._tokens

    @property
    def executable(self) -> str:
        """Canonical path of the approved executable."""
        return self._executable

    @property
    def command(self) -> str:
        """The raw string this Argv was derived from."""
        return self._command

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> bool:
        """
        Mark the Argv as executed.

        Returns:
            True the first time, False on every later call
        """
        with self._lock:
            if self._consumed:
                return False
            self._consumed = True
            return True

    def to_list(self) -> List[str]:
        return list(self._tokens)

    def __iter__(self) -> Iterator[str]:
        return iter(self._tokens)

    def __len__(self) -> int:
        return len(self._tokens)

    def __getitem__(self, index):
        return self._tokens[index]

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Argv):
            return (
                self._tokens == other._tokens
                and self._executable == other._executable
            )
        if isinstance(other, (list, tuple)):
            return self._tokens == tuple(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash((self._tokens, self._executable))

    def __repr__(self) -> str:
        return f"Argv({list(self._tokens)!r}, executable={self._executable!r})"


@dataclass(frozen=True)
class Verdict:
    """Outcome of validating one command string."""
    command: str
    argv: Optional[Argv] = None
    reason: Optional[RejectionReason] = None
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def valid(self) -> bool:
        return self.argv is not None

    def unwrap(self) -> Argv:
        """
        Return the approved Argv or raise the matching ValidationError.

        Raises:
            ValidationError: subclass matching the rejection reason
        """
        if self.argv is not None:
            return self.argv
        error_cls = _REASON_ERRORS[self.reason]
        raise error_cls(self.message, command=self.command, **self.details)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "valid": self.valid,
            "argv": self.argv.to_list() if self.argv is not None else None,
            "executable": self.argv.executable if self.argv is not None else None,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "details": dict(self.details),
        }


@dataclass(frozen=True)
class WhitelistEntry:
    """
    A whitelisted executable.

    paths[0] is the canonical path; the remaining paths are aliases that
    resolve to the same binary. allowed_flags, when set, must fully match
    every argument that starts with a dash.
    """
    name: str
    paths: Tuple[str, ...]
    allowed_flags: Optional[Pattern] = None

    @property
    def canonical_path(self) -> str:
        return self.paths[0]

    def allows_flag(self, token: str) -> bool:
        if self.allowed_flags is None:
            return True
        return self.allowed_flags.fullmatch(token) is not None


def _normalize_path(path: str) -> str:
    normalized = posixpath.normpath(path)
    # normpath keeps a leading double slash
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    return normalized


def resolve_executable(
    name: str,
    search_path: Iterable[str],
    path: Optional[str] = None,
    aliases: Iterable[str] = (),
) -> Tuple[str, ...]:
    """
    Resolve an executable to its canonical path and known aliases.

    Symlinks are resolved here, once, so that validation itself never
    touches the filesystem. When the binary is not installed the canonical
    path falls back to the first search directory.

    Args:
        name: Executable name
        search_path: Directories to look in
        path: Explicit path, overrides the search
        aliases: Additional paths accepted for the same executable

    Returns:
        Tuple of paths, canonical first
    """
    candidates = [path] if path else [
        posixpath.join(directory, name) for directory in search_path
    ]
    candidates.extend(aliases)

    found = []
    for candidate in candidates:
        candidate = _normalize_path(candidate)
        if os.path.exists(candidate):
            found.append(candidate)

    if found:
        canonical = _normalize_path(os.path.realpath(found[0]))
    elif path:
        canonical = _normalize_path(path)
    else:
        search_path = list(search_path)
        first_dir = search_path[0] if search_path else DEFAULT_SEARCH_PATH[0]
        canonical = _normalize_path(posixpath.join(first_dir, name))

    paths = [canonical]
    for candidate in found + [_normalize_path(a) for a in aliases]:
        if candidate not in paths:
            paths.append(candidate)
    return tuple(paths)


class Whitelist:
    """
    Immutable set of whitelisted executables.

    Lookups are by bare name or by absolute path (canonical or alias).
    A new Whitelist is built to change the set; instances never change.
    """

    def __init__(
        self,
        entries: Iterable[WhitelistEntry],
        allow_absolute_paths: bool = True,
    ):
        by_name: Dict[str, WhitelistEntry] = {}
        by_path: Dict[str, WhitelistEntry] = {}
        for entry in entries:
            if entry.name in by_name:
                raise ConfigError(f"Duplicate whitelist entry: {entry.name}")
            by_name[entry.name] = entry
            for path in entry.paths:
                by_path[_normalize_path(path)] = entry
        self._by_name = MappingProxyType(by_name)
        self._by_path = MappingProxyType(by_path)
        self.allow_absolute_paths = allow_absolute_paths

    @classmethod
    def from_config(cls, config: WhitelistConfig) -> "Whitelist":
        """
        Build a whitelist from configuration, resolving paths on disk.

        Raises:
            ConfigError: If an allowed-flag pattern does not compile
        """
        entries = []
        for entry_config in config.entries:
            pattern = None
            if entry_config.allowed_flags:
                try:
                    pattern = re.compile(entry_config.allowed_flags)
                except re.error as e:
                    raise ConfigError(
                        f"Invalid flag pattern for {entry_config.name}: {e}",
                        errors=[str(e)],
                    )
            entries.append(WhitelistEntry(
                name=entry_config.name,
                paths=resolve_executable(
                    entry_config.name,
                    config.search_path,
                    path=entry_config.path,
                    aliases=entry_config.aliases,
                ),
                allowed_flags=pattern,
            ))
        return cls(entries, allow_absolute_paths=config.allow_absolute_paths)

    @classmethod
    def default(cls) -> "Whitelist":
        """Whitelist of the executables the configuration tool drives."""
        return cls.from_config(WhitelistConfig())

    @classmethod
    def from_names(
        cls,
        names: Iterable[str],
        search_path: Optional[Iterable[str]] = None,
    ) -> "Whitelist":
        search_path = list(search_path or DEFAULT_SEARCH_PATH)
        return cls(
            WhitelistEntry(name=name, paths=resolve_executable(name, search_path))
            for name in names
        )

    @property
    def names(self) -> List[str]:
        return sorted(self._by_name)

    def get(self, name: str) -> Optional[WhitelistEntry]:
        return self._by_name.get(name)

    def lookup(self, token: str) -> Optional[WhitelistEntry]:
        """Resolve the first token of a command to a whitelist entry."""
        if "/" not in token:
            return self._by_name.get(token)
        if not token.startswith("/") or not self.allow_absolute_paths:
            return None
        return self._by_path.get(_normalize_path(token))

    def __contains__(self, name: str) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self._by_name)

    def __iter__(self) -> Iterator[WhitelistEntry]:
        return iter(self._by_name.values())


def find_metacharacter(raw: str) -> Optional[Tuple[int, str]]:
    """
    Locate the first character a shell would interpret.

    Quote-aware: METACHARACTERS count outside quotes, and $ and backtick
    count inside double quotes. Escape validity is left to tokenize().

    Returns:
        (position, character), or None
    """
    quote = None
    i = 0
    n = len(raw)
    while i < n:
        ch = raw[i]
        if quote == "'":
            if ch == "'":
                quote = None
        elif quote == '"':
            if ch == '"':
                quote = None
            elif ch == "\\" and i + 1 < n and raw[i + 1] in ('"', "\\"):
                i += 1
            elif ch in ("$", "`"):
                return i, ch
        elif ch in ("'", '"'):
            quote = ch
        elif ch in METACHARACTERS:
            return i, ch
        i += 1
    return None


def tokenize(raw: str) -> List[str]:
    """
    Split a command string into tokens.

    Args:
        raw: Command string

    Returns:
        List of tokens

    Raises:
        DisallowedMetacharacterError: On the first metacharacter outside quotes
        MalformedQuotingError: On an unterminated quote or unsupported escape
    """
    tokens: List[str] = []
    current: List[str] = []
    in_token = False
    i = 0
    n = len(raw)

    while i < n:
        ch = raw[i]

        if ch in WHITESPACE:
            if in_token:
                tokens.append("".join(current))
                current = []
                in_token = False
            i += 1
            continue

        in_token = True

        if ch == "'":
            end = raw.find("'", i + 1)
            if end == -1:
                raise MalformedQuotingError(
                    "Unterminated single quote", command=raw, position=i
                )
            current.append(raw[i + 1:end])
            i = end + 1
            continue

        if ch == '"':
            start = i
            i += 1
            closed = False
            while i < n:
                c = raw[i]
                if c == '"':
                    closed = True
                    i += 1
                    break
                if c == "\\":
                    nxt = raw[i + 1] if i + 1 < n else ""
                    if nxt in ('"', "\\") and nxt:
                        current.append(nxt)
                        i += 2
                        continue
                    raise MalformedQuotingError(
                        "Unsupported escape inside double quotes",
                        command=raw,
                        position=i,
                    )
                if c in ("$", "`"):
                    raise DisallowedMetacharacterError(
                        f"Disallowed character {c!r} inside double quotes",
                        command=raw,
                        character=c,
                        position=i,
                    )
                current.append(c)
                i += 1
            if not closed:
                raise MalformedQuotingError(
                    "Unterminated double quote", command=raw, position=start
                )
            continue

        if ch in METACHARACTERS:
            raise DisallowedMetacharacterError(
                f"Disallowed metacharacter {ch!r} at position {i}",
                command=raw,
                character=ch,
                position=i,
            )

        current.append(ch)
        i += 1

    if in_token:
        tokens.append("".join(current))
    return tokens


def _is_control(ch: str) -> bool:
    code = ord(ch)
    return code < 32 or code == 127


class CommandValidator:
    """
    Validates raw command strings against a whitelist.

    validate() never raises for bad input: it returns a Verdict that is
    either Valid (carrying the Argv) or Rejected (carrying the reason).
    """

    def __init__(self, whitelist: Optional[Whitelist] = None):
        self._whitelist = whitelist if whitelist is not None else Whitelist.default()
        self._update_lock = threading.Lock()

    @property
    def whitelist(self) -> Whitelist:
        return self._whitelist

    def update_whitelist(self, whitelist: Whitelist) -> Whitelist:
        """
        Replace the whitelist (administrative operation).

        Returns:
            The previous whitelist
        """
        with self._update_lock:
            previous = self._whitelist
            self._whitelist = whitelist
        return previous

    def validate(self, raw: str, dry_run: bool = False) -> Verdict:
        """
        Validate a command string.

        The dry_run flag does not change the check; it is accepted so that
        dry-run and live requests follow the same call path.

        Args:
            raw: Command string as requested
            dry_run: Whether the request is a dry run

        Returns:
            Verdict for the command
        """
        whitelist = self._whitelist
        try:
            argv = self._check(raw, whitelist)
        except ValidationError as e:
            details = {k: v for k, v in e.details.items() if k != "command"}
            return Verdict(
                command=raw,
                reason=RejectionReason(e.code),
                message=e.message,
                details=details,
            )
        return Verdict(command=raw, argv=argv)

    def _check(self, raw: str, whitelist: Whitelist) -> Argv:
        if not isinstance(raw, str):
            raise EmptyCommandError("Command must be a string", command=repr(raw))

        nul = raw.find("\0")
        if nul != -1:
            raise DisallowedMetacharacterError(
                "NUL byte in command", command=raw, character="\0", position=nul
            )

        found = find_metacharacter(raw)
        if found is not None:
            position, ch = found
            raise DisallowedMetacharacterError(
                f"Disallowed metacharacter {ch!r} at position {position}",
                command=raw,
                character=ch,
                position=position,
            )

        if len(raw) > MAX_COMMAND_LENGTH:
            raise DisallowedArgumentError(
                f"Command exceeds {MAX_COMMAND_LENGTH} characters",
                command=raw[:256],
            )

        if not raw.strip():
            raise EmptyCommandError("Empty command", command=raw)

        tokens = tokenize(raw)

        entry = whitelist.lookup(tokens[0])
        if entry is None:
            raise UnknownExecutableError(
                f"Executable not whitelisted: {tokens[0]!r}",
                command=raw,
                executable=tokens[0],
            )

        self._check_arguments(raw, entry, tokens[1:])

        return Argv(tokens, entry.canonical_path, raw, _token=_MINT)

    def _check_arguments(
        self,
        raw: str,
        entry: WhitelistEntry,
        arguments: List[str],
    ) -> None:
        options_ended = False
        for arg in arguments:
            if len(arg) > MAX_ARGUMENT_LENGTH:
                raise DisallowedArgumentError(
                    f"Argument exceeds {MAX_ARGUMENT_LENGTH} characters",
                    command=raw,
                    argument=arg[:64],
                )
            if any(_is_control(ch) for ch in arg):
                raise DisallowedArgumentError(
                    "Control character in argument", command=raw, argument=arg
                )
            if options_ended or not arg.startswith("-") or arg == "-":
                continue
            if arg == "--":
                options_ended = True
                continue
            if not entry.allows_flag(arg):
                raise DisallowedArgumentError(
                    f"Flag {arg!r} not allowed for {entry.name}",
                    command=raw,
                    argument=arg,
                )


__all__ = [
    "Argv",
    "CommandValidator",
    "METACHARACTERS",
    "MAX_ARGUMENT_LENGTH",
    "MAX_COMMAND_LENGTH",
    "RejectionReason",
    "Verdict",
    "Whitelist",
    "WhitelistEntry",
    "find_metacharacter",
    "resolve_executable",
    "tokenize",
]
