"""Read-only shell command validation."""

from __future__ import annotations

import re
from dataclasses import dataclass

BLOCKED_PATTERNS: tuple[str, ...] = (
    # file writes
    r"^cat\b.*>",
    r"^tee\b",
    r"^dd\b",
    r"^cp\b",
    r"^mv\b",
    r"^rm\b",
    r"^touch\b",
    r"^mkdir\b",
    r"^rmdir\b",
    r"^chmod\b",
    r"^chown\b",
    r"^sed\b.*\s-i",
    r"^sed\b.*\s--in-place\b",
    r"^find\b.*\s-(delete|exec|execdir|ok|okdir|fprint|fprint0|fprintf|fls)\b",
    # awk shell escapes
    r"^awk\b.*\bsystem\s*\(",
    # editors
    r"^vi\b",
    r"^vim\b",
    r"^nano\b",
    r"^emacs\b",
    r"^code\b",
    r"^subl\b",
    # package installs
    r"^npm install\b",
    r"^yarn add\b",
    r"^pip install\b",
    r"^apt install\b",
    r"^brew install\b",
    r"^pacman -S\b",
    r"^yum install\b",
    r"^dnf install\b",
    # git writes
    r"^git add\b",
    r"^git commit\b",
    r"^git push\b",
    r"^git rm\b",
    r"^git reset\b",
    r"^git revert\b",
    r"^git merge\b",
    r"^git rebase\b",
    # patches
    r"^apply_patch\b",
    # command substitution
    r"\$\(",
    r"`",
)

SAFE_PREFIXES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(ls|dir|find|grep|cat|head|tail|less|more)(\s|$)"),
    re.compile(r"^(ps|top|htop|df|du|free|uname|whoami|pwd|date|uptime)(\s|$)"),
    re.compile(r"^git (status|log|diff|show|branch|remote|blame)(\s|$)"),
    re.compile(r"^(curl|wget)(\s|$)"),
    re.compile(r"^rg(\s|$)"),
    re.compile(r"^awk\s"),
    re.compile(r"^(sed|sort|uniq|wc)(\s|$)"),
)

READ_ONLY_VERBS = frozenset({
    "ls",
    "cat",
    "grep",
    "find",
    "head",
    "tail",
    "less",
    "more",
    "ps",
    "top",
    "htop",
    "df",
    "du",
    "free",
    "whoami",
    "pwd",
    "date",
    "uptime",
    "uname",
    "git",
    "rg",
    "curl",
    "wget",
    "awk",
    "sed",
    "sort",
    "uniq",
    "wc",
    "cd",
})

NETWORK_FETCH_VERBS = frozenset({"curl", "wget"})

_BLOCKED_RES = tuple((pattern, re.compile(pattern, re.IGNORECASE)) for pattern in BLOCKED_PATTERNS)
_WRITE_REDIRECT_RE = re.compile(r">")
_CONNECTOR_RE = re.compile(r"&&|\|\||[|;&\n\r]")
_SPLIT_RE = re.compile(r"\s*(?:&&|\|\||[|;&\n\r])\s*")


@dataclass(frozen=True)
class Allowed:
    """The command may run."""

    @property
    def allowed(self) -> bool:
        return True


@dataclass(frozen=True)
class Denied:
    """The command must not run."""

    reason: str

    @property
    def allowed(self) -> bool:
        return False


CommandDecision = Allowed | Denied


def validate_command(command: str) -> CommandDecision:
    """Decide whether one shell command line is read-only.

    Compound lines are split on ``&&``, ``||``, ``|``, ``;``, ``&`` and line breaks; every segment
    must pass on its own. Anything not explicitly recognised is denied.
    """
    stripped = command.strip()
    if not stripped:
        return Denied("Empty command")

    for pattern, regex in _BLOCKED_RES:
        if regex.search(stripped):
            return Denied(
                f"File manipulation commands are not allowed. Command matches blocked pattern: {pattern}"
            )

    if _WRITE_REDIRECT_RE.search(stripped) and _first_word(stripped) not in NETWORK_FETCH_VERBS:
        return Denied("Shell redirects that write to files are not allowed")

    if _CONNECTOR_RE.search(stripped):
        return _validate_compound(stripped)

    if any(prefix.match(stripped) for prefix in SAFE_PREFIXES):
        return Allowed()

    first_word = _first_word(stripped)
    if first_word in READ_ONLY_VERBS:
        return Allowed()
    return Denied(f"Command '{first_word}' is not in the allowed list of read-only operations")


def _validate_compound(command: str) -> CommandDecision:
    segments = [segment for segment in _SPLIT_RE.split(command) if segment.strip()]
    if not segments:
        return Denied("Empty command")
    for segment in segments:
        decision = validate_command(segment)
        if not decision.allowed:
            return decision
    return Allowed()


def _first_word(command: str) -> str:
    parts = command.split(maxsplit=1)
    return parts[0] if parts else ""
