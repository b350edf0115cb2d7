"""
Dangerous command detection.

This is a first-line filter applied before interactive commands reach a
host. Regex matching can be evaded; the real boundary is a least-privilege
remote account.
"""

import logging
import re

from common.errors import CommandBlocked

logger = logging.getLogger(__name__)

# Patterns are matched against the lowercased, whitespace-collapsed command
DANGEROUS_PATTERNS: dict[str, list[str]] = {
    "filesystem destruction": [
        r"\brm\s+(?:-\S+\s+)*-(?:[a-z]*r[a-z]*|-recursive)\s+(?:-\S+\s+)*(?:/|/\*|\*|~/?)(?=\s|;|&|\||$)",
        r"\bmkfs(?:\.[a-z0-9]+)?\s",
        r"\bdd\s+.*\bof=/dev/",
        r"\bshred\b",
        r"\bwipe(?:fs)?\b",
        r">\s*/dev/(?:sd|hd|vd|nvme)",
        r"\bchattr\s+\+i\s+/",
        r"\bmount\s+/dev/",
        r"\bumount\s+/(?:\s|$)",
    ],
    "process and power control": [
        r"\bkillall\b",
        r"\bpkill\s+-9\b",
        r"\bkill\s+-9\s+-?1\b",
        r"\b(?:reboot|shutdown|halt|poweroff)\b",
        r"\binit\s+[06]\b",
        r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
    ],
    "account and permission tampering": [
        r"\buserdel\b",
        r"\busermod\s+.*-s\s+/bin/false",
        r"\bpasswd\s+root\b",
        r"\bchmod\s+(?:-\S+\s+)*0?000\b",
        r"\bchmod\s+(?:-\S+\s+)*0?777\s+/(?:\s|$)",
        r"\bchown\s+(?:-\S+\s+)*\S+:\S*\s+/(?:\s|$)",
    ],
    "network and service disablement": [
        r"\biptables\s+-f\b",
        r"\bufw\s+disable\b",
        r"\bservice\s+\S+\s+stop\b",
        r"\bsystemctl\s+(?:stop|disable)\b",
    ],
    "package removal": [
        r"\b(?:apt|apt-get|yum|dnf)\s+(?:remove|purge|erase)\s+.*\b(?:sudo|ssh|openssh-server)\b",
        r"\bpip3?\s+uninstall\s+-y\s+pip\b",
    ],
    "command injection": [
        r"(?:;|\||&&)\s*(?:rm|del|format|shutdown|mkfs\S*)\b",
        r"\$\([^)]*\brm\b",
        r"`[^`]*\brm\b",
        r">\s*/dev/null\s+2>&1\s*&",
        r"\bdocker\s+rm\s+-f\s+\$\(docker\s+ps\s+-aq\)",
        r"\bdocker\s+system\s+prune\s+-af\b",
    ],
    "cron and audit tampering": [
        r"\bcrontab\s+-r\b",
        r">\s*/etc/crontab\b",
        r">\s*/var/log/",
        r"\bauditctl\s+-d\b",
    ],
    "ssh key and service destruction": [
        r">\s*\S*\.ssh/authorized_keys",
        r"\brm\s+.*\.ssh/",
    ],
}

# Substrings that are only dangerous next to a destructive verb
SUSPICIOUS_SEQUENCES: dict[str, str] = {
    "/dev/sd": r"\b(?:dd|mkfs\S*|shred|wipefs|fdisk|sfdisk|parted)\b|>",
    "/dev/hd": r"\b(?:dd|mkfs\S*|shred|wipefs|fdisk|sfdisk|parted)\b|>",
    "/dev/nvme": r"\b(?:dd|mkfs\S*|shred|wipefs|fdisk|sfdisk|parted)\b|>",
    "/dev/null": r"\bdd\b.*>\s*/dev/null",
    "$((": r"\b(?:rm|dd|mkfs\S*|shred|kill)\b",
    "2>/dev/null": r"\b(?:dd|mkfs\S*|shred)\b.*2>/dev/null",
}

_COMPILED_RULES = [
    (group, re.compile(pattern))
    for group, patterns in DANGEROUS_PATTERNS.items()
    for pattern in patterns
]
_COMPILED_CONTEXT = {seq: re.compile(pattern) for seq, pattern in SUSPICIOUS_SEQUENCES.items()}


def normalize_command(command: str) -> str:
    """Lowercase, trim and collapse runs of whitespace."""
    return re.sub(r"\s+", " ", command.strip().lower())


def find_rule(command: str) -> str | None:
    """
    Return a description of the first rule the command trips, or None.

    Rules are checked in declaration order and the first match wins.
    """
    normalized = normalize_command(command)
    if not normalized:
        return None

    for group, regex in _COMPILED_RULES:
        if regex.search(normalized):
            return f"{group}: {regex.pattern}"

    for sequence, context in _COMPILED_CONTEXT.items():
        if sequence in normalized and context.search(normalized):
            return f"suspicious sequence: {sequence}"

    return None


def is_dangerous(command: str) -> bool:
    """Classify a command as dangerous. Pure, no I/O."""
    return find_rule(command) is not None


def ensure_safe(command: str) -> None:
    """
    Raise if a command must not be dispatched.

    Raises:
        CommandBlocked: When any rule matches
    """
    rule = find_rule(command)
    if rule is not None:
        logger.warning(f"Blocked command matching rule [{rule}]")
        raise CommandBlocked("Command blocked for security reasons")
