"""Safety filter for ad-hoc lab commands.

This is a coarse denylist heuristic, not a sandboxing guarantee: it does a
case-insensitive substring match, so it blocks harmless commands that happen to
contain a listed word (``echo summary`` contains ``su``) and lets through
anything obfuscated enough to avoid the literal strings. Isolation comes from
the workload itself. Template setup commands are author-supplied and never pass
through this filter.
"""
from typing import Optional, Tuple

from labforge.logger import logger

BLOCKED_COMMANDS: Tuple[str, ...] = (
    "rm -rf", "sudo", "su", "passwd", "shutdown", "reboot",
    "kill", "killall", "pkill", "halt", "poweroff",
    "dd", "mkfs", "fdisk", "mount", "umount",
)

REJECTION_MESSAGE = "Command not allowed for security reasons"


def find_blocked(command: str) -> Optional[str]:
    """Returns the first denylisted token contained in ``command``, if any."""
    lowered = command.lower()
    for blocked in BLOCKED_COMMANDS:
        if blocked in lowered:
            return blocked
    return None


def is_safe(command: str) -> bool:
    blocked = find_blocked(command)
    if blocked is not None:
        logger.warning(f"CommandSafety: Blocked potentially dangerous command '{command}' (matched '{blocked}').")
        return False
    return True
