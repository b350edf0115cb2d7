"""Helpers for building shell commands without embedding secrets."""

import shlex

# Resource limiting prefixes for collection probes
METRICS_PREFIX = "ionice -c2 -n7 nice -n 19"
INVENTORY_PREFIX = "nice -n 10 ionice -c2 -n7"

REDACTED = "********"


def niced(command: str, prefix: str = METRICS_PREFIX) -> str:
    """Run a probe at low CPU and IO priority."""
    return f"{prefix} sh -c {shlex.quote(command)}"


def sudo_wrap(command: str) -> str:
    """
    Wrap a command so it runs through ``sudo -S`` in a login shell.

    The password is never part of the returned string; the caller writes it
    to the channel's stdin, where ``sudo -S`` reads it.
    """
    return f"sudo -S -p '' bash -lc {shlex.quote(command)}"


def with_stdin_env(variable: str, command: str) -> str:
    """
    Read one line of stdin into ``variable`` and run ``command`` with it exported.

    The variable only exists for that single invocation, which keeps database
    passwords out of argv and out of the remote process listing.
    """
    script = f"IFS= read -r {variable} && export {variable} && exec {command}"
    return f"bash -c {shlex.quote(script)}"


def stdin_secret(secret: str | None) -> str | None:
    """Format a secret for a stdin side-channel."""
    if secret is None:
        return None
    return f"{secret}\n"


def redact(text: str, secrets: list[str | None]) -> str:
    """Mask every occurrence of the given secrets, e.g. before logging."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text
