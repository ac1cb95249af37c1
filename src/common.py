"""Common utilities for running git and redacting secrets."""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of an external command."""
    returncode: int
    stdout: str = ''
    stderr: str = ''
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def output(self) -> str:
        """Combined stderr and stdout (git reports most errors on stderr)."""
        return '\n'.join(part for part in (self.stderr.strip(), self.stdout.strip()) if part)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: float = 600,
    env: Optional[dict] = None
) -> CommandResult:
    """Run a command and capture its output.

    Never raises for non-zero exit codes; timeouts are reported through
    CommandResult.timed_out so callers can tell them apart from failures.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        return CommandResult(result.returncode, result.stdout, result.stderr)
    except subprocess.TimeoutExpired:
        return CommandResult(-1, '', f'Command timed out after {timeout}s', timed_out=True)
    except OSError as e:
        return CommandResult(-1, '', str(e))


def redact_url(url: str) -> str:
    """Strip userinfo (user:token@) from a URL for logs and messages."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.scheme or '@' not in parts.netloc:
        return url
    host = parts.netloc.rsplit('@', 1)[1]
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


def redact(text: str, secrets: list[str]) -> str:
    """Replace every occurrence of the given secrets in text."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, '***')
    return text
