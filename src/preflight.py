"""Pre-flight checks run before any clone.

Catches the common operator mistakes early, with actionable messages:
- git binary missing
- credential rejected, or lacking write access, on an HTTP(S) remote
- repository URL pointing at nothing

The HTTP probe asks for the git-receive-pack ref advertisement, which
smart-HTTP servers only serve to clients allowed to push. Inconclusive
probes (connection errors, odd status codes) only log a warning: the
clone itself has retries and classifies failures on its own.
"""

import logging
from typing import Optional

import requests
import urllib3

from common import redact_url, run_command
from config import SyncConfig
from errors import AuthenticationFailed, ConfigurationError, SyncError

logger = logging.getLogger(__name__)


def check_git_available() -> Optional[SyncError]:
    """Check the git binary is installed."""
    result = run_command(['git', '--version'], timeout=10)
    if not result.ok:
        return ConfigurationError(
            f"git is not available: {result.output or 'not found on PATH'}\n"
            "  Install git in the CI image (apt install git)",
            code="E110",
        )
    logger.debug(result.stdout.strip())
    return None


def check_remote_access(
    remote_url: str,
    credential: str,
    username: str = 'gitlab-ci-token',
    timeout: float = 10,
    verify: bool = True,
) -> Optional[SyncError]:
    """Probe an HTTP(S) remote for push access with the credential.

    Args:
        remote_url: Repository URL (non-HTTP remotes are skipped)
        credential: Write credential
        username: Basic-auth user paired with the credential
        timeout: Request timeout in seconds
        verify: Verify TLS certificates

    Returns:
        Error for a definite failure, None if access looks fine or the probe was inconclusive
    """
    if not remote_url.startswith(('http://', 'https://')):
        logger.debug(f"Skipping HTTP probe for non-HTTP remote {redact_url(remote_url)}")
        return None

    display_url = redact_url(remote_url)
    if not verify:
        # Self-signed registries/forges in lab setups
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    try:
        resp = requests.get(
            f"{remote_url.rstrip('/')}/info/refs",
            params={'service': 'git-receive-pack'},
            auth=(username, credential),
            timeout=timeout,
            verify=verify,
        )
    except requests.exceptions.Timeout:
        logger.warning(f"Timeout probing {display_url}; continuing")
        return None
    except requests.exceptions.RequestException as e:
        logger.warning(f"Cannot probe {display_url}: {e}; continuing")
        return None

    if resp.status_code == 401:
        return AuthenticationFailed(
            display_url,
            "credential rejected (HTTP 401); check the injected CREDENTIAL and MANIFEST_USERNAME",
        )
    if resp.status_code == 403:
        return AuthenticationFailed(
            display_url,
            "credential lacks write access (HTTP 403); grant write_repository to the token",
        )
    if resp.status_code == 404:
        return ConfigurationError(f"Repository not found: {display_url} (HTTP 404)", code="E105")
    if resp.status_code != 200:
        logger.warning(f"Unexpected response probing {display_url}: {resp.status_code}; continuing")
        return None

    logger.info(f"Push access to {display_url} confirmed")
    return None


def run_preflight_checks(config: SyncConfig) -> list[SyncError]:
    """Run all pre-flight checks for a run.

    Returns:
        List of errors (empty if ready)
    """
    errors = []
    if error := check_git_available():
        errors.append(error)
    if error := check_remote_access(
        config.repo_url,
        config.credential,
        username=config.username,
        verify=config.tls_verify,
    ):
        errors.append(error)
    return errors


def format_preflight_results(config: SyncConfig, errors: list[SyncError]) -> str:
    """Render check results for the terminal."""
    lines = [f"Pre-flight checks for {redact_url(config.repo_url)} ({config.branch}):"]
    if not errors:
        lines.append("  ✓ ready")
        return '\n'.join(lines)
    for error in errors:
        for i, line in enumerate(error.message.split('\n')):
            prefix = "  ✗ " if i == 0 else "    "
            lines.append(f"{prefix}{line}")
    return '\n'.join(lines)
