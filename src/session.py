"""Repository session management.

A RepositorySession is one run's private working copy of the manifest
repository. It is created empty, cloned fresh, and deleted when the run
ends; nothing is reused between runs.

The credential stays in memory. It reaches git through the process
environment (GIT_CONFIG_COUNT/KEY/VALUE carrying an http.extraHeader),
so it never lands in argv, the remote URL, .git/config or a credential
store. Terminal prompts and credential helpers are disabled so a bad
credential fails fast instead of hanging the job. With TLS verification
turned off, http.sslVerify=false travels the same way.
"""

import base64
import logging
import os
import re
import shutil
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional

from common import CommandResult, redact, redact_url, run_command
from config import SyncConfig
from errors import (
    AuthenticationFailed,
    BranchNotFound,
    ConfigurationError,
    GitError,
    NetworkError,
    OperationTimeout,
    PushRejected,
    RepositoryUnavailable,
    SyncError,
)

logger = logging.getLogger(__name__)

# Substrings of git/remote error output, matched lowercase
AUTH_MARKERS = (
    'authentication failed',
    'http basic: access denied',
    'could not read username',
    'could not read password',
    'terminal prompts disabled',
    'invalid username or password',
    'the requested url returned error: 401',
    'the requested url returned error: 403',
    'permission denied (publickey',
    'not allowed to push',
    'pre-receive hook declined',
)
BRANCH_MISSING_MARKERS = (
    'not found in upstream',
    "couldn't find remote ref",
)
REJECTED_MARKERS = (
    '[rejected]',
    'non-fast-forward',
    'fetch first',
    'updates were rejected',
    'cannot lock ref',
    'stale info',
)
REPO_MISSING_MARKERS = (
    'repository not found',
    'does not appear to be a git repository',
    'the requested url returned error: 404',
)
TLS_MARKERS = (
    'ssl certificate problem',
    'server certificate verification failed',
    'certificate verify failed',
    'unable to get local issuer certificate',
    'self signed certificate',
    'self-signed certificate',
)
NETWORK_MARKERS = (
    'could not resolve host',
    'failed to connect',
    'connection timed out',
    'connection refused',
    'connection reset',
    'operation timed out',
    'network is unreachable',
    'temporary failure',
    'early eof',
    'rpc failed',
    'the remote end hung up',
    'unable to access',
    'the requested url returned error: 5',
)
# Matched only against git's own "fatal:" lines
FATAL_REPO_MISSING_MARKERS = (
    'does not exist',
)
FATAL_NETWORK_MARKERS = (
    'ssl',
    'gnutls',
)


def classify_git_failure(result: CommandResult, operation: str, remote_url: str, branch: str) -> SyncError:
    """Map a failed git command to the error taxonomy.

    Args:
        result: Failed command result (not timed out)
        operation: git operation name for messages (clone, fetch, push)
        remote_url: Redacted remote URL for messages
        branch: Target branch for messages

    Returns:
        Exception instance to raise (NetworkError and PushRejected are recoverable)
    """
    output = result.output
    text = output.lower()
    detail = output.splitlines()[-1].strip() if output else f'exit code {result.returncode}'
    # Quoted URLs and paths are dropped so host names cannot match
    fatal_text = '\n'.join(
        re.sub(r"'[^']*'", "''", line)
        for line in text.splitlines()
        if line.startswith('fatal:')
    )

    if any(marker in text for marker in AUTH_MARKERS):
        return AuthenticationFailed(remote_url, detail)
    if any(marker in text for marker in TLS_MARKERS):
        return ConfigurationError(
            f"TLS certificate verification failed for {remote_url} ({detail}); "
            "install the forge CA in the CI image or set SYNC_TLS_VERIFY=false",
            code="E106",
        )
    if any(marker in text for marker in BRANCH_MISSING_MARKERS):
        return BranchNotFound(remote_url, branch)
    if operation == 'push' and any(marker in text for marker in REJECTED_MARKERS):
        return PushRejected(remote_url, branch, detail)
    if (any(marker in text for marker in REPO_MISSING_MARKERS)
            or any(marker in fatal_text for marker in FATAL_REPO_MISSING_MARKERS)):
        return ConfigurationError(f"Repository not found: {remote_url} ({detail})", code="E105")
    if (any(marker in text for marker in NETWORK_MARKERS)
            or any(marker in fatal_text for marker in FATAL_NETWORK_MARKERS)):
        return NetworkError(f"git {operation} of {remote_url}: {detail}")
    return GitError(operation, detail)


class RepositorySession:
    """One run's exclusive working copy of the manifest repository.

    Use as a context manager so the working copy is always deleted:

        with SessionManager(config).acquire() as session:
            ...
    """

    def __init__(
        self,
        remote_url: str,
        branch: str,
        credential: str = '',
        username: str = 'gitlab-ci-token',
        timeout: float = 120.0,
        network_retries: int = 3,
        backoff_seconds: float = 1.0,
        tls_verify: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.remote_url = remote_url
        self.branch = branch
        self.timeout = timeout
        self.network_retries = network_retries
        self.backoff_seconds = backoff_seconds
        self.tls_verify = tls_verify
        self._credential = credential
        self._username = username
        self._sleep = sleep
        self.workdir: Optional[Path] = None
        self.working_copy: Optional[Path] = None
        self.base_revision: Optional[str] = None

    def __enter__(self) -> 'RepositorySession':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"RepositorySession(remote_url={self.display_url!r}, branch={self.branch!r})"

    @property
    def display_url(self) -> str:
        return redact_url(self.remote_url)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def acquire(self) -> Path:
        """Discard any existing copy and clone the branch tip.

        Returns:
            Path to the working copy

        Raises:
            AuthenticationFailed: Credential rejected (not retried)
            BranchNotFound: Branch missing on the remote
            RepositoryUnavailable: Network failures outlasted the retries
            OperationTimeout: A clone attempt exceeded the timeout
        """
        self.close()
        self.workdir = Path(tempfile.mkdtemp(prefix="manifest-sync-"))
        self.working_copy = self.workdir / "repo"
        logger.info(f"Cloning {self.display_url} ({self.branch})")

        def _clear_partial_clone():
            if self.working_copy.exists():
                shutil.rmtree(self.working_copy)

        self._run_network(
            'clone',
            ['clone', '--quiet', '--single-branch', '--no-tags', '--branch', self.branch,
             '--', self.remote_url, str(self.working_copy)],
            before_attempt=_clear_partial_clone,
        )
        self.base_revision = self.head_revision()
        logger.debug(f"Cloned {self.branch} at {self.base_revision}")
        return self.working_copy

    def refresh(self) -> str:
        """Fetch the remote branch tip and reset the working copy onto it.

        Drops any local commit that lost a push race.

        Returns:
            New base revision
        """
        self._require_working_copy()
        remote_ref = f"refs/remotes/origin/{self.branch}"
        logger.info(f"Re-fetching {self.display_url} ({self.branch})")
        self._run_network(
            'fetch',
            ['fetch', '--quiet', '--no-tags', 'origin', f"+refs/heads/{self.branch}:{remote_ref}"],
        )
        self._run_local('reset', ['reset', '--hard', '--quiet', remote_ref])
        self._run_local('clean', ['clean', '-fdq'])
        self.base_revision = self.head_revision()
        logger.debug(f"Refreshed {self.branch} to {self.base_revision}")
        return self.base_revision

    def close(self) -> None:
        """Delete the working copy."""
        if self.workdir and self.workdir.exists():
            shutil.rmtree(self.workdir, ignore_errors=True)
            logger.debug(f"Cleaned up {self.workdir}")
        self.workdir = None
        self.working_copy = None
        self.base_revision = None

    # -------------------------------------------------------------------------
    # Working copy operations
    # -------------------------------------------------------------------------

    def path_for(self, file_path: str) -> Path:
        """Resolve a repository-relative path inside the working copy."""
        self._require_working_copy()
        root = self.working_copy.resolve()
        path = (root / file_path).resolve()
        if root != path and root not in path.parents:
            raise ConfigurationError(f"Manifest path {file_path!r} escapes the repository")
        return path

    def read_file(self, file_path: str) -> Optional[bytes]:
        """Read a file from the working copy (None if missing)."""
        path = self.path_for(file_path)
        if not path.is_file():
            return None
        return path.read_bytes()

    def write_file(self, file_path: str, content: bytes) -> None:
        """Overwrite a file in the working copy."""
        self.path_for(file_path).write_bytes(content)

    def head_revision(self) -> str:
        result = self._run_local('rev-parse', ['rev-parse', 'HEAD'])
        return result.stdout.strip()

    def commit(self, file_path: str, message: str, author_name: str, author_email: str) -> str:
        """Commit a single file.

        Returns:
            Revision of the new commit
        """
        self._run_local('add', ['add', '--', file_path])
        self._run_local('commit', [
            '-c', f'user.name={author_name}',
            '-c', f'user.email={author_email}',
            '-c', 'commit.gpgsign=false',
            'commit', '--quiet', '--no-verify', '-m', message,
        ])
        return self.head_revision()

    def push(self) -> None:
        """Fast-forward the remote branch to HEAD.

        Never forces: the remote accepts the push only if HEAD descends
        from its current tip.

        Raises:
            PushRejected: Remote branch advanced since base_revision
        """
        logger.info(f"Pushing to {self.display_url} ({self.branch})")
        self._run_network('push', ['push', '--quiet', 'origin', f"HEAD:refs/heads/{self.branch}"])

    # -------------------------------------------------------------------------
    # git plumbing
    # -------------------------------------------------------------------------

    def _require_working_copy(self) -> None:
        if self.working_copy is None:
            raise GitError('session', "working copy not acquired")

    def _git_env(self) -> dict:
        """Environment for git: no prompts, no helpers, in-memory auth header.

        Settings are appended after any GIT_CONFIG_* entries the CI runner
        already exports.
        """
        env = os.environ.copy()
        env['GIT_TERMINAL_PROMPT'] = '0'
        settings = [('credential.helper', '')]
        if self._credential and self.remote_url.startswith(('http://', 'https://')):
            basic = base64.b64encode(f"{self._username}:{self._credential}".encode()).decode()
            settings.append(('http.extraHeader', f"Authorization: Basic {basic}"))
        if not self.tls_verify:
            settings.append(('http.sslVerify', 'false'))
        try:
            inherited = int(env.get('GIT_CONFIG_COUNT') or 0)
        except ValueError:
            inherited = 0
        for i, (key, value) in enumerate(settings, start=inherited):
            env[f'GIT_CONFIG_KEY_{i}'] = key
            env[f'GIT_CONFIG_VALUE_{i}'] = value
        env['GIT_CONFIG_COUNT'] = str(inherited + len(settings))
        return env

    def _git(self, args: list[str]) -> CommandResult:
        cmd = ['git']
        if self.working_copy is not None and self.working_copy.exists():
            cmd += ['-C', str(self.working_copy)]
        result = run_command(cmd + args, timeout=self.timeout, env=self._git_env())
        secrets = [self._credential]
        result.stdout = redact(result.stdout, secrets)
        result.stderr = redact(result.stderr, secrets)
        return result

    def _run_local(self, operation: str, args: list[str]) -> CommandResult:
        result = self._git(args)
        if result.timed_out:
            raise OperationTimeout(operation, self.timeout)
        if not result.ok:
            raise GitError(operation, result.output or f'exit code {result.returncode}')
        return result

    def _run_network(
        self,
        operation: str,
        args: list[str],
        before_attempt: Optional[Callable[[], None]] = None,
    ) -> CommandResult:
        """Run a network git command, retrying transient failures.

        Backoff doubles per attempt (1s, 2s, 4s with the defaults). Only
        NetworkError is retried; timeouts abort the run.
        """
        attempts = self.network_retries + 1
        last_error: Optional[NetworkError] = None
        for attempt in range(1, attempts + 1):
            if before_attempt:
                before_attempt()
            result = self._git(args)
            if result.ok:
                return result
            if result.timed_out:
                raise OperationTimeout(operation, self.timeout)

            error = classify_git_failure(result, operation, self.display_url, self.branch)
            if not isinstance(error, NetworkError):
                raise error

            last_error = error
            if attempt < attempts:
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"git {operation} failed ({error.message}); "
                    f"retrying in {delay:g}s (attempt {attempt}/{attempts})"
                )
                self._sleep(delay)

        raise RepositoryUnavailable(
            self.display_url, attempts, last_error.message if last_error else ''
        ) from last_error


class SessionManager:
    """Creates fresh, authenticated RepositorySessions from a SyncConfig."""

    def __init__(self, config: SyncConfig, sleep: Callable[[float], None] = time.sleep):
        self.config = config
        self._sleep = sleep

    def create(self) -> RepositorySession:
        """Build an unacquired session (no network access yet)."""
        return RepositorySession(
            remote_url=self.config.repo_url,
            branch=self.config.branch,
            credential=self.config.credential,
            username=self.config.username,
            timeout=self.config.git_timeout,
            network_retries=self.config.network_retries,
            backoff_seconds=self.config.backoff_seconds,
            tls_verify=self.config.tls_verify,
            sleep=self._sleep,
        )

    def acquire(self) -> RepositorySession:
        """Create a session and clone the branch tip into it.

        The working copy is removed again if the clone fails.
        """
        session = self.create()
        try:
            session.acquire()
        except BaseException:
            session.close()
            raise
        return session
