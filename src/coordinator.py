"""Commit coordination.

Turns a patch into exactly one commit on the remote branch. Pushes never
force; when a concurrent run lands first the push is rejected, the
working copy is reset to the new tip, the manifest is patched again
against the fresh content and the commit is retried. The loop is bounded
by push_attempts.
"""

import difflib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from config import SyncConfig
from errors import ConcurrentUpdateConflict, ManifestNotFound, ManifestParseError, PushRejected, SyncError
from image_ref import ImageReference
from patcher import ManifestDocument, PatchResult, patch_manifest
from session import RepositorySession

logger = logging.getLogger(__name__)


@dataclass
class CommitAttempt:
    """One commit-and-push attempt.

    Attributes:
        number: 1-based attempt number
        message: Commit message
        base_revision: Remote tip the commit was built on
        result: pending, success, superseded or failed
        revision: Commit created for this attempt
        error: Reason for superseded/failed
    """
    number: int
    message: str
    base_revision: str
    result: str = 'pending'
    revision: Optional[str] = None
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None

    def succeed(self, revision: str) -> None:
        self.result = 'success'
        self.revision = revision
        self.completed_at = time.time()

    def supersede(self, error: str) -> None:
        self.result = 'superseded'
        self.error = error
        self.completed_at = time.time()

    def fail(self, error: str) -> None:
        self.result = 'failed'
        self.error = error
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'number': self.number,
            'message': self.message,
            'base_revision': self.base_revision,
            'result': self.result,
        }
        if self.revision is not None:
            d['revision'] = self.revision
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class SyncOutcome:
    """Result of a successful synchronize() call.

    status is 'deployed' (one commit pushed), 'noop' (already deployed)
    or 'dry_run' (change computed, nothing committed).
    """
    status: str
    patch: PatchResult
    revision: Optional[str] = None
    diff: str = ''

    @property
    def commits_created(self) -> int:
        return 1 if self.status == 'deployed' else 0


def unified_diff(original: str, patch: PatchResult) -> str:
    """Render the change a patch would make as a unified diff."""
    return ''.join(difflib.unified_diff(
        original.splitlines(keepends=True),
        patch.new_content.splitlines(keepends=True),
        fromfile=f"a/{patch.file_path}",
        tofile=f"b/{patch.file_path}",
    ))


class CommitCoordinator:
    """Commits and pushes a manifest patch, re-patching on conflicts."""

    def __init__(
        self,
        config: SyncConfig,
        dry_run: bool = False,
        on_transition: Optional[Callable[[str], None]] = None,
    ):
        self.config = config
        self.dry_run = dry_run
        self.attempts: list[CommitAttempt] = []
        self._on_transition = on_transition or (lambda state: None)

    def load_document(self, session: RepositorySession) -> ManifestDocument:
        """Read the manifest from the session's working copy.

        Raises:
            ManifestNotFound: File missing on the branch
            ManifestParseError: File is not UTF-8 text
        """
        raw = session.read_file(self.config.file_path)
        if raw is None:
            raise ManifestNotFound(self.config.file_path, self.config.branch)
        try:
            content = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ManifestParseError(self.config.file_path, f"not UTF-8 ({e})") from e
        return ManifestDocument(
            file_path=self.config.file_path,
            raw_content=content,
            container_selector=self.config.container_selector,
        )

    def synchronize(self, session: RepositorySession, target: ImageReference) -> SyncOutcome:
        """Bring the remote manifest to the target image.

        Args:
            session: Acquired repository session
            target: Image reference to deploy

        Returns:
            SyncOutcome (deployed, noop or dry_run)

        Raises:
            ConcurrentUpdateConflict: Every push attempt was rejected
            ValidationError: Manifest does not match the selector
            SyncError: Any other session failure (propagated unchanged)
        """
        message = self.config.format_commit_message()
        max_attempts = self.config.push_attempts
        self.attempts = []

        for number in range(1, max_attempts + 1):
            document = self.load_document(session)
            patch = patch_manifest(document, target)

            if not patch.changed:
                self._on_transition('patched_noop')
                logger.info(f"No-op deploy: {self.config.file_path} already references {target}")
                return SyncOutcome(status='noop', patch=patch)

            self._on_transition('patched_changed')
            if self.dry_run:
                logger.info("Dry run: not committing")
                return SyncOutcome(status='dry_run', patch=patch, diff=unified_diff(document.raw_content, patch))

            attempt = CommitAttempt(number=number, message=message,
                                    base_revision=session.base_revision or '')
            self.attempts.append(attempt)
            try:
                session.write_file(self.config.file_path, patch.new_content.encode('utf-8'))
                revision = session.commit(
                    self.config.file_path,
                    message,
                    self.config.author_name,
                    self.config.author_email,
                )
                self._on_transition('committed')
                session.push()
            except PushRejected as e:
                attempt.supersede(e.message)
                logger.warning(f"Attempt {number}/{max_attempts} superseded: {e.message}")
                if number < max_attempts:
                    session.refresh()
                    self._on_transition('session_acquired')
                continue
            except SyncError as e:
                attempt.fail(e.message)
                raise

            attempt.succeed(revision)
            self._on_transition('pushed')
            logger.info(f"Pushed {revision[:12]} to {session.display_url} ({self.config.branch}): {message}")
            return SyncOutcome(status='deployed', patch=patch, revision=revision)

        raise ConcurrentUpdateConflict(session.display_url, self.config.branch, max_attempts)
