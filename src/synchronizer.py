"""Synchronizer run orchestration.

One run walks the state machine:

    resolving -> session_acquired -> patched_noop | patched_changed
              -> committed -> pushed -> done

with a rejected push looping from committed back to session_acquired
(refetch) until the push budget is spent. Terminal states are done and
failed. Every entity lives for one run only; the working copy is
discarded however the run ends.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import redact_url
from config import SyncConfig
from coordinator import CommitAttempt, CommitCoordinator
from errors import SyncError
from image_ref import ImageReference, resolve_image_reference
from preflight import run_preflight_checks
from session import RepositorySession, SessionManager

logger = logging.getLogger(__name__)

RESOLVING = 'resolving'
DONE = 'done'
FAILED = 'failed'


@dataclass
class SyncReport:
    """Per-run record of what happened.

    status is pending, deployed, noop, dry_run or failed.
    """
    repo_url: str
    branch: str
    file_path: str
    selector: str
    image: str = ''
    previous_image: str = ''
    previous_tag: str = ''
    status: str = 'pending'
    commits_created: int = 0
    revision: Optional[str] = None
    diff: str = ''
    states: list[str] = field(default_factory=list)
    attempts: list[CommitAttempt] = field(default_factory=list)
    error: Optional[SyncError] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.started_at = time.time()
        self.transition(RESOLVING)

    def transition(self, state: str) -> None:
        logger.debug(f"State: {state}")
        self.states.append(state)

    def fail(self, error: SyncError) -> None:
        self.status = 'failed'
        self.error = error
        self.completed_at = time.time()
        self.transition(FAILED)

    @property
    def success(self) -> bool:
        return self.error is None and self.status in ('deployed', 'noop', 'dry_run')

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return self.error.exit_code
        return 0

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def raise_for_error(self) -> None:
        """Re-raise the error that failed the run, if any."""
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'status': self.status,
            'exit_code': self.exit_code,
            'repository': redact_url(self.repo_url),
            'branch': self.branch,
            'file': self.file_path,
            'selector': self.selector,
            'image': self.image,
            'commits_created': self.commits_created,
            'states': list(self.states),
            'attempts': [a.to_dict() for a in self.attempts],
        }
        if self.previous_image:
            d['previous_image'] = self.previous_image
        if self.previous_tag:
            d['previous_tag'] = self.previous_tag
        if self.revision is not None:
            d['revision'] = self.revision
        if self.diff:
            d['diff'] = self.diff
        if self.error is not None:
            d['error'] = {
                'kind': self.error.kind,
                'code': self.error.code,
                'message': self.error.message,
            }
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        return d


class Synchronizer:
    """Runs one GitOps deployment synchronization."""

    def __init__(
        self,
        config: SyncConfig,
        dry_run: bool = False,
        preflight: bool = False,
        session_manager: Optional[SessionManager] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.dry_run = dry_run
        self.preflight = preflight
        self.session_manager = session_manager or SessionManager(config, sleep=sleep)

    def run(self) -> SyncReport:
        """Execute the run; never raises SyncError (see report.error)."""
        report = SyncReport(
            repo_url=self.config.repo_url,
            branch=self.config.branch,
            file_path=self.config.file_path,
            selector=self.config.container_selector,
        )
        report.start()
        coordinator = CommitCoordinator(self.config, dry_run=self.dry_run,
                                        on_transition=report.transition)
        session: Optional[RepositorySession] = None
        try:
            target = resolve_image_reference(
                self.config.registry_host,
                self.config.project_path,
                self.config.commit_id,
            )
            report.image = str(target)
            self.config.validate()
            logger.info(f"Deploying {target} to {redact_url(self.config.repo_url)} "
                        f"({self.config.branch}) {self.config.file_path} [{self.config.container_selector}]")

            if self.preflight:
                errors = run_preflight_checks(self.config)
                if errors:
                    raise errors[0]

            session = self.session_manager.acquire()
            report.transition('session_acquired')

            outcome = coordinator.synchronize(session, target)
            report.status = outcome.status
            report.commits_created = outcome.commits_created
            report.revision = outcome.revision
            report.previous_image = outcome.patch.previous_image
            report.previous_tag = self._previous_tag(outcome.patch.previous_image, target)
            report.diff = outcome.diff
            report.completed_at = time.time()
            report.transition(DONE)
        except SyncError as e:
            logger.error(f"{e.kind} error: {e}")
            report.fail(e)
        finally:
            report.attempts = list(coordinator.attempts)
            if session is not None:
                session.close()
        return report

    def _previous_tag(self, previous_image: str, target: ImageReference) -> str:
        """Tag of the image being replaced, or '' if it is not host/path:tag."""
        try:
            previous = ImageReference.parse(previous_image)
        except ValueError as e:
            logger.debug(f"Previous image not parsed: {e}")
            return ''
        if previous.repository != target.repository:
            logger.warning(
                f"{self.config.container_selector} switches image repository: "
                f"{previous.repository} -> {target.repository}"
            )
        return previous.tag


def synchronize(config: SyncConfig, dry_run: bool = False) -> SyncReport:
    """Run one synchronization and raise on failure."""
    report = Synchronizer(config, dry_run=dry_run).run()
    report.raise_for_error()
    return report
