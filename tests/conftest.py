"""Shared pytest fixtures for manifest-sync tests."""

import shutil
import subprocess
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import SyncConfig  # noqa: E402

MANIFEST_PATH = 'k8s/deployment.yaml'

DEPLOYMENT_MANIFEST = """\
# Managed by CI: only the api image is rewritten on deploy
apiVersion: apps/v1
kind: Deployment
metadata:
  name: example03
  labels:
    app: example03
spec:
  replicas: 2
  template:
    spec:
      initContainers:
        - name: migrate
          image: registry.example.com:8443/example03-migrate:old999
      containers:
        - name: api
          image: "registry.example.com:8443/example03:old999"
          ports:
            - containerPort: 8080
        - name: proxy
          image: registry.example.com:8443/proxy:1.2.3   # pinned
---
apiVersion: v1
kind: Service
metadata:
  name: example03
spec:
  ports:
    - port: 80
      targetPort: 8080
"""

TWO_WORKLOADS = """\
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  template:
    spec:
      containers:
        - name: api
          image: registry.example.com:8443/example03:old999
---
apiVersion: batch/v1
kind: CronJob
metadata:
  name: nightly
spec:
  jobTemplate:
    spec:
      template:
        spec:
          containers:
            - name: api
              image: registry.example.com:8443/example03:old999
"""


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_git when the git binary is missing."""
    if shutil.which('git'):
        return
    skip_marker = pytest.mark.skip(reason="requires git")
    for item in items:
        if "requires_git" in item.keywords:
            item.add_marker(skip_marker)


def git(*args, cwd=None) -> str:
    """Run git for test setup and return stdout."""
    result = subprocess.run(
        ['git', *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def remote_head(remote: Path, branch: str = 'main') -> str:
    return git('--git-dir', str(remote), 'rev-parse', f'refs/heads/{branch}').strip()


def remote_file(remote: Path, path: str = MANIFEST_PATH, branch: str = 'main') -> str:
    return git('--git-dir', str(remote), 'show', f'{branch}:{path}')


def remote_commit_count(remote: Path, branch: str = 'main') -> int:
    return int(git('--git-dir', str(remote), 'rev-list', '--count', branch).strip())


def remote_subjects(remote: Path, branch: str = 'main') -> list[str]:
    """Commit subjects, newest first."""
    return git('--git-dir', str(remote), 'log', '--format=%s', branch).splitlines()


def seed_remote(tmp_path: Path, files: dict, branch: str = 'main') -> Path:
    """Create a bare remote whose branch holds the given files."""
    remote = tmp_path / 'manifests.git'
    seed = tmp_path / 'seed'
    git('init', '--bare', '--quiet', str(remote))
    git('init', '--quiet', str(seed))
    git('config', 'user.email', 'test@example.com', cwd=seed)
    git('config', 'user.name', 'Test User', cwd=seed)
    git('config', 'commit.gpgsign', 'false', cwd=seed)
    for rel_path, content in files.items():
        path = seed / rel_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content.encode('utf-8') if isinstance(content, str) else content)
    git('add', '.', cwd=seed)
    git('commit', '--quiet', '-m', 'Initial manifests', cwd=seed)
    git('push', '--quiet', str(remote), f'HEAD:refs/heads/{branch}', cwd=seed)
    git('--git-dir', str(remote), 'symbolic-ref', 'HEAD', f'refs/heads/{branch}')
    return remote


@pytest.fixture
def manifest_remote(tmp_path):
    """Bare manifest repository with the example Deployment on main."""
    return seed_remote(tmp_path, {MANIFEST_PATH: DEPLOYMENT_MANIFEST, 'README.md': '# manifests\n'})


@pytest.fixture
def sync_config(manifest_remote):
    """SyncConfig targeting the manifest_remote fixture."""
    return SyncConfig(
        registry_host='registry.example.com:8443',
        project_path='example03',
        commit_id='abc1234',
        repo_url=str(manifest_remote),
        branch='main',
        file_path=MANIFEST_PATH,
        container_selector='api',
        backoff_seconds=0,
        git_timeout=60,
    )
