"""Run configuration.

Configuration is resolved per run from three layers, later layers win:
1. Optional YAML settings file (--config or $MANIFEST_SYNC_CONFIG)
2. Environment variables (CI job variables)
3. CLI flag overrides

The settings file only carries non-secret tunables and defaults. The
write credential is accepted from the environment only (it is injected
by the CI credential provider) and is refused if found in the file.
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path, PurePosixPath
from typing import Optional

import yaml

from common import redact_url
from errors import ConfigurationError

logger = logging.getLogger(__name__)

SETTINGS_FILE_ENV = 'MANIFEST_SYNC_CONFIG'

# Field name -> environment variables, first non-empty wins.
# CI_* fallbacks are the GitLab predefined variables.
ENV_VARS = {
    'registry_host': ('REGISTRY_HOST',),
    'project_path': ('PROJECT_PATH', 'CI_PROJECT_NAME'),
    'commit_id': ('COMMIT_ID', 'CI_COMMIT_SHORT_SHA'),
    'repo_url': ('MANIFEST_REPO_URL',),
    'branch': ('MANIFEST_BRANCH',),
    'file_path': ('MANIFEST_FILE_PATH',),
    'container_selector': ('CONTAINER_SELECTOR',),
    'credential': ('CREDENTIAL', 'CI_GITLAB_TOKEN'),
    'username': ('MANIFEST_USERNAME',),
    'author_name': ('GIT_AUTHOR_NAME',),
    'author_email': ('GIT_AUTHOR_EMAIL',),
    'commit_message': ('SYNC_COMMIT_MESSAGE',),
    'network_retries': ('SYNC_NETWORK_RETRIES',),
    'backoff_seconds': ('SYNC_BACKOFF_SECONDS',),
    'push_attempts': ('SYNC_PUSH_ATTEMPTS',),
    'git_timeout': ('SYNC_GIT_TIMEOUT',),
    'tls_verify': ('SYNC_TLS_VERIFY',),
}

# Keys that must never appear in a settings file
SECRET_KEYS = {'credential', 'token', 'password', 'ci_gitlab_token'}

_TRUE = {'1', 'true', 'yes', 'on'}
_FALSE = {'0', 'false', 'no', 'off'}


@dataclass
class SyncConfig:
    """Everything one synchronizer run needs.

    The credential is excluded from repr so it cannot leak through logs
    or tracebacks that print the config.
    """
    registry_host: str = ''
    project_path: str = ''
    commit_id: str = ''
    repo_url: str = ''
    branch: str = 'main'
    file_path: str = ''
    container_selector: str = ''
    credential: str = field(default='', repr=False)

    # Basic-auth user paired with the credential (GitLab job/project tokens)
    username: str = 'gitlab-ci-token'
    author_name: str = 'CI Bot'
    author_email: str = 'ci@example.com'
    commit_message: str = 'Deploy {commit_id}'

    network_retries: int = 3
    backoff_seconds: float = 1.0
    push_attempts: int = 3
    git_timeout: float = 120.0
    tls_verify: bool = True

    @property
    def uses_http(self) -> bool:
        return self.repo_url.startswith(('http://', 'https://'))

    def format_commit_message(self) -> str:
        """Render the commit message template for this build."""
        try:
            return self.commit_message.format(commit_id=self.commit_id, tag=self.commit_id)
        except (KeyError, IndexError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid commit message template {self.commit_message!r}: {e}"
            ) from e

    def validate(self) -> None:
        """Check repository-side settings.

        Image reference fields are validated by the build context resolver.

        Raises:
            ConfigurationError: On the first invalid setting
        """
        if not self.repo_url:
            raise ConfigurationError("Manifest repository URL is not set (MANIFEST_REPO_URL)")
        if self.uses_http and redact_url(self.repo_url) != self.repo_url:
            raise ConfigurationError(
                f"Manifest repository URL {redact_url(self.repo_url)} embeds credentials; "
                "pass the token through CREDENTIAL instead"
            )
        if not self.branch:
            raise ConfigurationError("Manifest branch is not set (MANIFEST_BRANCH)")
        if not self.file_path:
            raise ConfigurationError("Manifest file path is not set (MANIFEST_FILE_PATH)")
        path = PurePosixPath(self.file_path)
        if path.is_absolute() or '..' in path.parts:
            raise ConfigurationError(
                f"Manifest file path {self.file_path!r} must be relative to the repository root"
            )
        if not self.container_selector:
            raise ConfigurationError("Container selector is not set (CONTAINER_SELECTOR)")
        if self.uses_http and not self.credential:
            raise ConfigurationError(
                f"No credential for {redact_url(self.repo_url)} "
                "(CREDENTIAL must be injected by the CI credential provider)"
            )
        if self.network_retries < 0:
            raise ConfigurationError("network_retries must be >= 0")
        if self.push_attempts < 1:
            raise ConfigurationError("push_attempts must be >= 1")
        if self.git_timeout <= 0:
            raise ConfigurationError("git_timeout must be > 0")
        if self.backoff_seconds < 0:
            raise ConfigurationError("backoff_seconds must be >= 0")
        self.format_commit_message()


def _coerce(name: str, value):
    """Convert a raw setting to the field's type."""
    default = getattr(SyncConfig, name, '')
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigurationError(f"Invalid boolean for {name}: {value!r}")
    if isinstance(default, (int, float)):
        try:
            return type(default)(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid number for {name}: {value!r}") from e
    return str(value).strip()


def load_settings_file(path: Path) -> dict:
    """Load tunables from a YAML settings file.

    Raises:
        ConfigurationError: File missing, malformed, or containing a secret
    """
    if not path.exists():
        raise ConfigurationError(f"Settings file not found: {path}")
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping")

    leaked = SECRET_KEYS & {str(k).lower() for k in data}
    if leaked:
        raise ConfigurationError(
            f"Settings file {path} contains secrets ({', '.join(sorted(leaked))}); "
            "credentials must be injected through the environment"
        )

    known = {f.name for f in fields(SyncConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown settings in {path}: {', '.join(sorted(unknown))}")
    return data


def load_config(
    settings_file: Optional[Path] = None,
    env: Optional[dict] = None,
    overrides: Optional[dict] = None,
) -> SyncConfig:
    """Resolve a SyncConfig from file, environment and overrides.

    Args:
        settings_file: YAML settings file (falls back to $MANIFEST_SYNC_CONFIG)
        env: Environment mapping (defaults to os.environ)
        overrides: Field values from CLI flags; None values are ignored

    Returns:
        Unvalidated SyncConfig (call validate() before use)
    """
    env = os.environ if env is None else env
    values: dict = {}

    if settings_file is None and env.get(SETTINGS_FILE_ENV):
        settings_file = Path(env[SETTINGS_FILE_ENV])
    if settings_file is not None:
        values.update(load_settings_file(settings_file))
        logger.debug(f"Loaded settings from {settings_file}: {sorted(values)}")

    for name, env_names in ENV_VARS.items():
        for env_name in env_names:
            if env.get(env_name):
                values[name] = env[env_name]
                break

    for name, value in (overrides or {}).items():
        if value is not None:
            values[name] = value

    return SyncConfig(**{name: _coerce(name, value) for name, value in values.items()})
