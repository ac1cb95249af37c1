"""Build context resolution.

Derives the immutable image reference that CI just pushed from the
registry host, project path and commit identifier of the build.
"""

import re
from dataclasses import dataclass

from errors import InvalidCommitIdentifier, MissingRegistryConfig

# Short or full SHA-1, plus full SHA-256 object ids
COMMIT_ID_PATTERN = re.compile(r'^(?:[0-9a-f]{7,40}|[0-9a-f]{64})$')

# host, host:port, or [ipv6]:port (no scheme, no path)
REGISTRY_HOST_PATTERN = re.compile(
    r'^(?:[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)*'
    r'|\[[0-9A-Fa-f:]+\])(?::[0-9]{1,5})?$'
)

# Lowercase path components as accepted by OCI distribution
PROJECT_COMPONENT_PATTERN = re.compile(r'^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$')


@dataclass(frozen=True)
class ImageReference:
    """Fully qualified container image reference.

    Attributes:
        registry_host: Registry host with optional port (registry.example.com:8443)
        project_path: Repository path inside the registry (team/app)
        tag: Build identifier used as the image tag
    """
    registry_host: str
    project_path: str
    tag: str

    def __str__(self) -> str:
        return f"{self.registry_host}/{self.project_path}:{self.tag}"

    @property
    def repository(self) -> str:
        """Reference without the tag."""
        return f"{self.registry_host}/{self.project_path}"

    @classmethod
    def parse(cls, value: str) -> 'ImageReference':
        """Split an existing `host/path:tag` string.

        The tag separator is the last ':' after the last '/', so registry
        ports are not mistaken for tags.

        Raises:
            ValueError: If the value has no registry host or no tag
        """
        value = value.strip()
        if '@' in value:
            raise ValueError(f"Digest references are not supported: {value}")
        if '/' not in value:
            raise ValueError(f"Image reference has no registry host: {value}")
        host, remainder = value.split('/', 1)
        path, sep, tag = remainder.rpartition(':')
        if not sep or not path or not tag:
            raise ValueError(f"Image reference has no tag: {value}")
        return cls(registry_host=host, project_path=path, tag=tag)


def resolve_image_reference(registry_host: str, project_path: str, commit_id: str) -> ImageReference:
    """Build the ImageReference for a CI build.

    Args:
        registry_host: Registry host, optionally with port
        project_path: Image repository path inside the registry
        commit_id: Commit identifier of the build (7-40 lowercase hex)

    Returns:
        ImageReference tagged with the commit identifier

    Raises:
        MissingRegistryConfig: Registry host or project path empty/malformed
        InvalidCommitIdentifier: Commit identifier empty/malformed
    """
    registry_host = (registry_host or '').strip()
    project_path = (project_path or '').strip().strip('/')
    commit_id = (commit_id or '').strip()

    if not registry_host:
        raise MissingRegistryConfig("Registry host is not set (REGISTRY_HOST)")
    if '://' in registry_host or not REGISTRY_HOST_PATTERN.match(registry_host):
        raise MissingRegistryConfig(
            f"Registry host {registry_host!r} is malformed "
            "(expected host or host:port, without scheme or path)"
        )

    if not project_path:
        raise MissingRegistryConfig("Project path is not set (PROJECT_PATH)")
    for component in project_path.split('/'):
        if not PROJECT_COMPONENT_PATTERN.match(component):
            raise MissingRegistryConfig(
                f"Project path {project_path!r} is malformed "
                f"(component {component!r} must be lowercase alphanumerics separated by . _ -)"
            )

    if not COMMIT_ID_PATTERN.match(commit_id):
        raise InvalidCommitIdentifier(commit_id)

    return ImageReference(registry_host=registry_host, project_path=project_path, tag=commit_id)
