"""Error taxonomy for manifest synchronization.

Every failure carries a short code and an operator-facing message. The
exit code is attached to the class so the CLI can map any error without
knowing the concrete type:

- ConfigurationError (exit 1): bad inputs, unknown branch, unreachable repo
- AuthenticationError (exit 1): credential rejected by the remote
- ConflictError (exit 2): remote branch kept moving, retry budget spent
- OperationTimeout (exit 3): a git network operation exceeded its timeout
- ValidationError (exit 4): manifest shape does not match the selector

NetworkError and PushRejected are recoverable and normally handled inside
the session manager and commit coordinator. They only escape as their
fatal counterparts (RepositoryUnavailable, ConcurrentUpdateConflict).
GitError covers unclassified git failures and exits 1.
"""


class SyncError(Exception):
    """Base exception for synchronizer errors."""

    exit_code = 1
    kind = "error"

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

class ConfigurationError(SyncError):
    """Invalid or missing run configuration."""

    kind = "configuration"

    def __init__(self, message: str, code: str = "E100"):
        super().__init__(code, message)


class MissingRegistryConfig(ConfigurationError):
    """Registry host or project path is empty or malformed."""

    def __init__(self, message: str):
        super().__init__(message, code="E101")


class InvalidCommitIdentifier(ConfigurationError):
    """Commit identifier does not look like a git object id."""

    def __init__(self, commit_id: str):
        self.commit_id = commit_id
        super().__init__(
            f"Invalid commit identifier: {commit_id!r} "
            "(expected 7-40 lowercase hex characters)",
            code="E102",
        )


class BranchNotFound(ConfigurationError):
    """Target branch does not exist on the remote."""

    def __init__(self, remote_url: str, branch: str):
        self.branch = branch
        super().__init__(
            f"Branch '{branch}' not found in {remote_url}",
            code="E103",
        )


class RepositoryUnavailable(ConfigurationError):
    """Remote stayed unreachable after all network retries."""

    def __init__(self, remote_url: str, attempts: int, detail: str = ''):
        self.attempts = attempts
        message = f"Repository {remote_url} unavailable after {attempts} attempts"
        if detail:
            message += f": {detail}"
        super().__init__(message, code="E104")


class GitError(SyncError):
    """A git command failed for a reason that has no specific class."""

    kind = "git"

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        super().__init__("E900", f"git {operation} failed: {detail}")


# -----------------------------------------------------------------------------
# Authentication
# -----------------------------------------------------------------------------

class AuthenticationError(SyncError):
    """Credential was rejected. Never retried."""

    kind = "authentication"

    def __init__(self, message: str, code: str = "E200"):
        super().__init__(code, message)


class AuthenticationFailed(AuthenticationError):
    """Remote refused the supplied credential."""

    def __init__(self, remote_url: str, detail: str = ''):
        message = f"Authentication failed for {remote_url}"
        if detail:
            message += f": {detail}"
        super().__init__(message, code="E201")


# -----------------------------------------------------------------------------
# Network (recoverable)
# -----------------------------------------------------------------------------

class NetworkError(SyncError):
    """Transient network failure. Retried with backoff."""

    kind = "network"

    def __init__(self, message: str):
        super().__init__("E300", message)


# -----------------------------------------------------------------------------
# Conflicts
# -----------------------------------------------------------------------------

class ConflictError(SyncError):
    """Remote branch advanced past the local base revision."""

    exit_code = 2
    kind = "conflict"


class PushRejected(ConflictError):
    """A single push was rejected as non-fast-forward. Recoverable."""

    def __init__(self, remote_url: str, branch: str, detail: str = ''):
        self.branch = branch
        message = f"Push to {remote_url} ({branch}) rejected: remote branch has advanced"
        if detail:
            message += f" ({detail})"
        super().__init__("E401", message)


class ConcurrentUpdateConflict(ConflictError):
    """Every push attempt lost the race to a concurrent update."""

    def __init__(self, remote_url: str, branch: str, attempts: int):
        self.branch = branch
        self.attempts = attempts
        super().__init__(
            "E402",
            f"Gave up after {attempts} push attempts: {remote_url} ({branch}) "
            "kept advancing under concurrent updates",
        )


# -----------------------------------------------------------------------------
# Timeouts
# -----------------------------------------------------------------------------

class OperationTimeout(SyncError):
    """A git network operation exceeded its per-attempt timeout."""

    exit_code = 3
    kind = "timeout"

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__("E500", f"git {operation} timed out after {timeout:g}s")


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------

class ValidationError(SyncError):
    """Manifest does not have the shape the selector expects."""

    exit_code = 4
    kind = "validation"


class SelectorNotFound(ValidationError):
    """Selector matched no image field."""

    def __init__(self, selector: str, file_path: str, detail: str = ''):
        self.selector = selector
        message = f"Selector '{selector}' matched no container image in {file_path}"
        if detail:
            message += f" ({detail})"
        super().__init__("E601", message)


class SelectorAmbiguous(ValidationError):
    """Selector matched more than one image field."""

    def __init__(self, selector: str, file_path: str, matches: int):
        self.selector = selector
        self.matches = matches
        super().__init__(
            "E602",
            f"Selector '{selector}' matched {matches} containers in {file_path}; "
            "qualify it as <Kind>/<name>/<container>",
        )


class ManifestNotFound(ValidationError):
    """Manifest file is missing from the repository."""

    def __init__(self, file_path: str, branch: str):
        super().__init__("E603", f"Manifest {file_path} not found on branch '{branch}'")


class ManifestParseError(ValidationError):
    """Manifest is not valid YAML."""

    def __init__(self, file_path: str, detail: str):
        super().__init__("E604", f"Cannot parse {file_path}: {detail}")
