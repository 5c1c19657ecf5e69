"""Error taxonomy for the analysis worker.

Every error the pipeline raises derives from `WorkerError`. Retryable
failures additionally derive from the `TransientError` marker; the retry
policy keys on that marker, or on a narrower subclass for calls that must
not be repeated once sent.
"""

from typing import Optional


class WorkerError(Exception):
    """Base error for the worker."""


class TransientError(WorkerError):
    """Retryable: network timeouts, upstream 5xx, truncated downloads."""


class PayloadError(WorkerError):
    """The task payload is malformed. Never retried."""


# ---------------------------------------------------------------------------
# Fetch
# ---------------------------------------------------------------------------


class FetchError(WorkerError):
    """Base for registry and archive failures."""


class RegistryUnavailableError(FetchError, TransientError):
    """Registry unreachable, timed out, or answered with a retryable status."""


class PackageNotFoundError(FetchError):
    """The registry has no such package or version."""

    def __init__(self, package: str, version: Optional[str] = None):
        self.package = package
        self.version = version
        if version:
            super().__init__(f"Package {package} {version} not found")
        else:
            super().__init__(f"Package {package} not found")


class DependencyResolutionError(FetchError):
    """No registry version satisfies a declared dependency constraint."""


class RegistryProtocolError(FetchError):
    """Registry answered with an unexpected status or undecodable metadata."""


class MalformedArchiveError(FetchError, TransientError):
    """Archive could not be decoded or contains unsafe members."""


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class AnalysisError(WorkerError):
    """Base for subprocess failures."""


class SubprocessLaunchError(AnalysisError):
    """The binary is missing or cannot be executed. A deployment defect."""

    def __init__(self, command: str, cause: Optional[BaseException] = None):
        self.command = command
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Could not launch '{command}'{detail}")


class SubprocessExitError(AnalysisError):
    """The subprocess exited non-zero. Recorded as an outcome, not fatal."""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"'{command}' exited {exit_code}")


class SubprocessTimeoutError(AnalysisError):
    """The subprocess ran past its wall-clock timeout and was killed."""

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.command = command
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"'{command}' timed out after {timeout:g}s")


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class CodecError(WorkerError):
    """Base for container encoding and decoding failures."""


class DuplicateEntryError(CodecError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Entry '{name}' already exists in this container")


class MalformedIndexError(CodecError):
    """Index bytes are not a valid blob index."""


class CorruptEntryError(CodecError):
    """An entry's byte range does not decompress: blob/index mismatch."""


# ---------------------------------------------------------------------------
# Upload & notify
# ---------------------------------------------------------------------------


class UploadError(WorkerError):
    """Base for control-plane and storage upload failures."""


class ControlPlaneUnavailableError(UploadError, TransientError):
    """Network failure or retryable status from the control plane or storage."""


class ControlPlaneUnreachableError(ControlPlaneUnavailableError):
    """The connection was never established, so the request was not sent."""


class UploadRejectedError(UploadError):
    """The control plane or storage target refused the request."""

    def __init__(self, url: str, status_code: int, body: str = ""):
        self.url = url
        self.status_code = status_code
        msg = f"HTTP {status_code} from {url}"
        if body:
            msg += f" (body: {body})"
        super().__init__(msg)


class ProtocolError(WorkerError):
    """The control plane answered 2xx with an unexpected body."""


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class InvalidTransitionError(WorkerError):
    """A version task attempted a transition the state machine forbids."""


def reason_chain(exc: BaseException) -> list[str]:
    """Flatten an exception and its ``__cause__`` chain into messages.

    The outermost error comes first. Messages fall back to the exception
    type name when the exception carries no text.
    """
    reasons: list[str] = []
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        text = str(current) or type(current).__name__
        reasons.append(f"{type(current).__name__}: {text}")
        current = current.__cause__
    return reasons
