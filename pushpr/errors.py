from typing import Any, List, Optional


class PublishError(Exception):
    """Base class for failures that abort a publish attempt.

    Attributes:
        stage: The publish stage that was running when the error was raised.
            Filled in by the publisher; ``None`` when raised outside of it.
    """

    def __init__(self, message: str):
        self.message = message
        self.stage = None
        super().__init__(message)


class LocalVCSFailure(PublishError):
    """A git command exited non-zero; the message is its combined output."""

    def __init__(self, message: str, command: Optional[List[str]] = None, returncode: Optional[int] = None):
        super().__init__(message)
        self.command = command
        self.returncode = returncode


class RemoteAPIFailure(PublishError):
    """Raised when a GitHub API request fails.

    Attributes:
        status_code: HTTP status code, or ``None`` for transport errors.
        errors: The ``errors`` list from GitHub's error payload, if any.
        request_url: The requested URL with its query string removed.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[List[Any]] = None,
        request_url: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []
        self.request_url = request_url

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.status_code} {self.message}"


class PullRequestAlreadyExists(RemoteAPIFailure):
    """Creation was rejected because an open PR already exists for head/base."""


class UnexpectedState(PublishError):
    """The remote state contradicts an invariant (e.g. duplicate PRs for one branch)."""


class BranchLocked(PublishError):
    """Another publish currently holds the lock for this branch."""


class LockUnavailable(PublishError):
    """The lock backend could not be reached, so the branch was left untouched."""
