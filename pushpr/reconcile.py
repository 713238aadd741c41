import logging
from typing import Optional

from .errors import PullRequestAlreadyExists, UnexpectedState
from .github import GitHubClient
from .metrics import pull_requests_total
from .models import DesiredPR, PullRequestHandle
from .ratelimit import RateLimiter

logger = logging.getLogger(__name__)


def different(current: Optional[str], desired: Optional[str]) -> bool:
    """Only two present, unequal values count as drift."""
    return current is not None and desired is not None and current != desired


class PullRequestReconciler:
    """Finds the open PR for a head/base pair or creates it, then fixes title/body drift.

    ``api_limiter`` gates every remote call; ``push_limiter`` additionally
    gates the create attempt. Errors are never retried here.
    """

    def __init__(self, client: GitHubClient, api_limiter: RateLimiter, push_limiter: RateLimiter):
        self.client = client
        self.api_limiter = api_limiter
        self.push_limiter = push_limiter

    def reconcile(self, owner: str, repo: str, desired: DesiredPR) -> PullRequestHandle:
        self.push_limiter.acquire()
        self.api_limiter.acquire()
        try:
            pr = self.client.create_pull_request(owner, repo, desired)
        except PullRequestAlreadyExists:
            logger.debug("PR already exists for %s/%s head=%s base=%s", owner, repo, desired.head, desired.base)
            pr = self._find_existing(owner, repo, desired)
            return self._correct_drift(owner, repo, pr, desired)
        logger.info("Created PR #%s for %s/%s head=%s", pr.number, owner, repo, desired.head)
        pull_requests_total.labels(outcome="created").inc()
        return pr

    def _find_existing(self, owner: str, repo: str, desired: DesiredPR) -> PullRequestHandle:
        self.api_limiter.acquire()
        existing = self.client.list_pull_requests(owner, repo, head=desired.head, base=desired.base)
        if len(existing) != 1:
            pull_requests_total.labels(outcome="unexpected_state").inc()
            raise UnexpectedState(
                f"expected exactly 1 open PR for {owner}/{repo} head={desired.head} base={desired.base}, "
                f"found {len(existing)}"
            )
        return existing[0]

    def _correct_drift(self, owner: str, repo: str, pr: PullRequestHandle, desired: DesiredPR) -> PullRequestHandle:
        if not (different(pr.title, desired.title) or different(pr.body, desired.body)):
            pull_requests_total.labels(outcome="unchanged").inc()
            return pr
        logger.info("Updating title/body of PR #%s for %s/%s", pr.number, owner, repo)
        self.api_limiter.acquire()
        updated = self.client.edit_pull_request(owner, repo, pr.number, title=desired.title, body=desired.body)
        pull_requests_total.labels(outcome="edited").inc()
        return updated
