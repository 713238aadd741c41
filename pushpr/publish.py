import enum
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .errors import BranchLocked, PublishError
from .git import GitGateway
from .github import GitHubClient
from .lock import BranchLock
from .metrics import publish_stage_seconds, publish_total
from .models import DEFAULT_BASE_BRANCH, CombinedStatus, DesiredPR, PublishRequest, PublishResult
from .ratelimit import RateLimiter
from .reconcile import PullRequestReconciler

logger = logging.getLogger(__name__)

CIRCLECI_CONTEXT = "ci/circleci"
TRACKING_PARAMS = ("utm_campaign", "utm_medium", "utm_source")


class PublishStage(str, enum.Enum):
    START = "start"
    PUSHED = "pushed"
    RECONCILED = "reconciled"
    ASSIGNEE_ENSURED = "assignee_ensured"
    STATUS_FETCHED = "status_fetched"
    DONE = "done"
    FAILED = "failed"


def derive_title_and_body(commit_message: str, body_override: str = "") -> Tuple[str, str]:
    """Title is the first line of the commit message; body is the rest unless overridden."""
    title, sep, rest = commit_message.partition("\n")
    body = rest if sep else ""
    if body_override:
        body = body_override
    return title, body


def strip_tracking_params(url: str) -> str:
    """Drop utm_* tracking parameters; other parameters are kept (re-encoded, sorted by key)."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in TRACKING_PARAMS]
    query.sort(key=lambda kv: kv[0])
    return urlunsplit(parts._replace(query=urlencode(query)))


def find_ci_build_url(status: CombinedStatus, context: str = CIRCLECI_CONTEXT) -> str:
    url = ""
    for s in status.statuses:
        if s.context == context and s.target_url is not None:
            url = strip_tracking_params(s.target_url)
    return url


class Publisher:
    """Pushes a local commit and converges its pull request.

    Stages run in order START, PUSHED, RECONCILED, ASSIGNEE_ENSURED,
    STATUS_FETCHED, DONE. The first failing stage aborts the run; nothing
    already done (push, PR creation) is rolled back, so re-running the whole
    publish is the way to retry.
    """

    def __init__(
        self,
        git: GitGateway,
        client: GitHubClient,
        api_limiter: RateLimiter,
        push_limiter: RateLimiter,
        lock: Optional[BranchLock] = None,
        base_branch: str = DEFAULT_BASE_BRANCH,
    ):
        self.git = git
        self.client = client
        self.api_limiter = api_limiter
        self.reconciler = PullRequestReconciler(client, api_limiter, push_limiter)
        self.lock = lock
        self.base_branch = base_branch

    @contextmanager
    def _stage(self, name: str, reached: List[PublishStage]) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        except PublishError as e:
            e.stage = reached[-1]
            raise
        finally:
            publish_stage_seconds.labels(stage=name).observe(time.perf_counter() - start)

    def publish(self, req: PublishRequest) -> PublishResult:
        holder = None
        try:
            if self.lock is not None:
                holder = self.lock.acquire(req.repo_owner, req.repo_name, req.branch_name)
                if holder is None:
                    raise BranchLocked(
                        f"another publish holds the lock for {req.repo_owner}/{req.repo_name}:{req.branch_name}"
                    )
            result = self._publish(req)
        except PublishError as e:
            if e.stage is None:
                e.stage = PublishStage.START
            publish_total.labels(result="failure", stage=e.stage.value).inc()
            logger.info(
                "Publish failed for %s/%s:%s at stage=%s: %s",
                req.repo_owner, req.repo_name, req.branch_name, e.stage.value, e,
            )
            raise
        finally:
            if holder is not None:
                # Never raises; an unreleased key expires with its TTL
                self.lock.release(req.repo_owner, req.repo_name, req.branch_name, holder)
        publish_total.labels(result="success", stage=PublishStage.DONE.value).inc()
        return result

    def _publish(self, req: PublishRequest) -> PublishResult:
        owner, repo = req.repo_owner, req.repo_name
        reached = [PublishStage.START]

        with self._stage("push", reached):
            sha = self.git.read_last_commit_sha(req.plan_dir)
            logger.debug("Pushing %s to %s/%s:%s", sha, owner, repo, req.branch_name)
            self.git.force_push(req.plan_dir, req.branch_name)
        reached.append(PublishStage.PUSHED)

        title, body = derive_title_and_body(req.commit_message, req.pr_body)
        desired = DesiredPR(title=title, body=body, head=req.head, base=self.base_branch)
        with self._stage("reconcile", reached):
            pr = self.reconciler.reconcile(owner, repo, desired)
        reached.append(PublishStage.RECONCILED)

        with self._stage("assignee", reached):
            # An empty login means no assignee was requested
            if req.pr_assignee and (pr.assignee is None or pr.assignee != req.pr_assignee):
                self.api_limiter.acquire()
                self.client.add_assignees(owner, repo, pr.number, [req.pr_assignee])
        reached.append(PublishStage.ASSIGNEE_ENSURED)

        with self._stage("status", reached):
            self.api_limiter.acquire()
            status = self.client.get_combined_status(owner, repo, pr.head_sha or sha)
        reached.append(PublishStage.STATUS_FETCHED)

        result = PublishResult(
            success=True,
            commit_sha=pr.head_sha or sha,
            pull_request_number=pr.number,
            pull_request_url=pr.html_url,
            pull_request_combined_status=status.state,
            pull_request_assignee=req.pr_assignee,
            circleci_build_url=find_ci_build_url(status),
        )
        logger.info("Published %s/%s:%s %s", owner, repo, req.branch_name, result.render())
        return result


def publish_outcome(publisher: Publisher, req: PublishRequest) -> Tuple[PublishResult, Optional[PublishError]]:
    """Run one publish, returning a failed result plus the error instead of raising."""
    try:
        return publisher.publish(req), None
    except PublishError as e:
        return PublishResult.failed(), e


def publish_all(
    publisher: Publisher, requests: Sequence[PublishRequest], max_workers: int = 4
) -> List[Tuple[PublishResult, Optional[PublishError]]]:
    """Publish several requests concurrently; outcomes are returned in request order."""
    if not requests:
        return []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(requests)))) as pool:
        return list(pool.map(lambda r: publish_outcome(publisher, r), requests))
