import pytest

from pushpr.errors import PullRequestAlreadyExists, RemoteAPIFailure, UnexpectedState
from pushpr.models import DesiredPR, PullRequestHandle
from pushpr.ratelimit import UnlimitedLimiter
from pushpr.reconcile import PullRequestReconciler, different


class GHBase:
    """In-memory GitHub: a second create for the same head/base is rejected like the real API."""

    def __init__(self):
        self.calls = []
        self.prs = {}
        self.next_number = 1

    def create_pull_request(self, owner, repo, desired):
        self.calls.append(("create", desired.head, desired.base))
        key = (desired.head, desired.base)
        if key in self.prs:
            raise PullRequestAlreadyExists(
                "Validation Failed",
                status_code=422,
                errors=[{"resource": "PullRequest", "code": "custom", "message": f"A pull request already exists for {desired.head}."}],
            )
        pr = PullRequestHandle(
            number=self.next_number,
            head_sha="abc123",
            html_url=f"https://github.com/{owner}/{repo}/pull/{self.next_number}",
            title=desired.title,
            body=desired.body,
        )
        self.next_number += 1
        self.prs[key] = pr
        return pr

    def list_pull_requests(self, owner, repo, head, base):
        self.calls.append(("list", head, base))
        return [pr for (h, b), pr in self.prs.items() if h == head and b == base]

    def edit_pull_request(self, owner, repo, number, title, body):
        self.calls.append(("edit", number))
        for key, pr in self.prs.items():
            if pr.number == number:
                self.prs[key] = pr.model_copy(update={"title": title, "body": body})
                return self.prs[key]
        raise RemoteAPIFailure("Not Found", status_code=404)

    def count(self, name):
        return sum(1 for c in self.calls if c[0] == name)


def make_reconciler(gh):
    api, push = UnlimitedLimiter("github"), UnlimitedLimiter("push")
    return PullRequestReconciler(gh, api, push), api, push


def desired(title="Fix bug", body="Details"):
    return DesiredPR(title=title, body=body, head="octo:feature-x", base="master")


def test_reconcile_twice_reuses_existing_pr():
    gh = GHBase()
    rec, _, _ = make_reconciler(gh)

    first = rec.reconcile("octo", "repo", desired())
    second = rec.reconcile("octo", "repo", desired())

    assert first.number == second.number == 1
    assert len(gh.prs) == 1
    assert gh.count("create") == 2
    assert gh.count("list") == 1
    assert gh.count("edit") == 0


def test_create_consumes_push_and_api_tokens():
    gh = GHBase()
    rec, api, push = make_reconciler(gh)

    pr = rec.reconcile("octo", "repo", desired())

    assert pr.title == "Fix bug"
    assert push.acquired == 1
    assert api.acquired == 1


def test_title_drift_is_edited_once():
    gh = GHBase()
    rec, api, push = make_reconciler(gh)
    rec.reconcile("octo", "repo", desired(title="Old title"))

    pr = rec.reconcile("octo", "repo", desired(title="New title"))

    assert pr.title == "New title"
    assert gh.count("edit") == 1
    # second pass: create + list + edit on the api limiter, one push token
    assert push.acquired == 2
    assert api.acquired == 1 + 3


def test_body_drift_is_edited():
    gh = GHBase()
    rec, _, _ = make_reconciler(gh)
    rec.reconcile("octo", "repo", desired(body="old"))

    pr = rec.reconcile("octo", "repo", desired(body="new"))

    assert pr.body == "new"
    assert gh.count("edit") == 1


def test_missing_remote_body_is_not_drift():
    gh = GHBase()
    gh.prs[("octo:feature-x", "master")] = PullRequestHandle(
        number=7, head_sha="abc", html_url="https://github.com/octo/repo/pull/7", title="Fix bug", body=None
    )
    rec, _, _ = make_reconciler(gh)

    pr = rec.reconcile("octo", "repo", desired(body="anything"))

    assert pr.number == 7
    assert gh.count("edit") == 0


@pytest.mark.parametrize("found", [0, 2])
def test_unexpected_pr_count_after_already_exists(found):
    class GHOdd(GHBase):
        def create_pull_request(self, owner, repo, d):
            self.calls.append(("create", d.head, d.base))
            raise PullRequestAlreadyExists("A pull request already exists for octo:feature-x.", status_code=422)

        def list_pull_requests(self, owner, repo, head, base):
            self.calls.append(("list", head, base))
            return [
                PullRequestHandle(number=n, head_sha="abc", html_url=f"u/{n}", title="stale")
                for n in range(1, found + 1)
            ]

    gh = GHOdd()
    rec, _, _ = make_reconciler(gh)

    with pytest.raises(UnexpectedState):
        rec.reconcile("octo", "repo", desired())
    assert gh.count("edit") == 0


def test_other_create_errors_propagate_without_fallback():
    class GHBroken(GHBase):
        def create_pull_request(self, owner, repo, d):
            self.calls.append(("create", d.head, d.base))
            raise RemoteAPIFailure("Validation Failed", status_code=422, errors=[{"message": "No commits between master and feature-x"}])

    gh = GHBroken()
    rec, _, _ = make_reconciler(gh)

    with pytest.raises(RemoteAPIFailure) as exc:
        rec.reconcile("octo", "repo", desired())
    assert not isinstance(exc.value, PullRequestAlreadyExists)
    assert gh.count("list") == 0


def test_list_errors_propagate():
    class GHListFails(GHBase):
        def list_pull_requests(self, owner, repo, head, base):
            raise RemoteAPIFailure("Server Error", status_code=502)

    gh = GHListFails()
    rec, _, _ = make_reconciler(gh)
    rec.reconcile("octo", "repo", desired())

    with pytest.raises(RemoteAPIFailure):
        rec.reconcile("octo", "repo", desired())


def test_edit_failure_after_drift_propagates():
    class GHEditFails(GHBase):
        def edit_pull_request(self, owner, repo, number, title, body):
            self.calls.append(("edit", number))
            raise RemoteAPIFailure("Validation Failed", status_code=422)

    gh = GHEditFails()
    rec, _, _ = make_reconciler(gh)
    rec.reconcile("octo", "repo", desired(title="Old title"))

    with pytest.raises(RemoteAPIFailure) as exc:
        rec.reconcile("octo", "repo", desired(title="New title"))
    assert exc.value.status_code == 422
    assert gh.count("edit") == 1
    assert gh.prs[("octo:feature-x", "master")].title == "Old title"


@pytest.mark.parametrize(
    "current,wanted,expected",
    [
        ("a", "b", True),
        ("a", "a", False),
        (None, "b", False),
        ("a", None, False),
        (None, None, False),
        ("", "b", True),
    ],
)
def test_different(current, wanted, expected):
    assert different(current, wanted) is expected
