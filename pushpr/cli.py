import json
import logging
from typing import List, Optional, Tuple

import click
from pydantic import TypeAdapter, ValidationError

from .config import SETTINGS, Settings
from .errors import PublishError
from .git import SubprocessGit
from .github import GitHubClient
from .lock import BranchLock
from .metrics import dump_metrics
from .models import PublishRequest, PublishResult
from .publish import Publisher, publish_all, publish_outcome
from .ratelimit import IntervalLimiter

logger = logging.getLogger(__name__)


def build_publisher(settings: Settings) -> Publisher:
    lock = BranchLock(settings=settings) if settings.redis_url else None
    return Publisher(
        git=SubprocessGit(timeout=settings.git_timeout_seconds),
        client=GitHubClient(settings),
        api_limiter=IntervalLimiter(settings.api_interval_seconds, name="github"),
        push_limiter=IntervalLimiter(settings.push_interval_seconds, name="push"),
        lock=lock,
    )


def _emit(outcomes: List[Tuple[PublishResult, Optional[PublishError]]], as_json: bool) -> None:
    for result, err in outcomes:
        if as_json:
            payload = result.model_dump()
            if err is not None:
                payload["error"] = str(err)
            click.echo(json.dumps(payload))
        else:
            click.echo(result.render())
        if err is not None:
            click.echo(f"error: {err}", err=True)


def _finish(outcomes: List[Tuple[PublishResult, Optional[PublishError]]], as_json: bool, metrics_file: Optional[str]) -> None:
    _emit(outcomes, as_json)
    if metrics_file:
        dump_metrics(metrics_file)
    if any(err is not None for _, err in outcomes):
        raise SystemExit(1)


@click.group()
def main() -> None:
    """Publish local commits as GitHub pull requests."""
    logging.basicConfig(
        level=SETTINGS.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--owner", "repo_owner", required=True, help="Owner of the GitHub repo.")
@click.option("--repo", "repo_name", required=True, help="Repo name, without the owner.")
@click.option("--branch", "branch_name", required=True, help="Remote branch to push to.")
@click.option("--plan-dir", required=True, type=click.Path(exists=True, file_okay=False), help="Git working copy with the commit.")
@click.option("--message", "commit_message", default=None, help="Commit message; first line becomes the PR title.")
@click.option("--message-file", type=click.File("r"), default=None, help="Read the commit message from a file.")
@click.option("--body-file", type=click.File("r"), default=None, help="PR body; overrides the commit message body.")
@click.option("--assignee", "pr_assignee", default="", help="GitHub login to assign the PR to; omit to leave assignees alone.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.option("--metrics-file", default=None, help="Write Prometheus metrics to this file when done.")
def publish(repo_owner, repo_name, branch_name, plan_dir, commit_message, message_file, body_file, pr_assignee, as_json, metrics_file):
    """Push HEAD of PLAN_DIR and open or update its pull request."""
    if message_file is not None:
        commit_message = message_file.read()
    if commit_message is None:
        raise click.UsageError("one of --message or --message-file is required")
    try:
        req = PublishRequest(
            repo_owner=repo_owner,
            repo_name=repo_name,
            branch_name=branch_name,
            plan_dir=plan_dir,
            commit_message=commit_message,
            pr_body=body_file.read() if body_file is not None else "",
            pr_assignee=pr_assignee,
        )
    except ValidationError as e:
        raise click.BadParameter(str(e))
    publisher = build_publisher(Settings())
    _finish([publish_outcome(publisher, req)], as_json, metrics_file)


@main.command("publish-batch")
@click.argument("requests_file", type=click.File("r"))
@click.option("--workers", default=4, show_default=True, help="Publishes to run concurrently.")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON lines.")
@click.option("--metrics-file", default=None, help="Write Prometheus metrics to this file when done.")
def publish_batch(requests_file, workers, as_json, metrics_file):
    """Publish every request in REQUESTS_FILE (a JSON list), sharing rate limits."""
    try:
        requests = TypeAdapter(List[PublishRequest]).validate_json(requests_file.read())
    except ValidationError as e:
        raise click.BadParameter(str(e), param_hint="REQUESTS_FILE")
    logger.info("Publishing %d requests with %d workers", len(requests), workers)
    publisher = build_publisher(Settings())
    _finish(publish_all(publisher, requests, max_workers=workers), as_json, metrics_file)


if __name__ == "__main__":
    main()
