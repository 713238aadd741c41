import time
import logging
import threading
from typing import Any, Callable, Dict, Optional, List, TypeVar
import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .config import SETTINGS, Settings
from .errors import PullRequestAlreadyExists, RemoteAPIFailure
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
    github_rate_limit_reset,
)
from .models import CombinedStatus, DesiredPR, PullRequestHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Installation tokens are refreshed this many seconds before they expire.
TOKEN_SAFETY_MARGIN_SECONDS = 120


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


def _is_already_exists(status_code: int, message: str, errors: List[Any]) -> bool:
    if status_code != 422:
        return False
    structured = [e for e in errors if isinstance(e, dict)]
    if structured:
        return any(
            e.get("resource") == "PullRequest"
            and "pull request already exists" in (e.get("message") or "").lower()
            for e in structured
        )
    # No structured errors to go on; fall back to the top-level message
    return "pull request already exists" in message.lower()


class GitHubClient:
    """Minimal GitHub REST client for the pull request operations we need.

    Authenticates with a static token, or with a GitHub App installation
    token when App credentials are configured. Installation tokens are
    shared across clients through a class-level cache.
    """

    _tok_cache: Dict[int, Dict[str, Any]] = {}
    _tok_lock = threading.Lock()

    def __init__(self, settings: Optional[Settings] = None, installation_id: Optional[int] = None):
        self.settings = settings or SETTINGS
        self.base_url = self.settings.github_api_url
        self.installation_id = installation_id or self.settings.app_installation_id or None
        self.timeout = self.settings.github_timeout_seconds
        self._static_token = self.settings.github_token

    # --- Auth ---
    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.settings.app_id,
        }
        return jwt.encode(payload, self.settings.app_private_key.encode("utf-8"), algorithm="RS256")

    def _installation_token(self) -> str:
        inst = int(self.installation_id or 0)
        with self._tok_lock:
            cached = self._tok_cache.get(inst)
            if cached and time.time() < cached["expiry"] - TOKEN_SAFETY_MARGIN_SECONDS:
                return cached["token"]
            url = f"{self.base_url}/app/installations/{inst}/access_tokens"
            headers = {
                "Authorization": f"Bearer {self._app_jwt()}",
                "Accept": "application/vnd.github+json",
            }
            endpoint = "POST /app/installations/{id}/access_tokens"
            start = time.perf_counter()
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "github.request: method=POST path=%s installation=%s phase=token_exchange",
                    _safe_url(url),
                    inst,
                )
            resp = httpx.post(url, headers=headers, timeout=self.timeout)
            duration = time.perf_counter() - start
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=str(resp.status_code)).inc()
            if resp.status_code >= 400:
                raise RemoteAPIFailure(
                    "installation token exchange failed",
                    status_code=resp.status_code,
                    request_url=_safe_url(url),
                )
            try:
                data = resp.json()
                token = data["token"]
                expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
                if expires_at:
                    expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
                else:
                    expiry = time.time() + 3600
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                raise RemoteAPIFailure(
                    f"invalid token exchange response: {e}",
                    status_code=resp.status_code,
                    request_url=_safe_url(url),
                ) from e
            self._tok_cache[inst] = {"token": token, "expiry": expiry}
            return token

    @property
    def uses_app_auth(self) -> bool:
        return bool(self.installation_id and self.settings.app_id and self.settings.app_private_key)

    def _headers(self) -> Dict[str, str]:
        if self.uses_app_auth:
            token = self._installation_token()
        else:
            token = self._static_token
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"pushpr/{self.settings.service_version}",
        }
        if token:
            headers["Authorization"] = f"token {token}"
        return headers

    # --- Transport ---
    def request(
        self,
        method: str,
        path: str,
        endpoint: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Any] = None,
    ) -> httpx.Response:
        """Issue one request. Non-2xx responses raise ``RemoteAPIFailure``.

        ``endpoint`` is the path template used as the metrics label; it
        defaults to the concrete path.
        """
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method.upper()} {endpoint or path}"
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "github.request: method=%s path=%s params=%s",
                method.upper(),
                _safe_url(url),
                _param_keys(params),
            )
        start = time.perf_counter()
        try:
            resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=self.timeout)
        except (httpx.TimeoutException, httpx.TransportError) as e:
            duration = time.perf_counter() - start
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status="exc").inc()
            logger.debug(
                "github.response_error: method=%s path=%s error=%s duration_ms=%d",
                method.upper(),
                _safe_url(url),
                e,
                int(duration * 1000),
            )
            raise RemoteAPIFailure(f"{method.upper()} {_safe_url(url)}: {e}", request_url=_safe_url(url)) from e
        duration = time.perf_counter() - start
        github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        github_api_requests_total.labels(endpoint=endpoint, status=str(resp.status_code)).inc()
        self._handle_rate_limit(resp)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "github.response: method=%s path=%s status=%s duration_ms=%d rl_remaining=%s rl_reset=%s",
                method.upper(),
                _safe_url(url),
                resp.status_code,
                int(duration * 1000),
                resp.headers.get("X-RateLimit-Remaining"),
                resp.headers.get("X-RateLimit-Reset"),
            )
        if resp.status_code >= 400:
            self._raise_for_error(resp, url)
        return resp

    def _raise_for_error(self, resp: httpx.Response, url: str) -> None:
        try:
            payload = resp.json()
        except ValueError:
            payload = {"message": resp.text}
        if not isinstance(payload, dict):
            payload = {"message": str(payload)}
        message = payload.get("message") or resp.text or "GitHub API error"
        errors = payload.get("errors") or []
        if _is_already_exists(resp.status_code, message, errors):
            raise PullRequestAlreadyExists(message, status_code=resp.status_code, errors=errors, request_url=_safe_url(url))
        raise RemoteAPIFailure(message, status_code=resp.status_code, errors=errors, request_url=_safe_url(url))

    def _decode(self, resp: httpx.Response, build: Callable[[Any], T]) -> T:
        """Decode a 2xx JSON body with ``build``; malformed payloads raise ``RemoteAPIFailure``."""
        try:
            return build(resp.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            # pydantic ValidationError and JSON decode errors are ValueErrors
            url = getattr(resp, "url", None)
            raise RemoteAPIFailure(
                f"invalid response body: {e}",
                status_code=resp.status_code,
                request_url=_safe_url(str(url)) if url is not None else None,
            ) from e

    def _handle_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        try:
            if remaining is not None:
                github_rate_limit_remaining.set(int(remaining))
                if int(remaining) <= self.settings.rate_limit_min_remaining:
                    logger.warning(
                        "GitHub rate limit budget low: remaining=%s reset=%s", remaining, reset
                    )
            if reset is not None:
                github_rate_limit_reset.set(int(reset))
        except ValueError:
            # Malformed headers must never fail the request
            logger.debug("Ignoring malformed rate limit headers: remaining=%s reset=%s", remaining, reset)

    # --- Pull request operations ---
    def create_pull_request(self, owner: str, repo: str, desired: DesiredPR) -> PullRequestHandle:
        data = {"title": desired.title, "body": desired.body, "head": desired.head, "base": desired.base}
        r = self.request("POST", f"/repos/{owner}/{repo}/pulls", endpoint="/repos/{owner}/{repo}/pulls", data=data)
        return self._decode(r, PullRequestHandle.from_api)

    def list_pull_requests(self, owner: str, repo: str, head: str, base: str) -> List[PullRequestHandle]:
        """List open PRs whose head and base match exactly."""
        params = {"state": "open", "head": head, "base": base, "per_page": 100}
        r = self.request("GET", f"/repos/{owner}/{repo}/pulls", endpoint="/repos/{owner}/{repo}/pulls", params=params)
        return self._decode(r, lambda prs: [PullRequestHandle.from_api(p) for p in prs])

    def edit_pull_request(
        self, owner: str, repo: str, number: int, title: Optional[str], body: Optional[str]
    ) -> PullRequestHandle:
        data = {k: v for k, v in (("title", title), ("body", body)) if v is not None}
        r = self.request(
            "PATCH",
            f"/repos/{owner}/{repo}/pulls/{number}",
            endpoint="/repos/{owner}/{repo}/pulls/{number}",
            data=data,
        )
        return self._decode(r, PullRequestHandle.from_api)

    def add_assignees(self, owner: str, repo: str, number: int, assignees: List[str]) -> None:
        self.request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{number}/assignees",
            endpoint="/repos/{owner}/{repo}/issues/{number}/assignees",
            data={"assignees": assignees},
        )

    def get_combined_status(self, owner: str, repo: str, sha: str) -> CombinedStatus:
        r = self.request(
            "GET",
            f"/repos/{owner}/{repo}/commits/{sha}/status",
            endpoint="/repos/{owner}/{repo}/commits/{sha}/status",
        )
        return self._decode(r, CombinedStatus.from_api)
