"""GitHub adapters: REST client, clone-backed comment source and event loaders."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Mapping, Optional, Tuple

from .config import IdentityConfig, WingmanConfig
from .events import CommentEvent, EventError
from .handler import SourceError
from .tools.vcs import GitError, GitRepository

LOG = logging.getLogger(__name__)

Transport = Callable[[str, str, Optional[Dict[str, Any]]], Any]


class GitHubError(SourceError):
    """Raised when a GitHub REST call fails."""


class GitHubClient:
    """Thin adapter around the handful of GitHub REST endpoints the bot needs."""

    def __init__(
        self,
        token: str | None,
        *,
        api_url: str = "https://api.github.com",
        transport: Optional[Transport] = None,
        timeout: float = 30.0,
    ) -> None:
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport or self._http_transport

        if transport is None and not token:
            raise ValueError("A token is required when using the default transport.")

    def _http_transport(self, method: str, url: str, payload: Optional[Dict[str, Any]]) -> Any:
        """Default HTTP transport built on ``urllib``."""
        import urllib.error
        import urllib.request

        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
                "User-Agent": "wingman-applier/0.1",
                "X-GitHub-Api-Version": "2022-11-28",
            },
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as error:
            detail = error.read().decode("utf-8", errors="replace")
            raise GitHubError(f"{method} {url} failed with {error.code}: {detail}") from error
        except urllib.error.URLError as error:
            raise GitHubError(f"{method} {url} failed: {error.reason}") from error
        return json.loads(body) if body.strip() else None

    def request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self._api_url}{path}"
        LOG.debug("GitHub %s %s", method, url)
        try:
            return self._transport(method, url, payload)
        except GitHubError:
            raise
        except Exception as error:  # pragma: no cover - transport specific failures
            raise GitHubError(f"Transport rejected {method} {url}: {error}") from error

    def get_pull_request(self, owner: str, repo: str, number: int) -> Mapping[str, Any]:
        return self.request("GET", f"/repos/{owner}/{repo}/pulls/{number}")

    def create_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        self.request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", {"body": body})

    def find_failed_run(self, owner: str, repo: str, number: int) -> int | None:
        """Return the id of a recent failed workflow run attached to PR ``number``."""

        payload = self.request(
            "GET",
            f"/repos/{owner}/{repo}/actions/runs?event=pull_request&status=failure&per_page=10",
        ) or {}
        for run in payload.get("workflow_runs") or []:
            pulls = run.get("pull_requests") or []
            if any(pull.get("number") == number for pull in pulls):
                return run.get("id")
        return None

    def rerun_failed_jobs(self, owner: str, repo: str, run_id: int) -> None:
        self.request("POST", f"/repos/{owner}/{repo}/actions/runs/{run_id}/rerun-failed-jobs")


def _authenticated_url(clone_url: str, token: str | None) -> str:
    if not token or not clone_url.startswith("https://"):
        return clone_url
    return clone_url.replace("https://", f"https://x-access-token:{token}@", 1)


def _redact(text: str, token: str | None) -> str:
    return text.replace(token, "***") if token else text


class GitHubCommentSource:
    """Comment source that clones the pull request head into a temporary tree."""

    def __init__(
        self,
        client: GitHubClient,
        *,
        token: str | None,
        identity: IdentityConfig | None = None,
    ) -> None:
        self.client = client
        self._token = token
        self._identity = identity or IdentityConfig()

    def _resolve_head(self, event: CommentEvent) -> Tuple[str, str]:
        if event.head_ref and event.clone_url:
            return event.head_ref, event.clone_url
        pull = self.client.get_pull_request(event.owner, event.repo, event.number)
        head = pull.get("head") or {}
        head_repo = head.get("repo") or {}
        ref = event.head_ref or head.get("ref")
        clone_url = head_repo.get("clone_url") or event.clone_url
        if not ref or not clone_url:
            raise GitError(f"Unable to resolve the head branch of {event.full_name}#{event.number}")
        return ref, clone_url

    @contextmanager
    def workspace(self, event: CommentEvent) -> Iterator[Path]:
        ref, clone_url = self._resolve_head(event)
        with tempfile.TemporaryDirectory(prefix="wingman-") as base_dir:
            destination = Path(base_dir) / "repo"
            LOG.info("Cloning %s and checking out %s", event.full_name, ref)
            try:
                repo = GitRepository.clone(_authenticated_url(clone_url, self._token), destination, branch=ref)
            except GitError as error:
                raise GitError(_redact(str(error), self._token)) from None
            repo.configure_identity(self._identity.name, self._identity.email)
            yield repo.root

    def post_comment(self, event: CommentEvent, body: str) -> None:
        LOG.debug("Posting comment to %s#%d (%d chars)", event.full_name, event.number, len(body))
        self.client.create_comment(event.owner, event.repo, event.number, body)

    def rerun_checks(self, event: CommentEvent) -> bool:
        try:
            run_id = self.client.find_failed_run(event.owner, event.repo, event.number)
            if run_id is None:
                LOG.info("No failed workflow run found for #%d", event.number)
                return False
            self.client.rerun_failed_jobs(event.owner, event.repo, run_id)
        except GitHubError as error:
            LOG.error("Failed to re-run workflow for #%d: %s", event.number, error)
            return False
        LOG.info("Re-ran failed jobs of workflow run %s", run_id)
        return True


def from_webhook_payload(
    payload: Mapping[str, Any],
    *,
    token: str,
    config: WingmanConfig | None = None,
    transport: Optional[Transport] = None,
) -> Tuple[CommentEvent, GitHubCommentSource]:
    """Adapter for GitHub App deliveries authenticated with an installation token."""

    config = config or WingmanConfig()
    event = CommentEvent.from_webhook(payload)
    client = GitHubClient(token, api_url=config.github.api_url, transport=transport, timeout=config.github.timeout)
    return event, GitHubCommentSource(client, token=token, identity=config.identity)


def from_actions_environment(
    environ: Mapping[str, str] | None = None,
    *,
    config: WingmanConfig | None = None,
    transport: Optional[Transport] = None,
) -> Tuple[CommentEvent, GitHubCommentSource]:
    """Adapter for a GitHub Actions job triggered by ``issue_comment``."""

    env = os.environ if environ is None else environ
    config = config or WingmanConfig()
    event_path = env.get("GITHUB_EVENT_PATH")
    if not event_path:
        raise EventError("GITHUB_EVENT_PATH is not set")
    try:
        payload = json.loads(Path(event_path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise EventError(f"Unable to read event payload {event_path}: {error}") from error

    token = env.get("GITHUB_TOKEN") or None
    api_url = env.get("GITHUB_API_URL") or config.github.api_url
    event = CommentEvent.from_webhook(payload)
    client = GitHubClient(token, api_url=api_url, transport=transport, timeout=config.github.timeout)
    return event, GitHubCommentSource(client, token=token, identity=config.identity)


__all__ = [
    "GitHubClient",
    "GitHubCommentSource",
    "GitHubError",
    "from_actions_environment",
    "from_webhook_payload",
]
