from __future__ import annotations

import logging
from typing import Generator, cast

import httpx

from cascademerge.models import BitbucketIdentity, MergeStrategy, PullRequest, Repository
from cascademerge.observability import log_event, log_warning_event
from cascademerge.platform import AlreadyApprovedError, CascadePlatform, PlatformError
from cascademerge.versioning import release_line


LOGGER = logging.getLogger("cascademerge.bitbucket_gateway")
DEFAULT_API_URL = "https://api.bitbucket.org/2.0"
_BRANCH_PAGE_LEN = 100
_PULL_REQUEST_PAGE_LEN = 50
_MAX_PAGES = 50
_CONFLICT_STATUS = 409


class BitbucketApiError(PlatformError):
    pass


class BitbucketNotFoundError(BitbucketApiError):
    pass


class _BearerAuth(httpx.Auth):
    def __init__(self, token: str) -> None:
        self._token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request


def auth_for_identity(identity: BitbucketIdentity) -> httpx.Auth:
    if identity.token:
        return _BearerAuth(identity.token)
    if identity.username and identity.password:
        return httpx.BasicAuth(identity.username, identity.password)
    raise ValueError(f"Identity {identity.name!r} has neither a token nor username/password")


class BitbucketGateway(CascadePlatform):
    """Bitbucket Cloud REST client used by the cascade core.

    Reads and pull request creation run as the primary identity; approval and
    merge take the identity to act as explicitly.
    """

    def __init__(
        self,
        primary: BitbucketIdentity,
        *,
        api_url: str = DEFAULT_API_URL,
        timeout_seconds: float = 30.0,
        merge_strategy: MergeStrategy = "merge_commit",
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.primary = primary
        self.merge_strategy = merge_strategy
        self._client = httpx.Client(
            base_url=api_url.rstrip("/") + "/",
            timeout=timeout_seconds,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def list_branches(self, repo: Repository, name_filter: str) -> list[str]:
        params = {
            "q": f'name ~ "{_escape_query_value(name_filter)}"',
            "pagelen": str(_BRANCH_PAGE_LEN),
        }
        names: list[str] = []
        skipped = 0
        for item in self._paginate(f"{_repo_path(repo)}/refs/branches", params=params):
            name = item.get("name")
            if not isinstance(name, str) or not name:
                continue
            # `~` is a substring match; nested lines and unrelated branches come back too.
            if release_line(name) != name_filter:
                skipped += 1
                continue
            names.append(name)
        log_event(
            LOGGER,
            "bitbucket_read",
            endpoint="branches",
            repo_full_name=repo.full_name,
            name_filter=name_filter,
            count=len(names),
            skipped=skipped,
        )
        return names

    def get_development_branch_name(self, repo: Repository) -> str | None:
        try:
            payload = self._api_json("GET", f"{_repo_path(repo)}/branching-model")
        except BitbucketNotFoundError:
            log_event(
                LOGGER,
                "bitbucket_read",
                endpoint="branching_model",
                repo_full_name=repo.full_name,
                found=False,
            )
            return None
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected Bitbucket response: expected object for branching model")
        development = _as_object_dict(payload_obj.get("development"))
        name: str | None = None
        if development is not None:
            branch = _as_object_dict(development.get("branch"))
            name = _as_optional_str(branch.get("name")) if branch else None
            if not name:
                name = _as_optional_str(development.get("name"))
        log_event(
            LOGGER,
            "bitbucket_read",
            endpoint="branching_model",
            repo_full_name=repo.full_name,
            found=bool(name),
            development_branch=name,
        )
        return name or None

    def find_open_pull_request(
        self, repo: Repository, *, source: str, destination: str
    ) -> PullRequest | None:
        query = (
            f'source.branch.name = "{_escape_query_value(source)}" '
            f'AND destination.branch.name = "{_escape_query_value(destination)}" '
            'AND state = "OPEN"'
        )
        matches = self._list_open_pull_requests(repo, query)
        # The query is a server-side filter; check the pair locally as well.
        matches = [
            pr
            for pr in matches
            if pr.source_branch == source and pr.destination_branch == destination
        ]
        log_event(
            LOGGER,
            "bitbucket_read",
            endpoint="pull_request_lookup",
            repo_full_name=repo.full_name,
            source=source,
            destination=destination,
            found=bool(matches),
        )
        if not matches:
            return None
        return min(matches, key=lambda pr: pr.pr_id)

    def find_open_pull_requests_by_title_marker(
        self, repo: Repository, marker: str
    ) -> list[PullRequest]:
        query = f'title ~ "{_escape_query_value(marker)}" AND state = "OPEN"'
        matches = [
            pr for pr in self._list_open_pull_requests(repo, query) if marker in pr.title
        ]
        log_event(
            LOGGER,
            "bitbucket_read",
            endpoint="pull_requests_by_marker",
            repo_full_name=repo.full_name,
            marker=marker,
            count=len(matches),
        )
        return matches

    def create_pull_request(
        self,
        repo: Repository,
        *,
        source: str,
        destination: str,
        title: str,
        description: str,
        reviewers: tuple[str, ...],
    ) -> PullRequest:
        body: dict[str, object] = {
            "title": title,
            "description": description,
            "source": {"branch": {"name": source}},
            "destination": {"branch": {"name": destination}},
            "reviewers": [{"uuid": reviewer} for reviewer in reviewers],
            "close_source_branch": False,
        }
        try:
            payload = self._api_json("POST", f"{_repo_path(repo)}/pullrequests", payload=body)
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError("Unexpected Bitbucket response: expected object for PR")
            pull_request = _parse_pull_request(payload_obj)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "bitbucket_pr_create_failed",
                repo_full_name=repo.full_name,
                source=source,
                destination=destination,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "bitbucket_pr_created",
            repo_full_name=repo.full_name,
            pr_id=pull_request.pr_id,
            pr_url=pull_request.html_url,
            source=source,
            destination=destination,
        )
        return pull_request

    def approve_pull_request(
        self, identity: BitbucketIdentity, repo: Repository, pull_request: PullRequest
    ) -> None:
        try:
            self._api_json(
                "POST",
                f"{_repo_path(repo)}/pullrequests/{pull_request.pr_id}/approve",
                identity=identity,
            )
        except BitbucketApiError as exc:
            if exc.status_code != _CONFLICT_STATUS:
                raise
            raise AlreadyApprovedError(str(exc), status_code=exc.status_code) from exc
        log_event(
            LOGGER,
            "bitbucket_pr_approved",
            repo_full_name=repo.full_name,
            pr_id=pull_request.pr_id,
            identity=identity.name,
        )

    def merge_pull_request(
        self, identity: BitbucketIdentity, repo: Repository, pull_request: PullRequest
    ) -> None:
        self._api_json(
            "POST",
            f"{_repo_path(repo)}/pullrequests/{pull_request.pr_id}/merge",
            identity=identity,
            payload={
                "type": "pullrequest",
                "merge_strategy": self.merge_strategy,
                "close_source_branch": False,
            },
        )
        log_event(
            LOGGER,
            "bitbucket_pr_merged",
            repo_full_name=repo.full_name,
            pr_id=pull_request.pr_id,
            identity=identity.name,
            merge_strategy=self.merge_strategy,
        )

    def _list_open_pull_requests(self, repo: Repository, query: str) -> list[PullRequest]:
        params = {"q": query, "state": "OPEN", "pagelen": str(_PULL_REQUEST_PAGE_LEN)}
        return [
            _parse_pull_request(item)
            for item in self._paginate(f"{_repo_path(repo)}/pullrequests", params=params)
        ]

    def _paginate(
        self, path: str, *, params: dict[str, str]
    ) -> Generator[dict[str, object], None, None]:
        url = path
        page_params: dict[str, str] | None = params
        for _ in range(_MAX_PAGES):
            payload = self._api_json("GET", url, params=page_params)
            payload_obj = _as_object_dict(payload)
            if payload_obj is None:
                raise RuntimeError(f"Unexpected Bitbucket response: expected page object for {path}")
            values = payload_obj.get("values")
            if not isinstance(values, list):
                raise RuntimeError(f"Unexpected Bitbucket response: expected values list for {path}")
            for item in values:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    yield item_obj
            next_url = payload_obj.get("next")
            if not isinstance(next_url, str) or not next_url:
                return
            url = next_url
            # The next link already carries the query string.
            page_params = None
        log_warning_event(LOGGER, "bitbucket_pagination_truncated", path=path, max_pages=_MAX_PAGES)

    def _api_json(
        self,
        method: str,
        path: str,
        *,
        identity: BitbucketIdentity | None = None,
        params: dict[str, str] | None = None,
        payload: dict[str, object] | None = None,
    ) -> object:
        acting = identity or self.primary
        try:
            response = self._client.request(
                method.upper(),
                path,
                params=params,
                json=payload,
                auth=auth_for_identity(acting),
            )
        except httpx.HTTPError as exc:
            log_warning_event(
                LOGGER,
                "bitbucket_request_failed",
                method=method.upper(),
                path=path,
                identity=acting.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise BitbucketApiError(f"Bitbucket {method.upper()} {path} failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            message = response.text.strip() or "<empty>"
            log_warning_event(
                LOGGER,
                "bitbucket_request_failed",
                method=method.upper(),
                path=path,
                identity=acting.name,
                status_code=response.status_code,
                error=_preview_for_log(message),
            )
            error_type = BitbucketNotFoundError if response.status_code == 404 else BitbucketApiError
            raise error_type(
                f"Bitbucket {method.upper()} {path} failed with status "
                f"{response.status_code}: {_preview_for_log(message)}",
                status_code=response.status_code,
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise RuntimeError(
                f"Unexpected Bitbucket response: invalid JSON for {path}"
            ) from exc


def _repo_path(repo: Repository) -> str:
    return f"repositories/{repo.owner}/{repo.slug}"


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _parse_pull_request(item: dict[str, object]) -> PullRequest:
    source = _as_object_dict(item.get("source")) or {}
    destination = _as_object_dict(item.get("destination")) or {}
    links = _as_object_dict(item.get("links")) or {}
    html = _as_object_dict(links.get("html")) or {}
    return PullRequest(
        pr_id=_as_int(item.get("id"), field="id"),
        title=_as_string(item.get("title")),
        source_branch=_branch_name(source),
        destination_branch=_branch_name(destination),
        html_url=_as_string(html.get("href")),
    )


def _branch_name(endpoint: dict[str, object]) -> str:
    branch = _as_object_dict(endpoint.get("branch"))
    if branch is None:
        return ""
    return _as_string(branch.get("name"))


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected Bitbucket response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected Bitbucket response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected Bitbucket response type for {field}")
