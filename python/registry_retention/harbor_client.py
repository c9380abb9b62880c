"""
Harbor v2.0 API client.

This module provides the registry side of the cleaner: listing projects,
repositories and artifacts (with their tags) and deleting artifacts by
digest. Listing calls follow Harbor's page/page_size pagination and are
retried with exponential backoff on transient failures.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from registry_retention.logging_utils import get_logger
from registry_retention.retry_utils import retry_with_backoff

logger = get_logger(__name__)

API_BASE = "/api/v2.0"
DEFAULT_PAGE_SIZE = 100
DEFAULT_TIMEOUT = 30

# Harbor may report push times with anywhere from 1 to 9 fractional digits
_FRACTION_RE = re.compile(r"\.(\d+)")


class HarborAPIError(Exception):
    """Raised when a Harbor API call fails or returns a non-2xx status"""

    def __init__(self, message: str, status_code: Optional[int] = None, url: Optional[str] = None, body: str = ""):
        self.status_code = status_code
        self.url = url
        self.body = body
        super().__init__(message)


def parse_push_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a Harbor timestamp such as 2024-05-01T10:00:00.123Z into an aware datetime"""
    if not value:
        return None
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Project:
    project_id: int
    name: str


@dataclass
class Repository:
    """A repository, named with its project prefix (e.g. library/ubuntu)"""
    name: str


@dataclass
class Tag:
    name: str


@dataclass
class Artifact:
    digest: str
    push_time: Optional[datetime] = None
    tags: List[Tag] = field(default_factory=list)

    @property
    def primary_tag(self) -> Optional[str]:
        """First tag name, used to name the artifact in audit reports"""
        return self.tags[0].name if self.tags else None

    @property
    def tag_names(self) -> List[str]:
        return [tag.name for tag in self.tags]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Artifact":
        return cls(
            digest=data.get("digest") or "",
            push_time=parse_push_time(data.get("push_time")),
            tags=[Tag(name=t["name"]) for t in (data.get("tags") or []) if t.get("name")],
        )


def encode_repository_name(project_name: str, repository_name: str) -> str:
    """Path segment for a repository in artifact URLs.

    The project prefix is trimmed and the remainder is double URL-encoded, so
    a nested repository `a/b` becomes `a%252Fb`.
    """
    prefix = f"{project_name}/"
    if repository_name.startswith(prefix):
        repository_name = repository_name[len(prefix):]
    return quote(quote(repository_name, safe=""), safe="")


class HarborClient:
    """Client for the Harbor v2.0 REST API"""

    def __init__(
        self,
        url: str,
        user: str,
        password: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        timeout: float = DEFAULT_TIMEOUT,
        verify_tls: bool = True,
        max_retries: int = 3,
        retry_initial_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        retry_exponential_base: float = 2.0,
        retry_jitter: bool = True,
        session: Optional[requests.Session] = None,
    ):
        """Initialize HarborClient

        Args:
            url: Harbor base URL (e.g. https://harbor.example.com)
            user: Harbor user or robot account name
            password: Password or robot token
            page_size: Page size for paginated list calls (invalid values fall back to 100)
            timeout: Per-request timeout in seconds
            verify_tls: Verify the Harbor TLS certificate
            max_retries: Retries for transient failures of GET requests
            session: Optional pre-built requests.Session
        """
        if not url or not user or not password:
            raise ValueError("Harbor URL, username, and password must be provided")

        self.base_url = url.rstrip("/")
        self.page_size = page_size if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
        self.timeout = timeout

        self.session = session or requests.Session()
        self.session.auth = (user, password)
        self.session.verify = verify_tls
        self.session.headers.update({"Accept": "application/json"})

        self._get_with_retry = retry_with_backoff(
            max_retries=max_retries,
            initial_delay=retry_initial_delay,
            max_delay=retry_max_delay,
            exponential_base=retry_exponential_base,
            jitter=retry_jitter,
        )(self._send)

    @property
    def registry_host(self) -> str:
        """Registry hostname as it appears in image references (no scheme, no trailing slash)"""
        host = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", self.base_url)
        return host.rstrip("/")

    def _url(self, path: str) -> str:
        return f"{self.base_url}{API_BASE}{path}"

    def _send(self, method: str, url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        """Issue one request; non-2xx responses raise HarborAPIError"""
        logger.debug(f"{method} {url} params={params}")
        response = self.session.request(method, url, params=params, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise HarborAPIError(
                f"API request to {url} failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
                url=url,
                body=response.text,
            )
        return response

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        url = self._url(path)
        send = self._get_with_retry if method == "GET" else self._send
        try:
            return send(method, url, params)
        except requests.exceptions.RequestException as e:
            raise HarborAPIError(f"Failed to execute request to {url}: {e}", url=url) from e

    def _fetch_all_pages(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every item of a paginated list endpoint, stopping at the first empty page"""
        results: List[Dict[str, Any]] = []
        page = 1
        while True:
            page_params = dict(params or {})
            page_params["page"] = page
            page_params["page_size"] = self.page_size

            response = self._request("GET", path, page_params)
            try:
                items = response.json()
            except ValueError as e:
                raise HarborAPIError(
                    f"Failed to decode page {page} for path {path}: {e}", status_code=response.status_code, url=response.url
                ) from e
            if not isinstance(items, list):
                raise HarborAPIError(
                    f"Unexpected response on page {page} for path {path}: expected a list",
                    status_code=response.status_code,
                    url=response.url,
                )

            if not items:
                break
            results.extend(items)
            page += 1
        return results

    def list_projects(self) -> List[Project]:
        """List all projects visible to the user"""
        return [
            Project(project_id=item.get("project_id", 0), name=item["name"])
            for item in self._fetch_all_pages("/projects")
        ]

    def list_repositories(self, project_name: str) -> List[Repository]:
        """List all repositories of a project"""
        path = f"/projects/{quote(project_name, safe='')}/repositories"
        return [Repository(name=item["name"]) for item in self._fetch_all_pages(path)]

    def list_artifacts(self, project_name: str, repository_name: str) -> List[Artifact]:
        """List all artifacts of a repository, with their tags

        Args:
            project_name: Project name (e.g. library)
            repository_name: Repository name as returned by list_repositories (e.g. library/ubuntu)
        """
        path = (
            f"/projects/{quote(project_name, safe='')}/repositories/"
            f"{encode_repository_name(project_name, repository_name)}/artifacts"
        )
        params = {"with_tag": "true", "with_scan_overview": "false", "with_label": "false"}
        return [Artifact.from_api(item) for item in self._fetch_all_pages(path, params)]

    def delete_artifact(self, project_name: str, repository_name: str, digest: str) -> None:
        """Delete an artifact by digest. Not retried.

        Raises:
            HarborAPIError: If the request fails or Harbor returns a non-2xx status
        """
        path = (
            f"/projects/{quote(project_name, safe='')}/repositories/"
            f"{encode_repository_name(project_name, repository_name)}/artifacts/{digest}"
        )
        self._request("DELETE", path)
