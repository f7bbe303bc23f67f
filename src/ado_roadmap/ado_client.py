"""Azure DevOps REST client with retry logic."""

import logging
from urllib.parse import quote

import requests
from requests.auth import HTTPBasicAuth
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ado_roadmap.config import Config

logger = logging.getLogger(__name__)


class TransientApiError(Exception):
    """Raised for HTTP 429 and 5xx responses, which are retried."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(Exception):
    """Raised when Azure DevOps rejects the personal access token."""

    pass


class ConnectionError(Exception):
    """Raised when the Azure DevOps server cannot be reached."""

    pass


class NotFoundError(Exception):
    """Raised when the requested resource does not exist."""

    pass


class ApiError(Exception):
    """Raised for any other non-success response."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class AdoClient:
    """Thin client over the Azure DevOps work item tracking REST API."""

    API_VERSION = "7.1"
    COMMENTS_API_VERSION = "7.1-preview.4"
    WORK_ITEM_BATCH_SIZE = 200  # upstream cap on ids per request
    REVISION_PAGE_SIZE = 200

    def __init__(self, config: Config, project: str | None = None) -> None:
        self.config = config
        self.project = project or config.project
        self.org_url = config.ado_org_url.rstrip("/")
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        """Get or create the HTTP session."""
        if self._session is None:
            session = requests.Session()
            # ADO uses Basic auth with an empty user name and the PAT as password
            session.auth = HTTPBasicAuth("", self.config.ado_pat)
            session.headers.update({"Accept": "application/json"})
            self._session = session
        return self._session

    def _project_url(self, resource: str) -> str:
        return f"{self.org_url}/{quote(self.project)}/_apis/{resource}"

    def _org_url(self, resource: str) -> str:
        return f"{self.org_url}/_apis/{resource}"

    @retry(
        retry=retry_if_exception_type(TransientApiError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=30),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        url: str,
        params: dict | None = None,
        json: object = None,
        headers: dict | None = None,
    ) -> dict:
        """Send one request and translate the response status.

        Raises:
            TransientApiError: For 429/5xx (retried up to 3 attempts)
            AuthenticationError: For 401/403
            NotFoundError: For 404
            ApiError: For other 4xx responses
            ConnectionError: If the server cannot be reached
        """
        query = {"api-version": self.API_VERSION}
        if params:
            query.update(params)

        try:
            response = self._get_session().request(
                method,
                url,
                params=query,
                json=json,
                headers=headers,
                timeout=self.config.request_timeout,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise ConnectionError(
                f"Cannot connect to Azure DevOps at {self.org_url}. "
                "Check the URL and your network connection."
            ) from e

        status = response.status_code
        if status == 429 or 500 <= status < 600:
            raise TransientApiError(status, f"Azure DevOps returned HTTP {status} for {url}")
        if status in (401, 403):
            raise AuthenticationError(
                "Authentication failed. Check your personal access token."
            )
        if status == 404:
            raise NotFoundError(f"Resource not found: {url}")
        if status >= 400:
            raise ApiError(status, f"HTTP {status}: {response.text}")

        if not response.content:
            return {}
        return response.json()

    def query_wiql(self, wiql: str) -> dict:
        """Run a WIQL query in the current project and return the raw result."""
        logger.debug("WIQL: %s", wiql)
        return self._request("POST", self._project_url("wit/wiql"), json={"query": wiql})

    def query_ids(self, wiql: str) -> list[int]:
        """Run a flat WIQL query and return the matching work item ids."""
        result = self.query_wiql(wiql)
        return [wi["id"] for wi in result.get("workItems", [])]

    def query_links(self, wiql: str) -> list[dict]:
        """Run a WorkItemLinks WIQL query and return its relations."""
        result = self.query_wiql(wiql)
        return result.get("workItemRelations", [])

    def get_work_items(
        self, ids: list[int], fields: list[str] | None = None, expand: str | None = None
    ) -> list[dict]:
        """Fetch work items by id, batching to the upstream limit.

        `fields` and `expand` cannot be combined in one request.
        """
        results: list[dict] = []
        for i in range(0, len(ids), self.WORK_ITEM_BATCH_SIZE):
            batch = ids[i : i + self.WORK_ITEM_BATCH_SIZE]
            params = {
                "ids": ",".join(str(x) for x in batch),
                "errorPolicy": "omit",
            }
            if expand:
                params["$expand"] = expand
            elif fields:
                params["fields"] = ",".join(fields)
            data = self._request("GET", self._org_url("wit/workitems"), params=params)
            # errorPolicy=omit returns null entries for ids that no longer exist
            results.extend(item for item in data.get("value", []) if item)
        return results

    def get_work_item(self, work_item_id: int, expand: str | None = "relations") -> dict:
        params = {"$expand": expand} if expand else None
        return self._request(
            "GET", self._project_url(f"wit/workitems/{work_item_id}"), params=params
        )

    def get_revisions(self, work_item_id: int) -> list[dict]:
        """Return the full chronological revision list of one work item."""
        revisions: list[dict] = []
        skip = 0
        while True:
            data = self._request(
                "GET",
                self._project_url(f"wit/workItems/{work_item_id}/revisions"),
                params={"$top": self.REVISION_PAGE_SIZE, "$skip": skip},
            )
            page = data.get("value", [])
            revisions.extend(page)
            if len(page) < self.REVISION_PAGE_SIZE:
                break
            skip += len(page)
        return revisions

    def update_work_item(self, work_item_id: int, operations: list[dict]) -> dict:
        """Apply a JSON Patch document to a work item."""
        return self._request(
            "PATCH",
            self._project_url(f"wit/workitems/{work_item_id}"),
            json=operations,
            headers={"Content-Type": "application/json-patch+json"},
        )

    def create_work_item(self, work_item_type: str, operations: list[dict]) -> dict:
        return self._request(
            "POST",
            self._project_url(f"wit/workitems/${quote(work_item_type)}"),
            json=operations,
            headers={"Content-Type": "application/json-patch+json"},
        )

    def delete_work_item(self, work_item_id: int) -> None:
        self._request("DELETE", self._project_url(f"wit/workitems/{work_item_id}"))

    def get_project(self) -> dict:
        return self._request("GET", self._org_url(f"projects/{quote(self.project)}"))

    def get_team_members(self, team: str) -> list[dict]:
        data = self._request(
            "GET",
            self._org_url(f"projects/{quote(self.project)}/teams/{quote(team)}/members"),
        )
        return data.get("value", [])

    def get_comments(self, work_item_id: int) -> list[dict]:
        data = self._request(
            "GET",
            self._project_url(f"wit/workItems/{work_item_id}/comments"),
            params={"api-version": self.COMMENTS_API_VERSION},
        )
        return data.get("comments", [])
