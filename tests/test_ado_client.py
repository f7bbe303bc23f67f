"""Tests for the Azure DevOps REST client."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from ado_roadmap.ado_client import (
    AdoClient,
    ApiError,
    AuthenticationError,
    ConnectionError,
    NotFoundError,
    TransientApiError,
)
from ado_roadmap.config import Config


def _make_config():
    return Config(
        ado_org_url="https://dev.azure.com/contoso/",
        ado_pat="secret",
        project="Road Map",
    )


def _response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = b"{}" if payload is not None else b""
    response.json.return_value = payload
    response.text = "error body"
    return response


def _make_client(*responses):
    client = AdoClient(_make_config())
    session = MagicMock()
    session.request.side_effect = list(responses)
    client._session = session
    return client, session


class TestRequest:
    """Tests for status handling and retries."""

    @patch("time.sleep")
    def test_retries_rate_limit_then_succeeds(self, mock_sleep):
        client, session = _make_client(
            _response(429), _response(503), _response(200, {"workItems": [{"id": 5}]})
        )

        assert client.query_ids("SELECT [System.Id] FROM WorkItems") == [5]
        assert session.request.call_count == 3

    @patch("time.sleep")
    def test_gives_up_after_three_attempts(self, mock_sleep):
        client, session = _make_client(_response(500), _response(502), _response(500), _response(200, {}))

        with pytest.raises(TransientApiError) as exc_info:
            client.get_project()

        assert exc_info.value.status_code == 500
        assert session.request.call_count == 3

    @patch("time.sleep")
    def test_does_not_retry_client_errors(self, mock_sleep):
        client, session = _make_client(_response(400), _response(200, {}))

        with pytest.raises(ApiError) as exc_info:
            client.get_project()

        assert exc_info.value.status_code == 400
        assert session.request.call_count == 1
        mock_sleep.assert_not_called()

    def test_auth_failure(self):
        client, _ = _make_client(_response(401))

        with pytest.raises(AuthenticationError):
            client.get_project()

    def test_not_found(self):
        client, _ = _make_client(_response(404))

        with pytest.raises(NotFoundError):
            client.get_work_item(99)

    def test_connection_error(self):
        client, session = _make_client()
        session.request.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(ConnectionError):
            client.get_project()

    def test_empty_body_returns_empty_dict(self):
        client, _ = _make_client(_response(204))

        assert client._request("DELETE", "https://example.invalid") == {}

    def test_sends_api_version_and_timeout(self):
        client, session = _make_client(_response(200, {"id": "p"}))

        client.get_project()

        method, url = session.request.call_args.args
        kwargs = session.request.call_args.kwargs
        assert method == "GET"
        assert url == "https://dev.azure.com/contoso/_apis/projects/Road%20Map"
        assert kwargs["params"]["api-version"] == "7.1"
        assert kwargs["timeout"] == 120


class TestSession:
    """Tests for session setup."""

    def test_uses_basic_auth_with_pat(self):
        client = AdoClient(_make_config())

        session = client._get_session()

        assert session.auth.username == ""
        assert session.auth.password == "secret"
        assert client._get_session() is session


class TestWorkItems:
    """Tests for work item endpoints."""

    def test_batches_ids_in_groups_of_200(self):
        ids = list(range(1, 451))
        client, session = _make_client(
            _response(200, {"value": [{"id": 1}]}),
            _response(200, {"value": [{"id": 201}, None]}),
            _response(200, {"value": [{"id": 401}]}),
        )

        result = client.get_work_items(ids, fields=["System.Title"])

        assert [item["id"] for item in result] == [1, 201, 401]
        batches = [c.kwargs["params"]["ids"].split(",") for c in session.request.call_args_list]
        assert [len(b) for b in batches] == [200, 200, 50]
        assert session.request.call_args_list[0].kwargs["params"]["fields"] == "System.Title"

    def test_revisions_are_paged(self):
        first_page = {"value": [{"rev": i} for i in range(200)]}
        second_page = {"value": [{"rev": 200}]}
        client, session = _make_client(_response(200, first_page), _response(200, second_page))

        revisions = client.get_revisions(7)

        assert len(revisions) == 201
        skips = [c.kwargs["params"]["$skip"] for c in session.request.call_args_list]
        assert skips == [0, 200]

    def test_update_sends_json_patch(self):
        client, session = _make_client(_response(200, {"id": 7}))
        operations = [{"op": "add", "path": "/fields/System.State", "value": "Done"}]

        client.update_work_item(7, operations)

        kwargs = session.request.call_args.kwargs
        assert session.request.call_args.args[0] == "PATCH"
        assert kwargs["json"] == operations
        assert kwargs["headers"]["Content-Type"] == "application/json-patch+json"

    def test_comments_use_preview_api_version(self):
        client, session = _make_client(_response(200, {"comments": [{"text": "hi"}]}))

        assert client.get_comments(7) == [{"text": "hi"}]
        assert session.request.call_args.kwargs["params"]["api-version"] == "7.1-preview.4"

    def test_query_links(self):
        relations = [{"rel": None, "target": {"id": 1}}, {"rel": "x", "source": {"id": 1}, "target": {"id": 2}}]
        client, _ = _make_client(_response(200, {"workItemRelations": relations}))

        assert client.query_links("SELECT ...") == relations
