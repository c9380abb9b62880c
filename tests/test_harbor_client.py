"""Unit tests for registry_retention/harbor_client.py"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from registry_retention.harbor_client import (
    Artifact,
    HarborAPIError,
    HarborClient,
    encode_repository_name,
    parse_push_time,
)

BASE = "https://harbor.example.com/api/v2.0"


def response(status_code=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload
    resp.text = text
    resp.url = "https://harbor.example.com/api/v2.0/..."
    return resp


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture(autouse=True)
def no_backoff_sleep(mocker):
    return mocker.patch("registry_retention.retry_utils.time.sleep")


def make_client(session, **kwargs):
    kwargs.setdefault("retry_jitter", False)
    return HarborClient("https://harbor.example.com/", "robot$cleaner", "secret", session=session, **kwargs)


class TestClientSetup:
    """Tests for HarborClient construction"""

    @pytest.mark.parametrize("url,user,password", [("", "u", "p"), ("https://h", "", "p"), ("https://h", "u", "")])
    def test_requires_url_and_credentials(self, url, user, password):
        with pytest.raises(ValueError):
            HarborClient(url, user, password, session=MagicMock())

    def test_session_uses_basic_auth(self, session):
        make_client(session, verify_tls=False)

        assert session.auth == ("robot$cleaner", "secret")
        assert session.verify is False

    def test_registry_host(self, session):
        assert make_client(session).registry_host == "harbor.example.com"
        assert HarborClient("http://harbor.local:8080/", "u", "p", session=session).registry_host == "harbor.local:8080"

    def test_invalid_page_size_falls_back(self, session):
        assert make_client(session, page_size=0).page_size == 100


class TestListing:
    """Tests for paginated list calls"""

    def test_list_projects_follows_pages_until_empty(self, session):
        session.request.side_effect = [
            response(payload=[{"project_id": 1, "name": "library"}, {"project_id": 2, "name": "dev"}]),
            response(payload=[{"project_id": 3, "name": "ops"}]),
            response(payload=[]),
        ]

        projects = make_client(session, page_size=2).list_projects()

        assert [p.name for p in projects] == ["library", "dev", "ops"]
        pages = [c.kwargs["params"]["page"] for c in session.request.call_args_list]
        assert pages == [1, 2, 3]
        assert all(c.kwargs["params"]["page_size"] == 2 for c in session.request.call_args_list)
        assert session.request.call_args_list[0].args == ("GET", f"{BASE}/projects")

    def test_list_repositories(self, session):
        session.request.side_effect = [response(payload=[{"name": "dev/team/app"}]), response(payload=[])]

        repositories = make_client(session).list_repositories("dev")

        assert [r.name for r in repositories] == ["dev/team/app"]
        assert session.request.call_args_list[0].args == ("GET", f"{BASE}/projects/dev/repositories")

    def test_list_artifacts_encodes_nested_repository(self, session):
        session.request.side_effect = [
            response(
                payload=[
                    {
                        "digest": "sha256:abc",
                        "push_time": "2024-05-01T10:00:00.123456789Z",
                        "tags": [{"name": "v1"}, {"name": "stable"}],
                    },
                    {"digest": "sha256:def", "push_time": "2024-04-01T10:00:00Z", "tags": None},
                ]
            ),
            response(payload=[]),
        ]

        artifacts = make_client(session).list_artifacts("dev", "dev/team/app")

        first_call = session.request.call_args_list[0]
        assert first_call.args == ("GET", f"{BASE}/projects/dev/repositories/team%252Fapp/artifacts")
        assert first_call.kwargs["params"]["with_tag"] == "true"
        assert first_call.kwargs["params"]["with_scan_overview"] == "false"
        assert artifacts[0].tag_names == ["v1", "stable"]
        assert artifacts[0].primary_tag == "v1"
        assert artifacts[0].push_time == datetime(2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert artifacts[1].primary_tag is None

    def test_non_list_page_is_an_error(self, session):
        session.request.return_value = response(payload={"errors": []})

        with pytest.raises(HarborAPIError):
            make_client(session).list_projects()


class TestErrors:
    """Tests for status mapping and retries"""

    def test_server_errors_are_retried(self, session, no_backoff_sleep):
        session.request.side_effect = [
            response(status_code=503, text="busy"),
            response(payload=[{"project_id": 1, "name": "library"}]),
            response(payload=[]),
        ]

        projects = make_client(session, max_retries=2).list_projects()

        assert [p.name for p in projects] == ["library"]
        assert session.request.call_count == 3
        assert no_backoff_sleep.call_count == 1

    def test_auth_errors_are_not_retried(self, session):
        session.request.return_value = response(status_code=401, text="unauthorized")

        with pytest.raises(HarborAPIError) as exc_info:
            make_client(session, max_retries=3).list_projects()

        assert exc_info.value.status_code == 401
        assert exc_info.value.body == "unauthorized"
        assert session.request.call_count == 1

    def test_connection_errors_are_retried_then_wrapped(self, session):
        session.request.side_effect = requests.exceptions.ConnectionError("connection refused")

        with pytest.raises(HarborAPIError) as exc_info:
            make_client(session, max_retries=2).list_projects()

        assert exc_info.value.status_code is None
        assert isinstance(exc_info.value.__cause__, requests.exceptions.ConnectionError)
        assert session.request.call_count == 3

    def test_delete_artifact(self, session):
        session.request.return_value = response(status_code=200)

        make_client(session).delete_artifact("dev", "dev/team/app", "sha256:abc")

        session.request.assert_called_once()
        assert session.request.call_args.args == ("DELETE", f"{BASE}/projects/dev/repositories/team%252Fapp/artifacts/sha256:abc")

    def test_delete_failure_is_not_retried(self, session):
        session.request.return_value = response(status_code=500, text="oops")

        with pytest.raises(HarborAPIError) as exc_info:
            make_client(session, max_retries=3).delete_artifact("dev", "dev/app", "sha256:abc")

        assert exc_info.value.status_code == 500
        assert session.request.call_count == 1


class TestHelpers:
    """Tests for module-level helpers"""

    def test_encode_repository_name(self):
        assert encode_repository_name("dev", "dev/app") == "app"
        assert encode_repository_name("dev", "dev/a/b") == "a%252Fb"
        assert encode_repository_name("dev", "other/app") == "other%252Fapp"

    def test_parse_push_time(self):
        assert parse_push_time("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert parse_push_time("2024-01-02T03:04:05.5+00:00") == datetime(2024, 1, 2, 3, 4, 5, 500000, tzinfo=timezone.utc)
        assert parse_push_time(None) is None
        assert parse_push_time("") is None

    def test_artifact_from_api_skips_nameless_tags(self):
        artifact = Artifact.from_api({"digest": "sha256:x", "tags": [{"name": ""}, {"name": "v1"}]})

        assert artifact.tag_names == ["v1"]
        assert artifact.push_time is None
