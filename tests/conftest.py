"""
Pytest configuration file.

Sets up the Python path so test files can import from the python/ directory,
and provides an in-memory Harbor registry for engine and script tests.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add python directory to path for all tests
_python_dir = Path(__file__).parent.parent / 'python'
_python_dir_abs = str(_python_dir.absolute())
if _python_dir_abs not in sys.path:
    sys.path.insert(0, _python_dir_abs)

from registry_retention.harbor_client import Artifact, HarborAPIError, Project, Repository, Tag  # noqa: E402

_ENV_VARS = (
    "HARBOR_URL",
    "HARBOR_USER",
    "HARBOR_PASSWORD",
    "CLEANER_STRATEGY",
    "CLEANER_STAGE",
    "DRY_RUN",
    "OUTPUT_DIR",
    "LOG_LEVEL",
    "CONFIG_FILE",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep configuration overrides from the shell out of the tests"""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def make_artifact(tag, day, digest=None, extra_tags=()):
    """Artifact pushed on 2024-01-<day>; tag=None gives an untagged artifact"""
    tags = [Tag(name=tag)] if tag else []
    tags.extend(Tag(name=t) for t in extra_tags)
    return Artifact(
        digest=digest or f"sha256:{tag or 'untagged'}-{day}",
        push_time=datetime(2024, 1, day, tzinfo=timezone.utc),
        tags=tags,
    )


class FakeHarborClient:
    """In-memory registry with the HarborClient interface.

    projects maps project name -> {repository name -> [Artifact]}.
    """

    registry_host = "harbor.example.com"

    def __init__(self, projects, fail_projects=False, fail_repositories=(), fail_artifacts=(), fail_deletes=()):
        self.projects = projects
        self.fail_projects = fail_projects
        self.fail_repositories = set(fail_repositories)
        self.fail_artifacts = set(fail_artifacts)
        self.fail_deletes = set(fail_deletes)
        self.listed_repositories = []
        self.listed_artifacts = []
        self.deleted = []

    def list_projects(self):
        if self.fail_projects:
            raise HarborAPIError("projects unavailable", status_code=503)
        return [Project(project_id=i, name=name) for i, name in enumerate(self.projects, 1)]

    def list_repositories(self, project_name):
        self.listed_repositories.append(project_name)
        if project_name in self.fail_repositories:
            raise HarborAPIError("repositories unavailable", status_code=500)
        return [Repository(name=name) for name in self.projects[project_name]]

    def list_artifacts(self, project_name, repository_name):
        self.listed_artifacts.append(repository_name)
        if repository_name in self.fail_artifacts:
            raise HarborAPIError("artifacts unavailable", status_code=500)
        return list(self.projects[project_name][repository_name])

    def delete_artifact(self, project_name, repository_name, digest):
        if digest in self.fail_deletes:
            raise HarborAPIError("delete refused", status_code=412)
        self.deleted.append((project_name, repository_name, digest))


@pytest.fixture
def artifact():
    return make_artifact


@pytest.fixture
def fake_harbor():
    return FakeHarborClient
