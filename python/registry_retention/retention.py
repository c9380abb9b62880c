#!/usr/bin/env python3
"""
Retention decision engine.

Two policies decide which Harbor artifacts are deleted:

- Time-based: per repository, keep the newest `keep_last_n` tagged artifacts
  and at most `max_snapshots` snapshot builds among them.
- Manifest-based: for repositories referenced by the workload manifest,
  keep every artifact the manifest lists and delete the rest. Repositories
  the manifest does not reference are never touched.

Every evaluated artifact produces one AuditRecord. In dry-run mode the same
classification is produced but no delete call is issued.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from registry_retention.harbor_client import Artifact, HarborAPIError, Project, Repository
from registry_retention.logging_utils import get_logger
from registry_retention.safe_list import ImageContext

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

NOTE_KEPT_BY_AGE = "Kept as part of the newest {keep} artifacts (snapshot count: {kept}/{max})"
NOTE_IN_USE = "In use by Kubernetes"
NOTE_NOT_IN_MANIFEST = "Not found in manifest"
REASON_KEEP_LIMIT = "keep limit exceeded"
REASON_SNAPSHOT_LIMIT = "snapshot limit exceeded"


class AuditStatus(Enum):
    KEPT = "KEPT"
    DELETED = "DELETED"
    TO_BE_DELETED = "TO_BE_DELETED"
    DELETE_FAILED = "DELETE_FAILED"


class Action(Enum):
    KEEP = "keep"
    DELETE = "delete"


@dataclass(frozen=True)
class AuditRecord:
    """Outcome for one artifact, as written to the audit report"""
    image: str
    status: AuditStatus
    notes: str
    environments: str = ""
    namespaces: str = ""
    project: str = ""
    repository: str = ""
    digest: str = ""


@dataclass
class RetentionPolicy:
    """Settings for the time-based policy"""
    keep_last_n: int = 10
    max_snapshots: int = 2
    snapshot_pattern: str = "SNAPSHOT"
    project_whitelist: Optional[Set[str]] = None


@dataclass(frozen=True)
class Decision:
    """Classification of one artifact by the time-based policy

    snapshots_kept is the number of snapshots kept so far in the repository,
    including this artifact if it is a kept snapshot.
    """
    artifact: Artifact
    action: Action
    reason: str
    snapshots_kept: int


@dataclass
class CleanupResult:
    records: List[AuditRecord] = field(default_factory=list)
    deleted: int = 0
    failed: int = 0
    projects_scanned: int = 0
    repositories_scanned: int = 0
    dry_run: bool = True

    def count(self, status: AuditStatus) -> int:
        return sum(1 for record in self.records if record.status == status)

    def status_counts(self) -> Dict[AuditStatus, int]:
        return {status: self.count(status) for status in AuditStatus}


def snapshot_matcher(pattern: str) -> Callable[[str], bool]:
    """Predicate telling whether a tag names a snapshot build.

    The pattern is a regular expression searched anywhere in the tag, ignoring case.
    """
    regex = re.compile(pattern, re.IGNORECASE)
    return lambda tag: bool(tag) and regex.search(tag) is not None


def classify_by_age(
    artifacts: Iterable[Artifact],
    keep_last_n: int,
    max_snapshots: int,
    is_snapshot: Callable[[str], bool],
) -> List[Decision]:
    """Classify the artifacts of one repository, newest first.

    Untagged artifacts are ignored. Artifacts are ordered by push time
    (newest first, equal push times by digest). An artifact is kept when it
    is within the newest keep_last_n and, for snapshots, while fewer than
    max_snapshots snapshots have been kept. Over-cap snapshots inside the
    window are deleted and their slots are not handed to older artifacts.
    """
    tagged = [artifact for artifact in artifacts if artifact.tags]
    ordered = sorted(tagged, key=lambda a: a.digest)
    ordered.sort(key=lambda a: a.push_time or _EPOCH, reverse=True)

    decisions: List[Decision] = []
    snapshots_kept = 0
    for position, artifact in enumerate(ordered):
        if position >= keep_last_n:
            decisions.append(Decision(artifact, Action.DELETE, REASON_KEEP_LIMIT, snapshots_kept))
        elif is_snapshot(artifact.primary_tag):
            if snapshots_kept < max_snapshots:
                snapshots_kept += 1
                decisions.append(Decision(artifact, Action.KEEP, "", snapshots_kept))
            else:
                decisions.append(Decision(artifact, Action.DELETE, REASON_SNAPSHOT_LIMIT, snapshots_kept))
        else:
            decisions.append(Decision(artifact, Action.KEEP, "", snapshots_kept))
    return decisions


def repository_of(image: str, host: str) -> Optional[str]:
    """Repository path of an image reference on the given registry host.

    Returns None for images hosted elsewhere. A digest suffix (`@sha256:...`)
    is dropped first, then a tag after the last `:` of the final path segment.
    """
    prefix = f"{host}/"
    if not image.startswith(prefix):
        return None
    remainder = image[len(prefix):].split("@", 1)[0]
    colon = remainder.rfind(":")
    if colon > remainder.rfind("/"):
        return remainder[:colon]
    return remainder


def derive_in_use_repositories(safe_images: Iterable[str], host: str) -> Set[str]:
    """Repositories referenced by the manifest on the given registry host"""
    repositories = set()
    for image in safe_images:
        repository = repository_of(image, host)
        if repository:
            repositories.add(repository)
    return repositories


def artifact_references(host: str, repository: str, artifact: Artifact) -> List[str]:
    """Every image reference under which a workload can pull the artifact"""
    references = []
    for tag in artifact.tag_names:
        references.append(f"{host}/{repository}:{tag}")
        if artifact.digest:
            references.append(f"{host}/{repository}:{tag}@{artifact.digest}")
        # An untagged reference pulls latest
        if tag == "latest":
            references.append(f"{host}/{repository}")
    if artifact.digest:
        references.append(f"{host}/{repository}@{artifact.digest}")
    return references


def _unique(values: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(v for v in values if v))


class RetentionEngine:
    """Walk Harbor projects and repositories and apply a retention policy"""

    def __init__(self, client, dry_run: bool = True, delete_delay: float = 0.2, sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            client: HarborClient (or anything with the same list/delete methods)
            dry_run: Classify only, never call delete
            delete_delay: Seconds to wait after each live delete call
            sleep: Sleep function, replaceable in tests
        """
        self.client = client
        self.dry_run = dry_run
        self.delete_delay = delete_delay
        self._sleep = sleep

    def _new_result(self, result: Optional[CleanupResult]) -> CleanupResult:
        if result is None:
            return CleanupResult(dry_run=self.dry_run)
        result.dry_run = self.dry_run
        return result

    def _projects(self, project_whitelist: Optional[Set[str]], result: CleanupResult) -> List[Project]:
        """Projects to process. Failure to list projects is fatal and propagates."""
        projects = self.client.list_projects()
        selected = []
        for project in projects:
            if project_whitelist is not None and project.name not in project_whitelist:
                logger.info(f"    ⏭️  Skipping project {project.name} (not in whitelist).")
                continue
            selected.append(project)
        result.projects_scanned = len(selected)
        return selected

    def _repositories(self, project: Project) -> Optional[List[Repository]]:
        try:
            return self.client.list_repositories(project.name)
        except HarborAPIError as e:
            logger.error(f"    ❌ Failed to list repositories for project {project.name}: {e}")
            return None

    def _artifacts(self, project: Project, repository: Repository) -> Optional[List[Artifact]]:
        try:
            return self.client.list_artifacts(project.name, repository.name)
        except HarborAPIError as e:
            logger.error(f"        ❌ Failed to list artifacts for repo {repository.name}: {e}")
            return None

    def _delete(self, project: Project, repository: Repository, artifact: Artifact, image: str, result: CleanupResult) -> AuditStatus:
        """Delete an artifact (or pretend to, in dry-run) and update the counters"""
        if self.dry_run:
            logger.info(f"        🔴 {AuditStatus.TO_BE_DELETED.value}: {image}")
            result.deleted += 1
            return AuditStatus.TO_BE_DELETED

        logger.info(f"        🔴 Deleting: {image}")
        try:
            self.client.delete_artifact(project.name, repository.name, artifact.digest)
        except HarborAPIError as e:
            logger.error(f"            ❌ FAILED to delete artifact {image}: {e}")
            result.failed += 1
            return AuditStatus.DELETE_FAILED
        finally:
            if self.delete_delay > 0:
                self._sleep(self.delete_delay)

        logger.info(f"            ✅ Successfully deleted artifact {image}.")
        result.deleted += 1
        return AuditStatus.DELETED

    def run_time_based(self, policy: RetentionPolicy, result: Optional[CleanupResult] = None) -> CleanupResult:
        """Apply the keep-newest-N policy to every (whitelisted) repository

        Records are appended to result as they are made, so a caller passing
        its own CleanupResult keeps them if the run is interrupted.

        Raises:
            HarborAPIError: If the project list cannot be fetched
        """
        result = self._new_result(result)
        is_snapshot = snapshot_matcher(policy.snapshot_pattern)
        host = self.client.registry_host

        logger.info("⚪️ Starting cleanup based on Harbor retention strategy.")
        for project in self._projects(policy.project_whitelist, result):
            logger.info(f"  ▶️  Processing Project: {project.name}")
            repositories = self._repositories(project)
            if repositories is None:
                continue

            for repository in repositories:
                logger.info(f"    ▶️  Processing Repository: {repository.name}")
                artifacts = self._artifacts(project, repository)
                if artifacts is None:
                    continue
                result.repositories_scanned += 1

                for decision in classify_by_age(artifacts, policy.keep_last_n, policy.max_snapshots, is_snapshot):
                    artifact = decision.artifact
                    image = f"{host}/{repository.name}:{artifact.primary_tag}"
                    if decision.action == Action.KEEP:
                        status = AuditStatus.KEPT
                        notes = NOTE_KEPT_BY_AGE.format(
                            keep=policy.keep_last_n, kept=decision.snapshots_kept, max=policy.max_snapshots
                        )
                        logger.info(f"        🟢 {status.value}: {image}")
                    else:
                        status = self._delete(project, repository, artifact, image, result)
                        notes = f"Expired artifact ({decision.reason})"

                    result.records.append(
                        AuditRecord(
                            image=image,
                            status=status,
                            notes=notes,
                            project=project.name,
                            repository=repository.name,
                            digest=artifact.digest,
                        )
                    )
        return result

    def run_manifest_based(
        self,
        safe_images: Set[str],
        contexts: Dict[str, Sequence[ImageContext]],
        project_whitelist: Optional[Set[str]] = None,
        result: Optional[CleanupResult] = None,
    ) -> CleanupResult:
        """Delete artifacts of in-use repositories that the manifest does not list

        Args:
            safe_images: Image references that must be kept
            contexts: Environments/namespaces using each safe image
            project_whitelist: Projects to process (None = all)
            result: CleanupResult to append to (a new one by default)

        Raises:
            HarborAPIError: If the project list cannot be fetched
        """
        result = self._new_result(result)
        host = self.client.registry_host
        in_use = derive_in_use_repositories(safe_images, host)

        logger.info("⚪️ Starting cleanup based on Kubernetes in-use images strategy.")
        logger.info(f"   {len(safe_images)} safe images across {len(in_use)} repositories on {host}")

        for project in self._projects(project_whitelist, result):
            logger.info(f"  ▶️  Processing Project: {project.name}")
            repositories = self._repositories(project)
            if repositories is None:
                continue

            for repository in repositories:
                if repository.name not in in_use:
                    logger.debug(f"    Skipping repository {repository.name} (not referenced by the manifest)")
                    continue

                logger.info(f"    ▶️  Processing Repository: {repository.name}")
                artifacts = self._artifacts(project, repository)
                if artifacts is None:
                    continue
                result.repositories_scanned += 1

                for artifact in artifacts:
                    if not artifact.tags:
                        continue
                    result.records.append(self._evaluate_manifest_artifact(
                        project, repository, artifact, host, safe_images, contexts, result
                    ))
        return result

    def _evaluate_manifest_artifact(
        self,
        project: Project,
        repository: Repository,
        artifact: Artifact,
        host: str,
        safe_images: Set[str],
        contexts: Dict[str, Sequence[ImageContext]],
        result: CleanupResult,
    ) -> AuditRecord:
        matched = [ref for ref in artifact_references(host, repository.name, artifact) if ref in safe_images]

        if matched:
            image = matched[0]
            used_by = [ctx for ref in matched for ctx in contexts.get(ref, [])]
            logger.info(f"        🟢 {AuditStatus.KEPT.value}: {image}")
            return AuditRecord(
                image=image,
                status=AuditStatus.KEPT,
                notes=NOTE_IN_USE,
                environments=",".join(_unique(ctx.environment for ctx in used_by)),
                namespaces=",".join(_unique(ctx.namespace for ctx in used_by)),
                project=project.name,
                repository=repository.name,
                digest=artifact.digest,
            )

        image = f"{host}/{repository.name}:{artifact.primary_tag}"
        status = self._delete(project, repository, artifact, image, result)
        return AuditRecord(
            image=image,
            status=status,
            notes=NOTE_NOT_IN_MANIFEST,
            environments="-",
            namespaces="-",
            project=project.name,
            repository=repository.name,
            digest=artifact.digest,
        )
