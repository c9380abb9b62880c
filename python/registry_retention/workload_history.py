#!/usr/bin/env python3
"""
Workload image history extraction.

For every Deployment and StatefulSet in the configured namespaces, this module
collects the images of the current pod template and of the workload's
revision history (ReplicaSets for Deployments, ControllerRevisions for
StatefulSets) and keeps the `keep` most recent distinct images as "safe".
Those images, and the rollback targets they represent, must never be deleted
from the registry.
"""

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional

from kubernetes import client, config
from tqdm import tqdm

from registry_retention.config_manager import EnvironmentConfig
from registry_retention.error_utils import create_kubernetes_error
from registry_retention.logging_utils import get_logger
from registry_retention.pattern_matching import should_process
from registry_retention.safe_list import SafeImageAggregator, SafeImageRecord

logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class WorkloadRevision:
    """Images of one historical revision of a workload"""
    images: List[str]
    created_at: Optional[datetime] = None


@dataclass
class WorkloadSnapshot:
    """Current state of a workload plus its revision history"""
    kind: str
    name: str
    namespace: str
    images: List[str]
    created_at: Optional[datetime] = None
    revisions: List[WorkloadRevision] = field(default_factory=list)


def _normalize_time(value: Optional[datetime]) -> datetime:
    if value is None:
        return _EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def extract_safe_images(
    environment: str,
    namespace: str,
    current_images: Iterable[str],
    created_at: Optional[datetime],
    revisions: Iterable[WorkloadRevision],
    keep_n: int,
) -> List[SafeImageRecord]:
    """Pick the most recent distinct images of a workload.

    Args:
        environment: Environment name recorded on each safe image
        namespace: Namespace recorded on each safe image
        current_images: Images of the workload's current pod template
        created_at: Creation time of the workload, used for the current images
        revisions: Historical revisions, each with its own images and creation time
        keep_n: Maximum number of distinct images to return

    Returns:
        At most keep_n SafeImageRecords, most recent first. The current images
        come first among entries with the same timestamp.
    """
    timeline = [(image, _normalize_time(created_at)) for image in current_images]
    for revision in revisions:
        revision_time = _normalize_time(revision.created_at)
        timeline.extend((image, revision_time) for image in revision.images)

    # sorted() is stable, so equal timestamps keep input order
    timeline = sorted(timeline, key=lambda entry: entry[1], reverse=True)

    safe_images: List[SafeImageRecord] = []
    seen = set()
    for image, _ in timeline:
        if len(safe_images) >= keep_n:
            break
        if not image or image in seen:
            continue
        seen.add(image)
        safe_images.append(SafeImageRecord(image=image, environment=environment, namespace=namespace))
    return safe_images


def selector_to_string(selector: Any) -> str:
    """Render a V1LabelSelector as a label selector query string.

    Returns an empty string when the selector has no requirements.
    """
    if selector is None:
        return ""

    parts = []
    for key, value in sorted((selector.match_labels or {}).items()):
        parts.append(f"{key}={value}")

    for requirement in selector.match_expressions or []:
        operator = requirement.operator
        values = ",".join(sorted(requirement.values or []))
        if operator == "In":
            parts.append(f"{requirement.key} in ({values})")
        elif operator == "NotIn":
            parts.append(f"{requirement.key} notin ({values})")
        elif operator == "Exists":
            parts.append(requirement.key)
        elif operator == "DoesNotExist":
            parts.append(f"!{requirement.key}")
        else:
            raise ValueError(f"Unsupported label selector operator: {operator}")

    return ",".join(parts)


def pod_spec_images(pod_spec: Any) -> List[str]:
    """Images of a V1PodSpec, init containers included"""
    if pod_spec is None:
        return []
    containers = list(pod_spec.init_containers or []) + list(pod_spec.containers or [])
    return [c.image for c in containers if c.image]


def _template_images(workload: Any) -> List[str]:
    spec = getattr(workload, "spec", None)
    template = getattr(spec, "template", None) if spec is not None else None
    return pod_spec_images(getattr(template, "spec", None) if template is not None else None)


def _raw_template_images(data: Any) -> List[str]:
    """Images from the raw pod template stored in a ControllerRevision's data"""
    if not isinstance(data, dict):
        return []
    pod_spec = ((data.get("spec") or {}).get("template") or {}).get("spec") or {}
    containers = list(pod_spec.get("initContainers") or []) + list(pod_spec.get("containers") or [])
    return [c["image"] for c in containers if isinstance(c, dict) and c.get("image")]


def _is_owned_by(obj: Any, kind: str, name: str, uid: Optional[str]) -> bool:
    """True if the object has no owner references or one of them points at the workload"""
    owners = obj.metadata.owner_references or []
    if not owners:
        return True
    for owner in owners:
        if owner.kind != kind:
            continue
        if uid and owner.uid:
            if owner.uid == uid:
                return True
        elif owner.name == name:
            return True
    return False


class ClusterScanner:
    """Collect safe images from the workloads of one Kubernetes environment"""

    def __init__(self, environment: EnvironmentConfig, apps_v1: Any):
        self.environment = environment
        self.apps_v1 = apps_v1
        self.logger = get_logger(__name__)

    def _should_process(self, kind: str, name: str) -> bool:
        if should_process(name, self.environment.pod_whitelist, self.environment.pod_blacklist):
            return True
        self.logger.info(f"      Skipping {kind} {name} (filtered by whitelist/blacklist)")
        return False

    def _extract(self, snapshot: WorkloadSnapshot) -> List[SafeImageRecord]:
        return extract_safe_images(
            self.environment.name,
            snapshot.namespace,
            snapshot.images,
            snapshot.created_at,
            snapshot.revisions,
            self.environment.keep,
        )

    def deployment_snapshot(self, namespace: str, deployment: Any) -> Optional[WorkloadSnapshot]:
        """Current images and ReplicaSet history of a Deployment.

        Returns None when the ReplicaSet history cannot be listed.
        """
        name = deployment.metadata.name
        snapshot = WorkloadSnapshot(
            kind="Deployment",
            name=name,
            namespace=namespace,
            images=_template_images(deployment),
            created_at=deployment.metadata.creation_timestamp,
        )

        try:
            label_selector = selector_to_string(deployment.spec.selector)
        except ValueError as e:
            self.logger.warning(f"      WARNING: Could not create selector for deployment {namespace}/{name}: {e}")
            return None
        if not label_selector:
            return snapshot

        try:
            replica_sets = self.apps_v1.list_namespaced_replica_set(namespace, label_selector=label_selector)
        except Exception as e:
            self.logger.warning(f"      WARNING: Could not list replicasets for deployment {namespace}/{name}: {e}")
            return None

        for rs in replica_sets.items:
            if not _is_owned_by(rs, "Deployment", name, deployment.metadata.uid):
                continue
            snapshot.revisions.append(
                WorkloadRevision(images=_template_images(rs), created_at=rs.metadata.creation_timestamp)
            )
        return snapshot

    def statefulset_snapshot(self, namespace: str, statefulset: Any) -> Optional[WorkloadSnapshot]:
        """Current images and ControllerRevision history of a StatefulSet.

        Returns None when the ControllerRevision history cannot be listed.
        """
        name = statefulset.metadata.name
        snapshot = WorkloadSnapshot(
            kind="StatefulSet",
            name=name,
            namespace=namespace,
            images=_template_images(statefulset),
            created_at=statefulset.metadata.creation_timestamp,
        )

        try:
            label_selector = selector_to_string(statefulset.spec.selector)
        except ValueError as e:
            self.logger.warning(f"      WARNING: Could not create selector for statefulset {namespace}/{name}: {e}")
            return None
        if not label_selector:
            return snapshot

        try:
            revisions = self.apps_v1.list_namespaced_controller_revision(namespace, label_selector=label_selector)
        except Exception as e:
            self.logger.warning(f"      WARNING: Could not list controller revisions for statefulset {namespace}/{name}: {e}")
            return None

        for revision in revisions.items:
            if not _is_owned_by(revision, "StatefulSet", name, statefulset.metadata.uid):
                continue
            snapshot.revisions.append(
                WorkloadRevision(
                    images=_raw_template_images(revision.data),
                    created_at=revision.metadata.creation_timestamp,
                )
            )
        return snapshot

    def scan_namespace(self, namespace: str) -> List[SafeImageRecord]:
        """Safe images of every Deployment and StatefulSet in a namespace"""
        self.logger.info(f"  -> Scanning namespace: {namespace}")
        records: List[SafeImageRecord] = []

        try:
            deployments = self.apps_v1.list_namespaced_deployment(namespace)
        except Exception as e:
            self.logger.warning(f"    WARNING: Failed to list deployments in ns {namespace}: {e}")
        else:
            for deployment in deployments.items:
                if not self._should_process("deployment", deployment.metadata.name):
                    continue
                snapshot = self.deployment_snapshot(namespace, deployment)
                if snapshot is not None:
                    records.extend(self._extract(snapshot))

        try:
            statefulsets = self.apps_v1.list_namespaced_stateful_set(namespace)
        except Exception as e:
            self.logger.warning(f"    WARNING: Failed to list statefulsets in ns {namespace}: {e}")
        else:
            for statefulset in statefulsets.items:
                if not self._should_process("statefulset", statefulset.metadata.name):
                    continue
                snapshot = self.statefulset_snapshot(namespace, statefulset)
                if snapshot is not None:
                    records.extend(self._extract(snapshot))

        self.logger.info(f"     Found {len(records)} safe image references in {namespace}")
        return records

    def scan(self) -> List[SafeImageRecord]:
        """Safe images of every configured namespace of the environment"""
        records: List[SafeImageRecord] = []
        for namespace in self.environment.namespaces:
            records.extend(self.scan_namespace(namespace))
        return records


def create_apps_v1_api(environment: EnvironmentConfig) -> Any:
    """Create an AppsV1Api client for an environment.

    Uses the environment's kubeconfig (and context) when configured, otherwise
    tries in-cluster config first and falls back to the local kubeconfig.
    """
    if environment.kubeconfig:
        kubeconfig_path = os.path.abspath(os.path.expanduser(environment.kubeconfig))
        api_client = config.new_client_from_config(config_file=kubeconfig_path, context=environment.context)
        return client.AppsV1Api(api_client)

    try:
        config.load_incluster_config()
    except config.ConfigException:
        config.load_kube_config(context=environment.context)
    return client.AppsV1Api()


def build_safe_list(
    environments: Iterable[EnvironmentConfig],
    api_factory: Callable[[EnvironmentConfig], Any] = create_apps_v1_api,
) -> SafeImageAggregator:
    """Scan every environment and aggregate the safe images.

    Raises:
        ActionableError: If an environment's cluster cannot be reached
    """
    aggregator = SafeImageAggregator()
    environments = list(environments)

    for env in tqdm(environments, desc="Scanning environments", unit="env", disable=len(environments) < 2):
        logger.info(f" K8s: Connecting to env '{env.name}'...")
        try:
            apps_v1 = api_factory(env)
        except Exception as e:
            raise create_kubernetes_error(f"connect to environment '{env.name}'", e) from e

        records = ClusterScanner(env, apps_v1).scan()
        added = aggregator.extend(records)
        logger.info(f" K8s: Finished scanning env '{env.name}' ({added} new images, {len(aggregator)} total).")

    return aggregator
