"""Safe image list: aggregation of in-use images and the manifest CSV.

The scan stage collects SafeImageRecords from every environment/namespace
into a SafeImageAggregator and persists it as a manifest. The clean stage
reads the manifest back into a set of protected image references plus a
reverse lookup of where each image is used.
"""

import csv
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from registry_retention.logging_utils import get_logger

logger = get_logger(__name__)

MANIFEST_HEADER = ["image", "environment", "namespace"]

ManifestRow = Tuple[str, str, str]


class ManifestError(Exception):
    """Raised when the manifest file cannot be read or parsed"""


@dataclass(frozen=True)
class ImageContext:
    """Where an image is in use"""
    environment: str
    namespace: str


@dataclass(frozen=True)
class SafeImageRecord:
    """An image reference protected from deletion because a workload uses it"""
    image: str
    environment: str
    namespace: str

    @property
    def context(self) -> ImageContext:
        return ImageContext(self.environment, self.namespace)


class SafeImageAggregator:
    """Merge safe image records from all environments into one ordered safe list.

    The first record seen for an image wins: its environment/namespace is what
    goes into the manifest. Later sightings of the same image are only added
    to the in-memory context lookup used for reporting.
    """

    def __init__(self):
        # dicts preserve insertion order, which keeps manifest output reproducible
        self._records: Dict[str, SafeImageRecord] = {}
        self._contexts: Dict[str, List[ImageContext]] = {}

    def add(self, record: SafeImageRecord) -> bool:
        """Add a record. Returns True if the image was not known before."""
        is_new = record.image not in self._records
        if is_new:
            self._records[record.image] = record

        contexts = self._contexts.setdefault(record.image, [])
        if record.context not in contexts:
            contexts.append(record.context)
        return is_new

    def extend(self, records: Iterable[SafeImageRecord]) -> int:
        """Add several records. Returns how many new images were added."""
        return sum(1 for record in records if self.add(record))

    @property
    def records(self) -> List[SafeImageRecord]:
        return list(self._records.values())

    @property
    def images(self) -> Set[str]:
        return set(self._records)

    def contexts(self, image: str) -> List[ImageContext]:
        return list(self._contexts.get(image, []))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, image: str) -> bool:
        return image in self._records

    def to_manifest_rows(self) -> List[ManifestRow]:
        """Rows for persistence, one per image, in first-seen order"""
        return [(r.image, r.environment, r.namespace) for r in self._records.values()]


def from_manifest_rows(rows: Iterable[Sequence[str]]) -> Tuple[Set[str], Dict[str, List[ImageContext]]]:
    """Build the safe image set and context lookup from manifest rows (header excluded).

    Unlike aggregation, every distinct context of an image listed on several
    rows is kept.

    Returns:
        Tuple of (safe_image_set, context_map). Every image in the set is a key
        of the map with at least one context.
    """
    safe_images: Set[str] = set()
    context_map: Dict[str, List[ImageContext]] = {}

    for row in rows:
        if len(row) < 3:
            continue
        image = row[0].strip()
        if not image:
            continue
        context = ImageContext(row[1].strip(), row[2].strip())
        safe_images.add(image)
        contexts = context_map.setdefault(image, [])
        if context not in contexts:
            contexts.append(context)

    return safe_images, context_map


def write_manifest(path: str, aggregator: SafeImageAggregator) -> str:
    """Write the safe list to a manifest CSV file.

    Args:
        path: Destination file; parent directories are created
        aggregator: Aggregated safe images

    Returns:
        The path written
    """
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)

    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(MANIFEST_HEADER)
        writer.writerows(aggregator.to_manifest_rows())

    logger.info(f"Wrote {len(aggregator)} safe images to manifest {path}")
    return path


def read_manifest(path: str) -> Tuple[Set[str], Dict[str, List[ImageContext]]]:
    """Read a manifest CSV file written by write_manifest.

    Raises:
        ManifestError: If the file is missing, unreadable, or lacks the header row
    """
    try:
        with open(path, "r", newline="") as f:
            rows = list(csv.reader(f))
    except (OSError, csv.Error, UnicodeDecodeError) as e:
        raise ManifestError(f"Failed to read manifest {path}: {e}") from e

    if not rows:
        raise ManifestError(f"Manifest {path} is empty (expected header: {','.join(MANIFEST_HEADER)})")

    header = [column.strip().lower() for column in rows[0]]
    if header[:3] != MANIFEST_HEADER:
        raise ManifestError(
            f"Manifest {path} has an unexpected header {rows[0]} (expected: {','.join(MANIFEST_HEADER)})"
        )

    safe_images, context_map = from_manifest_rows(rows[1:])
    logger.info(f"Loaded {len(safe_images)} safe images from manifest {path}")
    return safe_images, context_map
