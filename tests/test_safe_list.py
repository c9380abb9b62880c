"""Unit tests for registry_retention/safe_list.py"""

import pytest

from registry_retention.safe_list import (
    ImageContext,
    ManifestError,
    SafeImageAggregator,
    SafeImageRecord,
    from_manifest_rows,
    read_manifest,
    write_manifest,
)


def record(image, environment="prod", namespace="apps"):
    return SafeImageRecord(image=image, environment=environment, namespace=namespace)


class TestSafeImageAggregator:
    """Tests for SafeImageAggregator"""

    def test_first_writer_wins_in_manifest_rows(self):
        aggregator = SafeImageAggregator()
        aggregator.add(record("h/app:1", "prod", "a"))
        aggregator.add(record("h/app:1", "staging", "b"))

        assert aggregator.to_manifest_rows() == [("h/app:1", "prod", "a")]
        assert aggregator.contexts("h/app:1") == [ImageContext("prod", "a"), ImageContext("staging", "b")]

    def test_insertion_order_is_preserved(self):
        aggregator = SafeImageAggregator()
        added = aggregator.extend([record("h/z:1"), record("h/a:1"), record("h/m:1"), record("h/a:1")])

        assert added == 3
        assert [r.image for r in aggregator.records] == ["h/z:1", "h/a:1", "h/m:1"]
        assert len(aggregator) == 3
        assert "h/m:1" in aggregator
        assert "h/q:1" not in aggregator

    def test_same_context_is_not_repeated(self):
        aggregator = SafeImageAggregator()
        aggregator.add(record("h/app:1"))
        aggregator.add(record("h/app:1"))

        assert aggregator.contexts("h/app:1") == [ImageContext("prod", "apps")]


class TestManifestRows:
    """Tests for from_manifest_rows()"""

    def test_accumulates_every_context(self):
        safe, contexts = from_manifest_rows(
            [["h/app:1", "prod", "a"], ["h/app:1", "staging", "b"], ["h/db:2", "prod", "data"]]
        )

        assert safe == {"h/app:1", "h/db:2"}
        assert contexts["h/app:1"] == [ImageContext("prod", "a"), ImageContext("staging", "b")]

    def test_skips_short_and_empty_rows(self):
        safe, contexts = from_manifest_rows([["h/app:1", "prod"], [" ", "prod", "a"], [" h/ok:1 ", " prod ", " a "]])

        assert safe == {"h/ok:1"}
        assert contexts == {"h/ok:1": [ImageContext("prod", "a")]}

    def test_every_safe_image_has_a_context(self):
        safe, contexts = from_manifest_rows([["h/a:1", "e", "n"], ["h/b:1", "e", "n"]])

        assert set(contexts) == safe
        assert all(contexts[image] for image in safe)


class TestManifestFile:
    """Tests for write_manifest() and read_manifest()"""

    def test_round_trip_preserves_safe_set(self, tmp_path):
        aggregator = SafeImageAggregator()
        aggregator.extend([record("h/app:1", "prod", "a"), record("h/db:2", "staging", "b"), record("h/app:1", "dev", "c")])
        path = tmp_path / "nested" / "manifest.csv"

        write_manifest(str(path), aggregator)
        safe, contexts = read_manifest(str(path))

        assert safe == aggregator.images
        assert path.read_text().splitlines()[0] == "image,environment,namespace"
        # Only the first context of an image is persisted
        assert contexts["h/app:1"] == [ImageContext("prod", "a")]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ManifestError):
            read_manifest(str(tmp_path / "missing.csv"))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.csv"
        path.write_text("")

        with pytest.raises(ManifestError):
            read_manifest(str(path))

    def test_missing_header(self, tmp_path):
        path = tmp_path / "no-header.csv"
        path.write_text("h/app:1,prod,apps\n")

        with pytest.raises(ManifestError):
            read_manifest(str(path))

    def test_header_only_gives_empty_safe_set(self, tmp_path):
        path = tmp_path / "header.csv"
        path.write_text("image,environment,namespace\n")

        assert read_manifest(str(path)) == (set(), {})
