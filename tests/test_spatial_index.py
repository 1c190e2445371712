"""Tests for the R-tree spatial index."""

from __future__ import annotations

import numpy as np
import pytest

from mpp.errors import DuplicateIdentityError, EntryNotFoundError
from mpp.geometry import BoundingBox
from mpp.spatial_index import SpatialIndex


def _box(x, y, z=0.0, size=1.0):
    return BoundingBox((x, y, z), (x + size, y + size, z + size))


def _random_boxes(rng, count):
    boxes = {}
    for identity in range(count):
        lo = rng.uniform(0.0, 100.0, size=3)
        ext = rng.uniform(0.5, 8.0, size=3)
        boxes[identity] = BoundingBox(tuple(lo), tuple(lo + ext))
    return boxes


def _brute_force(boxes, query):
    return {i for i, b in boxes.items() if b.intersects(query)}


class TestSpatialIndexBasics:
    def test_insert_and_query(self):
        index = SpatialIndex()
        index.insert(1, _box(0.0, 0.0))
        index.insert(2, _box(5.0, 5.0))
        assert index.intersects_with(_box(0.5, 0.5)) == {1}
        assert index.intersects_with(_box(20.0, 20.0)) == set()
        assert len(index) == 2
        assert 1 in index and 3 not in index

    def test_touching_box_is_not_returned(self):
        index = SpatialIndex()
        index.insert(1, _box(0.0, 0.0))
        assert index.intersects_with(_box(1.0, 0.0)) == set()

    def test_duplicate_identity_raises(self):
        index = SpatialIndex()
        index.insert(1, _box(0.0, 0.0))
        with pytest.raises(DuplicateIdentityError):
            index.insert(1, _box(3.0, 3.0))
        assert len(index) == 1

    def test_remove_requires_matching_box(self):
        index = SpatialIndex()
        index.insert(1, _box(0.0, 0.0))
        with pytest.raises(EntryNotFoundError):
            index.remove(1, _box(0.0, 0.0, size=2.0))
        with pytest.raises(EntryNotFoundError):
            index.remove(7, _box(0.0, 0.0))
        index.remove(1, _box(0.0, 0.0))
        assert len(index) == 0

    def test_contains_point(self):
        index = SpatialIndex()
        index.insert(1, _box(0.0, 0.0))
        index.insert(2, _box(0.5, 0.5, z=0.5))
        assert index.contains_point((0.75, 0.75, 0.75)) == {1, 2}
        assert index.contains_point((1.25, 1.25, 1.25)) == {2}

    def test_max_entries_lower_bound(self):
        with pytest.raises(ValueError):
            SpatialIndex(max_entries=3)
        assert SpatialIndex(max_entries=4).min_entries == 2

    def test_box_for(self):
        index = SpatialIndex()
        index.insert(4, _box(2.0, 2.0))
        assert index.box_for(4) == _box(2.0, 2.0)
        with pytest.raises(EntryNotFoundError):
            index.box_for(5)


class TestSpatialIndexAgainstBruteForce:
    def test_queries_match_after_inserts_and_removals(self):
        rng = np.random.default_rng(7)
        boxes = _random_boxes(rng, 300)
        index = SpatialIndex(max_entries=6)
        for identity, box in boxes.items():
            index.insert(identity, box)
        assert index.height > 1
        index.check_structure()

        for identity in list(boxes)[::2]:
            index.remove(identity, boxes.pop(identity))
        index.check_structure()
        assert len(index) == len(boxes)
        assert dict(index.entries()) == boxes

        for _ in range(100):
            lo = rng.uniform(0.0, 100.0, size=3)
            query = BoundingBox(tuple(lo), tuple(lo + rng.uniform(1.0, 20.0, size=3)))
            assert index.intersects_with(query) == _brute_force(boxes, query)

    def test_remove_everything_shrinks_to_single_leaf(self):
        rng = np.random.default_rng(11)
        boxes = _random_boxes(rng, 80)
        index = SpatialIndex(max_entries=4)
        for identity, box in boxes.items():
            index.insert(identity, box)
        for identity, box in boxes.items():
            index.remove(identity, box)
            index.check_structure()
        assert len(index) == 0
        assert index.height == 1
        assert index.intersects_with(BoundingBox((0, 0, 0), (200, 200, 200))) == set()

    def test_reinsert_after_removal(self):
        index = SpatialIndex(max_entries=4)
        for identity in range(20):
            index.insert(identity, _box(float(identity), 0.0))
        index.remove(3, _box(3.0, 0.0))
        index.insert(3, _box(50.0, 50.0))
        assert index.intersects_with(_box(3.2, 0.2, size=0.5)) == set()
        assert index.intersects_with(_box(50.2, 50.2, size=0.5)) == {3}
