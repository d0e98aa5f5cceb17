"""Tests for checkpoint fingerprints and input-change reasons."""

from __future__ import annotations

import datetime

from stratum.checkpoints.fingerprint import (
    changed_paths,
    compute_fingerprint,
    compute_lineage,
    describe_changes,
    selected_inputs,
)
from stratum.config import ConfigDoc

PATHS = ["build.arch", "build.packages"]


def fp(data: dict, paths=PATHS) -> str:
    doc = ConfigDoc(data)
    return compute_fingerprint("base", "os.build", selected_inputs(doc, paths))


class TestFingerprint:
    def test_unrelated_changes_keep_fingerprint(self) -> None:
        a = {"build": {"arch": "x86_64", "packages": ["a", "b"]}, "stage": {"files": ["one"]}}
        b = {"build": {"arch": "x86_64", "packages": ["a", "b"], "jobs": 8}, "stage": {"files": ["two"]}}
        assert fp(a) == fp(b)

    def test_listed_path_change_changes_fingerprint(self) -> None:
        a = {"build": {"arch": "x86_64", "packages": ["a", "b"]}}
        b = {"build": {"arch": "aarch64", "packages": ["a", "b"]}}
        c = {"build": {"arch": "x86_64", "packages": ["b", "a"]}}
        assert fp(a) != fp(b)
        assert fp(a) != fp(c)

    def test_missing_path_hashes_as_null(self) -> None:
        assert fp({}) == fp({"build": {}})
        assert fp({}) != fp({"build": {"arch": None, "packages": []}})

    def test_path_order_matters(self) -> None:
        data = {"build": {"arch": "x86_64", "packages": ["a"]}}
        assert fp(data, PATHS) != fp(data, list(reversed(PATHS)))

    def test_point_identity_is_part_of_the_digest(self) -> None:
        inputs = {"x": 1}
        assert compute_fingerprint("p1", "A", inputs) != compute_fingerprint("p2", "A", inputs)
        assert compute_fingerprint("p1", "A", inputs) != compute_fingerprint("p1", "B", inputs)

    def test_table_key_order_does_not_matter(self) -> None:
        a = {"build": {"arch": {"name": "x", "bits": 64}}}
        b = {"build": {"arch": {"bits": 64, "name": "x"}}}
        assert fp(a, ["build.arch"]) == fp(b, ["build.arch"])

    def test_lineage(self) -> None:
        assert compute_lineage("A", "f" * 64) == compute_lineage("A", "f" * 64)
        assert compute_lineage("A", "f" * 64) != compute_lineage("B", "f" * 64)

    def test_dates_do_not_collide_with_their_text(self) -> None:
        dated = {"build": {"arch": datetime.date(2024, 1, 1), "packages": []}}
        text = {"build": {"arch": "2024-01-01", "packages": []}}
        assert fp(dated) != fp(text)
        assert fp(dated) == fp({"build": {"arch": datetime.date(2024, 1, 1), "packages": []}})
        assert changed_paths(selected_inputs(ConfigDoc(text), PATHS), selected_inputs(ConfigDoc(dated), PATHS)) == ["build.arch"]


class TestChangeReasons:
    def test_changed_paths(self) -> None:
        prev = {"a": 1, "b": [1, 2], "gone": True}
        cur = {"a": 1, "b": [1, 3], "new": "x"}
        assert changed_paths(prev, cur) == ["b", "new", "gone"]

    def test_describe_changes_truncates(self) -> None:
        assert describe_changes(["x"]) == "inputs changed at x"
        assert describe_changes(["a", "b", "c", "d", "e"]) == "inputs changed at a, b, c (+2 more)"
