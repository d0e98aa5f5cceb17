"""Tests for config loading, overrides and workspace paths."""

from __future__ import annotations

from pathlib import Path

import pytest

from stratum.config import ConfigDoc, load_config, parse_override
from stratum.errors import ConfigError
from stratum.ui.console import sanitize_log_line
from stratum.workspace import init_dirs, load_paths

from conftest import doc_from, write_config


class TestConfigDoc:
    def test_value_path(self) -> None:
        doc = ConfigDoc({"a": {"b": {"c": 3}}, "x": [1]})
        assert doc.value_path("a.b.c") == 3
        assert doc.value_path("a.missing") is None
        assert doc.value_path("x.0") is None
        assert doc.value_path("a..b") is None

    def test_overrides_merge_and_do_not_mutate(self) -> None:
        doc = ConfigDoc({"build": {"arch": "x86_64", "jobs": 2}})
        new = doc.with_overrides({"build.jobs": 8, "stage.name": "rootfs"})
        assert new.value_path("build.arch") == "x86_64"
        assert new.value_path("build.jobs") == 8
        assert new.value_path("stage.name") == "rootfs"
        assert doc.value_path("build.jobs") == 2

    def test_parse_override_values(self) -> None:
        assert parse_override("a.b=2") == ("a.b", 2)
        assert parse_override("flag=true") == ("flag", True)
        assert parse_override('names=["x", "y"]') == ("names", ["x", "y"])
        assert parse_override("text=hello world") == ("text", "hello world")
        with pytest.raises(ConfigError):
            parse_override("novalue")

    def test_table_must_be_a_table(self) -> None:
        with pytest.raises(ConfigError):
            ConfigDoc({"tasks": 3}).table("tasks")

    def test_load_errors(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError):
            load_config(tmp_path / "missing.toml")
        bad = write_config(tmp_path, "[unterminated\n")
        with pytest.raises(ConfigError) as exc:
            load_config(bad)
        assert "invalid TOML" in str(exc.value)


class TestWorkspace:
    def test_defaults_resolve_against_config_dir(self, tmp_path: Path) -> None:
        paths = load_paths(doc_from(tmp_path, "[build]\nx = 1\n"))
        assert paths.root == tmp_path.resolve()
        assert paths.build_dir == tmp_path.resolve() / "build"
        assert paths.out_dir == tmp_path.resolve() / "out"

    def test_aliases(self, tmp_path: Path) -> None:
        doc = doc_from(tmp_path, '[workspace.paths]\ncache = "@build/cache"\n')
        paths = load_paths(doc)
        assert paths.resolve_config_path("@cache/x.bin") == paths.build_dir / "cache" / "x.bin"
        assert paths.resolve_config_path("@out") == paths.out_dir
        assert paths.resolve_config_path("rel/file") == paths.root / "rel" / "file"
        with pytest.raises(ConfigError):
            paths.resolve_config_path("@nope/x")
        with pytest.raises(ConfigError):
            paths.resolve_config_path("@build/../escape")

    def test_reserved_alias(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError):
            load_paths(doc_from(tmp_path, '[workspace.paths]\nbuild = "x"\n'))

    def test_clean_build_keeps_checkpoints(self, tmp_path: Path) -> None:
        doc = doc_from(tmp_path, '[workspace]\nclean = "build"\n')
        build = tmp_path / "build"
        (build / "checkpoints").mkdir(parents=True)
        (build / "checkpoints" / "index.json").write_text("{}")
        (build / "stale.o").write_text("x")

        init_dirs(doc)

        assert not (build / "stale.o").exists()
        assert (build / "checkpoints" / "index.json").exists()

    def test_clean_refuses_workspace_root(self, tmp_path: Path) -> None:
        doc = doc_from(tmp_path, '[workspace]\nbuild_dir = "/"\nclean = "build"\n')
        with pytest.raises(ConfigError):
            init_dirs(doc)

    def test_unknown_workspace_key(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError):
            load_paths(doc_from(tmp_path, "[workspace]\nbogus = 1\n"))


class TestSanitize:
    def test_strips_escapes_and_controls(self) -> None:
        assert sanitize_log_line("\x1b[1;32mgreen\x1b[0m") == "green"
        assert sanitize_log_line("a\tb\x07c") == "a bc"
        assert sanitize_log_line("\x1b]0;title\x07text") == "text"
        assert sanitize_log_line("x\u202ey") == "xy"

    def test_truncates(self) -> None:
        out = sanitize_log_line("x" * 5000)
        assert out.endswith("...[truncated]")
        assert len(out) < 5000
