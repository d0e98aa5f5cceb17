"""Shared fixtures and helpers for stratum tests."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Dict, List

import pytest

from stratum.checkpoints.backends import CheckpointBackend, MANIFEST_FILE, ARCHIVE_FILE
from stratum.config import ConfigDoc, load_config
from stratum.errors import BackendError
from stratum.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console() -> Console:
    c = Console(quiet_logs=True)
    set_console(c)
    return c


def write_config(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "stratum.toml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def doc_from(tmp_path: Path, body: str) -> ConfigDoc:
    return load_config(write_config(tmp_path, body))


class FakeBackend(CheckpointBackend):
    """In-memory backend; `fail_uploads` makes the next N uploads raise."""

    kind = "fake"

    def __init__(self, name: str = "fake"):
        super().__init__(name)
        self.objects: Dict[tuple, Dict[str, bytes]] = {}
        self.fail_uploads = 0
        self.fail_transient = True
        self.fail_probe: str | None = None
        self.calls: List[str] = []

    def probe(self, point_id: str, fingerprint: str) -> bool:
        self.calls.append(f"probe {point_id} {fingerprint[:8]}")
        if self.fail_probe:
            raise BackendError(self.fail_probe, transient=True)
        return MANIFEST_FILE in self.objects.get((point_id, fingerprint), {})

    def download(self, point_id: str, fingerprint: str, dest_dir: Path) -> None:
        self.calls.append(f"download {point_id} {fingerprint[:8]}")
        files = self.objects.get((point_id, fingerprint))
        if not files:
            raise BackendError("not found", transient=False)
        for name, data in files.items():
            (dest_dir / name).write_bytes(data)

    def upload(self, point_id: str, fingerprint: str, manifest: Path, archive: Path) -> None:
        self.calls.append(f"upload {point_id} {fingerprint[:8]}")
        if self.fail_uploads:
            self.fail_uploads -= 1
            raise BackendError("connection reset", transient=self.fail_transient)
        self.objects[(point_id, fingerprint)] = {
            ARCHIVE_FILE: archive.read_bytes(),
            MANIFEST_FILE: manifest.read_bytes(),
        }

    def list_fingerprints(self, point_id: str) -> List[str]:
        return sorted(fp for (pid, fp) in self.objects if pid == point_id)
