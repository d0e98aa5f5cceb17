"""Tests for remote checkpoint backends and the checkpoint HTTP server."""

from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import List

import pytest
from fastapi.testclient import TestClient

from stratum.checkpoints import backends as backends_mod
from stratum.checkpoints.backends import (
    ARCHIVE_FILE,
    MANIFEST_FILE,
    HttpBackend,
    S3Backend,
    SshBackend,
    create_backend,
    resolve_field,
)
from stratum.checkpoints.config import (
    BackendsConfig,
    HttpBackendConfig,
    S3BackendConfig,
    SshBackendConfig,
    resolve_backend_ref,
)
from stratum.checkpoints.server import create_app
from stratum.errors import BackendError, CheckpointConfigError

FP = "ab" * 32


def object_files(tmp_path: Path) -> tuple[Path, Path]:
    src = tmp_path / "src"
    src.mkdir()
    manifest = src / MANIFEST_FILE
    archive = src / ARCHIVE_FILE
    manifest.write_text(json.dumps({"id": "base", "fingerprint": FP}))
    archive.write_bytes(b"tar-bytes" * 100)
    return manifest, archive


class FakeRun:
    """Stands in for subprocess.run; answers with queued (returncode, stdout, stderr)."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls: List[List[str]] = []
        self.envs: List[dict] = []

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        self.envs.append(kwargs.get("env") or {})
        code, out, err = self.answers.pop(0) if self.answers else (0, "", "")
        return subprocess.CompletedProcess(argv, code, stdout=out, stderr=err)


# ---------------------------------------------------------------------------
# HTTP backend against the bundled server
# ---------------------------------------------------------------------------


class TestHttpBackend:
    def make(self, root: Path, *, server_token=None, client_token=None) -> HttpBackend:
        client = TestClient(create_app(root, server_token))
        cfg = HttpBackendConfig(base_url="http://testserver/", token=client_token)
        return HttpBackend("cache", cfg, client=client)

    def test_upload_probe_download_list(self, tmp_path: Path) -> None:
        root = tmp_path / "served"
        backend = self.make(root)
        manifest, archive = object_files(tmp_path)

        assert backend.probe("base", FP) is False
        assert backend.list_fingerprints("base") == []

        backend.upload("base", FP, manifest, archive)
        assert (root / "base" / FP / ARCHIVE_FILE).read_bytes() == archive.read_bytes()
        assert backend.probe("base", FP) is True
        assert backend.list_fingerprints("base") == [FP]

        dest = tmp_path / "dest"
        dest.mkdir()
        backend.download("base", FP, dest)
        assert (dest / MANIFEST_FILE).read_text() == manifest.read_text()
        assert (dest / ARCHIVE_FILE).read_bytes() == archive.read_bytes()

    def test_no_temp_files_left_on_server(self, tmp_path: Path) -> None:
        root = tmp_path / "served"
        backend = self.make(root)
        backend.upload("base", FP, *object_files(tmp_path))
        assert sorted(p.name for p in (root / "base" / FP).iterdir()) == [MANIFEST_FILE, ARCHIVE_FILE]

    def test_missing_object_download_is_permanent(self, tmp_path: Path) -> None:
        backend = self.make(tmp_path / "served")
        dest = tmp_path / "dest"
        dest.mkdir()
        with pytest.raises(BackendError) as exc:
            backend.download("base", FP, dest)
        assert exc.value.transient is False

    def test_bad_token_is_a_permanent_failure(self, tmp_path: Path) -> None:
        backend = self.make(tmp_path / "served", server_token="s3cret", client_token="wrong")
        with pytest.raises(BackendError) as exc:
            backend.probe("base", FP)
        assert "401" in str(exc.value)
        assert exc.value.transient is False

    def test_token_is_sent(self, tmp_path: Path) -> None:
        backend = self.make(tmp_path / "served", server_token="s3cret", client_token="s3cret")
        backend.upload("base", FP, *object_files(tmp_path))
        assert backend.probe("base", FP) is True

    def test_server_rejects_unknown_files_and_bad_segments(self, tmp_path: Path) -> None:
        client = TestClient(create_app(tmp_path))
        assert client.put(f"/base/{FP}/evil.sh", content=b"x").status_code == 404
        assert client.put("/base/bad%20fp/manifest.json", content=b"x").status_code == 400

    def test_token_from_environment(self, tmp_path: Path, monkeypatch) -> None:
        monkeypatch.setenv("CACHE_TOKEN", "  tok  ")
        cfg = HttpBackendConfig(base_url="http://testserver", token_env="CACHE_TOKEN")
        backend = HttpBackend("cache", cfg, client=TestClient(create_app(tmp_path)))
        assert backend.token == "tok"


# ---------------------------------------------------------------------------
# S3 via the aws CLI
# ---------------------------------------------------------------------------


class TestS3Backend:
    def make(self, **kw) -> S3Backend:
        return S3Backend("main", S3BackendConfig(bucket="ckpt", **kw))

    def test_key_layout_and_cli_flags(self, monkeypatch) -> None:
        fake = FakeRun()
        monkeypatch.setattr(backends_mod.subprocess, "run", fake)
        backend = self.make(prefix="/team/", region="eu-west-1", profile="ci")

        assert backend.probe("base", FP) is True
        assert fake.calls[0] == [
            "aws", "--profile", "ci", "--region", "eu-west-1",
            "s3api", "head-object", "--bucket", "ckpt", "--key", f"team/base/{FP}/{MANIFEST_FILE}",
        ]

    def test_upload_sends_archive_before_manifest(self, monkeypatch, tmp_path: Path) -> None:
        fake = FakeRun()
        monkeypatch.setattr(backends_mod.subprocess, "run", fake)
        manifest, archive = object_files(tmp_path)

        self.make().upload("base", FP, manifest, archive)

        assert [c[-1] for c in fake.calls] == [
            f"s3://ckpt/base/{FP}/{ARCHIVE_FILE}",
            f"s3://ckpt/base/{FP}/{MANIFEST_FILE}",
        ]

    def test_probe_not_found(self, monkeypatch) -> None:
        monkeypatch.setattr(backends_mod.subprocess, "run", FakeRun((255, "", "An error occurred (404) when calling HeadObject")))
        assert self.make().probe("base", FP) is False

    def test_access_denied_is_permanent(self, monkeypatch) -> None:
        monkeypatch.setattr(
            backends_mod.subprocess, "run", FakeRun((1, "", "An error occurred (AccessDenied) when calling PutObject"))
        )
        with pytest.raises(BackendError) as exc:
            self.make().probe("base", FP)
        assert exc.value.transient is False

    def test_network_error_is_transient(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setattr(backends_mod.subprocess, "run", FakeRun((1, "", "Could not connect to the endpoint URL")))
        with pytest.raises(BackendError) as exc:
            self.make().upload("base", FP, *object_files(tmp_path))
        assert exc.value.transient is True

    def test_list_parses_manifest_keys(self, monkeypatch) -> None:
        listing = {"Contents": [
            {"Key": f"base/{FP}/{MANIFEST_FILE}"},
            {"Key": f"base/{FP}/{ARCHIVE_FILE}"},
            {"Key": "base/partial/payload.tar"},
        ]}
        monkeypatch.setattr(backends_mod.subprocess, "run", FakeRun((0, json.dumps(listing), "")))
        assert self.make().list_fingerprints("base") == [FP]

    def test_credentials_come_from_named_env_vars(self, monkeypatch) -> None:
        monkeypatch.setenv("CI_KEY_ID", "AKIA123")
        fake = FakeRun()
        monkeypatch.setattr(backends_mod.subprocess, "run", fake)

        backend = self.make(aws_access_key_id_env="CI_KEY_ID")
        backend.probe("base", FP)

        assert fake.envs[0]["AWS_ACCESS_KEY_ID"] == "AKIA123"

    def test_missing_aws_binary(self, monkeypatch) -> None:
        def missing(argv, **kwargs):
            raise FileNotFoundError(argv[0])

        monkeypatch.setattr(backends_mod.subprocess, "run", missing)
        with pytest.raises(BackendError) as exc:
            self.make().probe("base", FP)
        assert exc.value.transient is False

    def test_empty_bucket_is_a_config_error(self, monkeypatch) -> None:
        monkeypatch.delenv("NO_SUCH_BUCKET_VAR", raising=False)
        with pytest.raises(CheckpointConfigError):
            S3Backend("main", S3BackendConfig(bucket="", bucket_env="NO_SUCH_BUCKET_VAR"))


# ---------------------------------------------------------------------------
# SSH via ssh/scp
# ---------------------------------------------------------------------------


class TestSshBackend:
    def make(self, **kw) -> SshBackend:
        return SshBackend("box", SshBackendConfig(target="ci@cache.example:/srv/ckpt/", **kw))

    def test_target_must_be_host_and_absolute_path(self) -> None:
        with pytest.raises(CheckpointConfigError):
            SshBackend("box", SshBackendConfig(target="cache.example:relative"))

    def test_options(self) -> None:
        backend = self.make(port=2222, identity_file="/keys/id", strict_host_key_checking=False)
        assert backend.options(for_scp=False) == [
            "-o", "BatchMode=yes", "-p", "2222", "-i", "/keys/id",
            "-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null",
        ]
        assert backend.options(for_scp=True)[2:4] == ["-P", "2222"]

    def test_probe_exit_codes(self, monkeypatch) -> None:
        fake = FakeRun((0, "", ""), (1, "", ""), (255, "", "ssh: connect to host: Connection refused"))
        monkeypatch.setattr(backends_mod.subprocess, "run", fake)
        backend = self.make()

        assert backend.probe("base", FP) is True
        assert backend.probe("base", FP) is False
        with pytest.raises(BackendError) as exc:
            backend.probe("base", FP)
        assert exc.value.transient is True
        assert fake.calls[0][-2:] == ["ci@cache.example", f"test -f /srv/ckpt/base/{FP}/{MANIFEST_FILE}"]

    def test_upload_creates_dir_then_copies_archive_first(self, monkeypatch, tmp_path: Path) -> None:
        fake = FakeRun()
        monkeypatch.setattr(backends_mod.subprocess, "run", fake)
        manifest, archive = object_files(tmp_path)

        self.make().upload("base", FP, manifest, archive)

        assert fake.calls[0][0] == "ssh"
        assert fake.calls[0][-1] == f"mkdir -p /srv/ckpt/base/{FP}"
        assert [c[0] for c in fake.calls[1:]] == ["scp", "scp"]
        assert fake.calls[1][-1] == f"ci@cache.example:/srv/ckpt/base/{FP}/{ARCHIVE_FILE}"
        assert fake.calls[2][-1] == f"ci@cache.example:/srv/ckpt/base/{FP}/{MANIFEST_FILE}"

    def test_permission_denied_is_permanent(self, monkeypatch) -> None:
        monkeypatch.setattr(
            backends_mod.subprocess, "run", FakeRun((255, "", "ci@cache.example: Permission denied (publickey)."))
        )
        with pytest.raises(BackendError) as exc:
            self.make().probe("base", FP)
        assert exc.value.transient is False

    def test_list(self, monkeypatch) -> None:
        out = f"/srv/ckpt/base/{FP}\n/srv/ckpt/base/{'cd' * 32}/\n"
        monkeypatch.setattr(backends_mod.subprocess, "run", FakeRun((0, out, "")))
        assert self.make().list_fingerprints("base") == [FP, "cd" * 32]


# ---------------------------------------------------------------------------
# References and factory
# ---------------------------------------------------------------------------


class TestBackendRefs:
    def backends(self) -> BackendsConfig:
        return BackendsConfig.model_validate({
            "http": {"cache": {"base_url": "http://cache.invalid"}, "shared": {"base_url": "http://x.invalid"}},
            "s3": {"shared": {"bucket": "b"}},
        })

    def test_qualified_and_bare_refs(self) -> None:
        cfg = self.backends()
        assert resolve_backend_ref(cfg, "http:cache") == ("http", "cache")
        assert resolve_backend_ref(cfg, "cache") == ("http", "cache")
        assert resolve_backend_ref(cfg, "s3:shared") == ("s3", "shared")

    def test_ambiguous_bare_ref(self) -> None:
        with pytest.raises(ValueError) as exc:
            resolve_backend_ref(self.backends(), "shared")
        assert "http:shared" in str(exc.value) and "s3:shared" in str(exc.value)

    def test_unknown_refs(self) -> None:
        with pytest.raises(ValueError):
            resolve_backend_ref(self.backends(), "ftp:cache")
        with pytest.raises(ValueError):
            resolve_backend_ref(self.backends(), "http:nope")
        with pytest.raises(ValueError):
            resolve_backend_ref(self.backends(), "nope")

    def test_create_backend(self) -> None:
        backend = create_backend(self.backends(), "cache")
        assert isinstance(backend, HttpBackend)
        assert backend.ref == "http:cache"
        with pytest.raises(CheckpointConfigError):
            create_backend(self.backends(), "shared")

    def test_resolve_field(self, monkeypatch) -> None:
        monkeypatch.setenv("SOME_VALUE", "from-env")
        assert resolve_field("literal", "SOME_VALUE") == "literal"
        assert resolve_field("  ", "SOME_VALUE") == "from-env"
        assert resolve_field(None, None) is None
