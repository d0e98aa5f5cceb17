# checkpoints/backends.py
from __future__ import annotations

import json
import os
import shlex
import subprocess
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence

import httpx

from ..errors import BackendError, CheckpointConfigError
from .config import (
    BackendsConfig,
    HttpBackendConfig,
    S3BackendConfig,
    SshBackendConfig,
    resolve_backend_ref,
)

MANIFEST_FILE = "manifest.json"
ARCHIVE_FILE = "payload.tar"

COMMAND_TIMEOUT_SECS = 600
_CHUNK = 1024 * 1024

_NOT_FOUND_MARKERS = ("not found", "404", "no such", "does not exist", "could not be found")
_S3_PERMANENT_MARKERS = (
    "accessdenied",
    "access denied",
    "invalidaccesskeyid",
    "signaturedoesnotmatch",
    "nosuchbucket",
    "unable to locate credentials",
    "(403)",
)
_SSH_PERMANENT_MARKERS = ("permission denied", "host key verification failed", "could not resolve hostname")


def is_not_found_text(msg: str) -> bool:
    m = msg.lower()
    return any(marker in m for marker in _NOT_FOUND_MARKERS)


def resolve_field(literal: Optional[str], env_key: Optional[str]) -> Optional[str]:
    """Literal value wins; otherwise read the named environment variable. Blanks count as unset."""
    if literal is not None and literal.strip():
        return literal.strip()
    if env_key and env_key.strip():
        value = os.environ.get(env_key.strip(), "").strip()
        return value or None
    return None


def _required_field(where: str, literal: Optional[str], env_key: Optional[str]) -> str:
    value = resolve_field(literal, env_key)
    if value is None:
        if env_key and env_key.strip():
            raise CheckpointConfigError(f"{where} is empty (also checked env var '{env_key.strip()}')")
        raise CheckpointConfigError(f"{where} is empty")
    return value


# ---------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------

class CheckpointBackend:
    """
    Remote storage for checkpoint objects.

    Objects are addressed by (point id, fingerprint) and consist of
    manifest.json plus payload.tar. Uploads write the archive first and the
    manifest last, so a visible manifest means a complete object.
    """

    kind = "base"

    def __init__(self, name: str):
        self.name = name

    @property
    def ref(self) -> str:
        return f"{self.kind}:{self.name}"

    def probe(self, point_id: str, fingerprint: str) -> bool:
        raise NotImplementedError

    def download(self, point_id: str, fingerprint: str, dest_dir: Path) -> None:
        """Write manifest.json and payload.tar for the object into dest_dir."""
        raise NotImplementedError

    def upload(self, point_id: str, fingerprint: str, manifest: Path, archive: Path) -> None:
        raise NotImplementedError

    def list_fingerprints(self, point_id: str) -> List[str]:
        raise NotImplementedError


# ---------------------------------------------------------------------
# Subprocess plumbing (aws / ssh / scp)
# ---------------------------------------------------------------------

def _run(argv: Sequence[str], *, env: Optional[Dict[str, str]] = None) -> subprocess.CompletedProcess:
    full_env = os.environ.copy()
    full_env.update(env or {})
    try:
        return subprocess.run(
            list(argv),
            env=full_env,
            text=True,
            capture_output=True,
            check=False,
            timeout=COMMAND_TIMEOUT_SECS,
        )
    except FileNotFoundError as e:
        raise BackendError(f"'{argv[0]}' not found on PATH", transient=False) from e
    except subprocess.TimeoutExpired as e:
        raise BackendError(f"'{argv[0]}' timed out after {COMMAND_TIMEOUT_SECS}s", transient=True) from e


def _summary(proc: subprocess.CompletedProcess) -> str:
    err = (proc.stderr or "").strip()
    if err:
        return err
    out = (proc.stdout or "").strip()
    if out:
        return out
    return f"exit status {proc.returncode}"


# ---------------------------------------------------------------------
# S3 (via the aws CLI)
# ---------------------------------------------------------------------

_AWS_ENV_FIELDS = (
    ("AWS_ACCESS_KEY_ID", "aws_access_key_id_env"),
    ("AWS_SECRET_ACCESS_KEY", "aws_secret_access_key_env"),
    ("AWS_SESSION_TOKEN", "aws_session_token_env"),
    ("AWS_SHARED_CREDENTIALS_FILE", "aws_shared_credentials_file_env"),
    ("AWS_CONFIG_FILE", "aws_config_file_env"),
    ("AWS_CA_BUNDLE", "aws_ca_bundle_env"),
)


class S3Backend(CheckpointBackend):
    kind = "s3"

    def __init__(self, name: str, cfg: S3BackendConfig):
        super().__init__(name)
        where = f"checkpoints.backends.s3.{name}"
        self.bucket = _required_field(f"{where}.bucket", cfg.bucket, cfg.bucket_env)
        self.region = resolve_field(cfg.region, cfg.region_env)
        self.prefix = (resolve_field(cfg.prefix, cfg.prefix_env) or "").strip("/")
        self.endpoint_url = resolve_field(cfg.endpoint_url, cfg.endpoint_url_env)
        self.profile = resolve_field(cfg.profile, cfg.profile_env)

        self.env: Dict[str, str] = {}
        for var, field_name in _AWS_ENV_FIELDS:
            value = resolve_field(None, getattr(cfg, field_name))
            if value is not None:
                self.env[var] = value

    def key_prefix(self, point_id: str, fingerprint: str) -> str:
        parts = [p for p in (self.prefix, point_id, fingerprint) if p]
        return "/".join(parts)

    def _url(self, point_id: str, fingerprint: str, filename: str) -> str:
        return f"s3://{self.bucket}/{self.key_prefix(point_id, fingerprint)}/{filename}"

    def _aws(self, *args: str) -> List[str]:
        argv = ["aws"]
        if self.profile:
            argv += ["--profile", self.profile]
        if self.region:
            argv += ["--region", self.region]
        if self.endpoint_url:
            argv += ["--endpoint-url", self.endpoint_url]
        argv += list(args)
        return argv

    def _fail(self, action: str, proc: subprocess.CompletedProcess) -> BackendError:
        msg = _summary(proc)
        permanent = any(m in msg.lower() for m in _S3_PERMANENT_MARKERS)
        return BackendError(f"S3 {action} failed: {msg}", transient=not permanent)

    def probe(self, point_id: str, fingerprint: str) -> bool:
        key = f"{self.key_prefix(point_id, fingerprint)}/{MANIFEST_FILE}"
        proc = _run(self._aws("s3api", "head-object", "--bucket", self.bucket, "--key", key), env=self.env)
        if proc.returncode == 0:
            return True
        if is_not_found_text(_summary(proc)):
            return False
        raise self._fail("probe", proc)

    def download(self, point_id: str, fingerprint: str, dest_dir: Path) -> None:
        for filename in (MANIFEST_FILE, ARCHIVE_FILE):
            proc = _run(
                self._aws("s3", "cp", "--only-show-errors", self._url(point_id, fingerprint, filename), str(dest_dir / filename)),
                env=self.env,
            )
            if proc.returncode != 0:
                if is_not_found_text(_summary(proc)):
                    raise BackendError(f"S3 object {self._url(point_id, fingerprint, filename)} not found", transient=False)
                raise self._fail("download", proc)

    def upload(self, point_id: str, fingerprint: str, manifest: Path, archive: Path) -> None:
        for src, filename in ((archive, ARCHIVE_FILE), (manifest, MANIFEST_FILE)):
            proc = _run(
                self._aws("s3", "cp", "--only-show-errors", str(src), self._url(point_id, fingerprint, filename)),
                env=self.env,
            )
            if proc.returncode != 0:
                raise self._fail("upload", proc)

    def list_fingerprints(self, point_id: str) -> List[str]:
        prefix = f"{self.prefix}/{point_id}/" if self.prefix else f"{point_id}/"
        proc = _run(
            self._aws("s3api", "list-objects-v2", "--bucket", self.bucket, "--prefix", prefix, "--output", "json"),
            env=self.env,
        )
        if proc.returncode != 0:
            if is_not_found_text(_summary(proc)):
                return []
            raise self._fail("list", proc)
        body = (proc.stdout or "").strip()
        if not body:
            return []
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise BackendError(f"S3 list returned invalid JSON: {e}", transient=True) from e

        found = set()
        for item in data.get("Contents") or []:
            key = item.get("Key", "")
            if not key.startswith(prefix) or not key.endswith(f"/{MANIFEST_FILE}"):
                continue
            fp = key[len(prefix):].split("/", 1)[0]
            if fp:
                found.add(fp)
        return sorted(found)


# ---------------------------------------------------------------------
# HTTP (base URL + bearer token)
# ---------------------------------------------------------------------

def _iter_file(path: Path) -> Iterator[bytes]:
    with path.open("rb") as f:
        while True:
            chunk = f.read(_CHUNK)
            if not chunk:
                break
            yield chunk


class HttpBackend(CheckpointBackend):
    """
    Layout: <base>/<point>/<fingerprint>/manifest.json|payload.tar

    Listing: GET <base>/<point>/?list=1 returning a JSON array or
    {"fingerprints": [...]}.
    """

    kind = "http"

    def __init__(self, name: str, cfg: HttpBackendConfig, *, client: httpx.Client | None = None):
        super().__init__(name)
        self.base_url = _required_field(
            f"checkpoints.backends.http.{name}.base_url", cfg.base_url, cfg.base_url_env
        ).rstrip("/")
        self.token = resolve_field(cfg.token, cfg.token_env)
        self._client = client or httpx.Client(timeout=cfg.timeout_secs, follow_redirects=True)

    def _headers(self) -> Dict[str, str]:
        if self.token:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def _url(self, point_id: str, fingerprint: str, filename: str) -> str:
        return f"{self.base_url}/{point_id}/{fingerprint}/{filename}"

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise BackendError(f"HTTP {method} {url} timed out", transient=True) from e
        except httpx.TransportError as e:
            raise BackendError(f"HTTP {method} {url} failed: {e}", transient=True) from e

    @staticmethod
    def _fail(action: str, resp: httpx.Response) -> BackendError:
        code = resp.status_code
        transient = code >= 500 or code in (408, 429)
        detail = resp.text.strip()[:200] if resp.content else ""
        msg = f"HTTP {action} failed: {code} {resp.reason_phrase}"
        if detail:
            msg += f" ({detail})"
        return BackendError(msg, transient=transient)

    def probe(self, point_id: str, fingerprint: str) -> bool:
        resp = self._request("HEAD", self._url(point_id, fingerprint, MANIFEST_FILE))
        if resp.status_code == 404:
            return False
        if resp.is_success:
            return True
        raise self._fail("probe", resp)

    def download(self, point_id: str, fingerprint: str, dest_dir: Path) -> None:
        for filename in (MANIFEST_FILE, ARCHIVE_FILE):
            url = self._url(point_id, fingerprint, filename)
            try:
                with self._client.stream("GET", url, headers=self._headers()) as resp:
                    if resp.status_code == 404:
                        raise BackendError(f"HTTP object {url} not found", transient=False)
                    if not resp.is_success:
                        resp.read()
                        raise self._fail("download", resp)
                    with (dest_dir / filename).open("wb") as f:
                        for chunk in resp.iter_bytes(_CHUNK):
                            f.write(chunk)
            except httpx.TimeoutException as e:
                raise BackendError(f"HTTP GET {url} timed out", transient=True) from e
            except httpx.TransportError as e:
                raise BackendError(f"HTTP GET {url} failed: {e}", transient=True) from e

    def upload(self, point_id: str, fingerprint: str, manifest: Path, archive: Path) -> None:
        for src, filename, ctype in (
            (archive, ARCHIVE_FILE, "application/x-tar"),
            (manifest, MANIFEST_FILE, "application/json"),
        ):
            resp = self._put(point_id, fingerprint, filename, src, ctype)
            if not resp.is_success:
                raise self._fail("upload", resp)

    def _put(self, point_id: str, fingerprint: str, filename: str, src: Path, ctype: str) -> httpx.Response:
        url = self._url(point_id, fingerprint, filename)
        headers = {**self._headers(), "Content-Type": ctype}
        try:
            return self._client.put(url, content=_iter_file(src), headers=headers)
        except httpx.TimeoutException as e:
            raise BackendError(f"HTTP PUT {url} timed out", transient=True) from e
        except httpx.TransportError as e:
            raise BackendError(f"HTTP PUT {url} failed: {e}", transient=True) from e

    def list_fingerprints(self, point_id: str) -> List[str]:
        resp = self._request("GET", f"{self.base_url}/{point_id}/", params={"list": "1"})
        if resp.status_code == 404:
            return []
        if not resp.is_success:
            raise self._fail("list", resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendError(f"HTTP list returned invalid JSON: {e}", transient=True) from e
        if isinstance(data, dict):
            data = data.get("fingerprints", [])
        if not isinstance(data, list):
            raise BackendError("HTTP list response must be an array or {\"fingerprints\": [...]}", transient=False)
        return sorted({str(x).strip() for x in data if str(x).strip()})


# ---------------------------------------------------------------------
# SSH (ssh + scp)
# ---------------------------------------------------------------------

class SshBackend(CheckpointBackend):
    kind = "ssh"

    def __init__(self, name: str, cfg: SshBackendConfig):
        super().__init__(name)
        where = f"checkpoints.backends.ssh.{name}"
        target = _required_field(f"{where}.target", cfg.target, cfg.target_env)
        host, sep, base_path = target.partition(":")
        if not sep or not host.strip() or not base_path.startswith("/"):
            raise CheckpointConfigError(f"{where}.target must look like user@host:/absolute/path, got '{target}'")
        self.host = host.strip()
        self.base_path = base_path.rstrip("/") or "/"

        port_text = str(cfg.port) if cfg.port is not None else resolve_field(None, cfg.port_env)
        self.port: Optional[int] = None
        if port_text:
            try:
                self.port = int(port_text)
            except ValueError as e:
                raise CheckpointConfigError(f"{where}.port is not a number: '{port_text}'") from e
        self.identity_file = resolve_field(cfg.identity_file, cfg.identity_file_env)
        self.known_hosts_file = resolve_field(cfg.known_hosts_file, cfg.known_hosts_file_env)
        self.strict_host_key_checking = cfg.strict_host_key_checking

    def options(self, *, for_scp: bool) -> List[str]:
        opts = ["-o", "BatchMode=yes"]
        if self.port is not None:
            opts += ["-P" if for_scp else "-p", str(self.port)]
        if self.identity_file:
            opts += ["-i", self.identity_file]
        if self.known_hosts_file:
            opts += ["-o", f"UserKnownHostsFile={self.known_hosts_file}"]
        if not self.strict_host_key_checking:
            opts += ["-o", "StrictHostKeyChecking=no"]
            if not self.known_hosts_file:
                opts += ["-o", "UserKnownHostsFile=/dev/null"]
        return opts

    def remote_dir(self, point_id: str, fingerprint: str) -> str:
        return f"{self.base_path.rstrip('/')}/{point_id}/{fingerprint}"

    def _ssh(self, command: str) -> subprocess.CompletedProcess:
        return _run(["ssh", *self.options(for_scp=False), self.host, command])

    def _scp(self, src: str, dst: str) -> subprocess.CompletedProcess:
        return _run(["scp", "-q", *self.options(for_scp=True), src, dst])

    def _fail(self, action: str, proc: subprocess.CompletedProcess) -> BackendError:
        msg = _summary(proc)
        permanent = any(m in msg.lower() for m in _SSH_PERMANENT_MARKERS)
        # 255 is ssh's own connection failure status
        transient = proc.returncode == 255 and not permanent
        return BackendError(f"SSH {action} failed: {msg}", transient=transient)

    def probe(self, point_id: str, fingerprint: str) -> bool:
        manifest = f"{self.remote_dir(point_id, fingerprint)}/{MANIFEST_FILE}"
        proc = self._ssh(f"test -f {shlex.quote(manifest)}")
        if proc.returncode == 0:
            return True
        if proc.returncode == 1:
            return False
        raise self._fail("probe", proc)

    def download(self, point_id: str, fingerprint: str, dest_dir: Path) -> None:
        remote = self.remote_dir(point_id, fingerprint)
        for filename in (MANIFEST_FILE, ARCHIVE_FILE):
            proc = self._scp(f"{self.host}:{remote}/{filename}", str(dest_dir / filename))
            if proc.returncode != 0:
                if is_not_found_text(_summary(proc)):
                    raise BackendError(f"SSH object {remote}/{filename} not found", transient=False)
                raise self._fail("download", proc)

    def upload(self, point_id: str, fingerprint: str, manifest: Path, archive: Path) -> None:
        remote = self.remote_dir(point_id, fingerprint)
        proc = self._ssh(f"mkdir -p {shlex.quote(remote)}")
        if proc.returncode != 0:
            raise self._fail("mkdir", proc)
        for src, filename in ((archive, ARCHIVE_FILE), (manifest, MANIFEST_FILE)):
            proc = self._scp(str(src), f"{self.host}:{remote}/{filename}")
            if proc.returncode != 0:
                raise self._fail("upload", proc)

    def list_fingerprints(self, point_id: str) -> List[str]:
        root = shlex.quote(f"{self.base_path.rstrip('/')}/{point_id}")
        proc = self._ssh(f"if [ -d {root} ]; then find {root} -mindepth 1 -maxdepth 1 -type d -print; fi")
        if proc.returncode != 0:
            if is_not_found_text(_summary(proc)):
                return []
            raise self._fail("list", proc)
        found = set()
        for line in (proc.stdout or "").splitlines():
            name = line.strip().rstrip("/").rsplit("/", 1)[-1]
            if name:
                found.add(name)
        return sorted(found)


# ---------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------

def create_backend(backends: BackendsConfig, ref: str) -> CheckpointBackend:
    """Build the backend client for a `kind:name` or bare-name reference."""
    try:
        kind, name = resolve_backend_ref(backends, ref)
    except ValueError as e:
        raise CheckpointConfigError(str(e)) from e
    if kind == "s3":
        return S3Backend(name, backends.s3[name])
    if kind == "http":
        return HttpBackend(name, backends.http[name])
    return SshBackend(name, backends.ssh[name])
