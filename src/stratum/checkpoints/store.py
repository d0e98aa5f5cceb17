# checkpoints/store.py
from __future__ import annotations

import contextlib
import hashlib
import json
import os
import shutil
import tarfile
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from ..config import ConfigDoc
from ..errors import BackendError, CaptureError, CheckpointConfigError, ConfigError, RestoreError, StoreError
from ..workspace import WorkspacePaths, load_paths
from .backends import ARCHIVE_FILE, MANIFEST_FILE, CheckpointBackend, create_backend
from .config import (
    CheckpointPoint,
    CheckpointsConfig,
    TrustMode,
    UploadPolicy,
    UsePolicy,
    load_checkpoints_config,
    validate_against_plan,
)
from .fingerprint import (
    changed_paths,
    compute_fingerprint,
    compute_lineage,
    describe_changes,
    selected_inputs,
)

if TYPE_CHECKING:
    from ..planner import Plan

# ---------------------------------------------------------------------
# On-disk layout (root = <build_dir>/checkpoints)
# ---------------------------------------------------------------------
#   index.json
#   upload-queue.json
#   .store.lock
#   points/<point-id>/restored.json
#   points/<point-id>/<fingerprint>/manifest.json
#   points/<point-id>/<fingerprint>/payload.tar
#   points/<point-id>/<fingerprint>/payload/<target-name>/...
#
# Every write to index/queue/manifest goes through _write_json_atomic while
# holding the store lock.
# ---------------------------------------------------------------------

INDEX_VERSION = 1
MANIFEST_VERSION = 1
QUEUE_VERSION = 1

INDEX_FILE = "index.json"
QUEUE_FILE = "upload-queue.json"
LOCK_FILE = ".store.lock"
RESTORED_MARKER = "restored.json"
PAYLOAD_DIR = "payload"

LOCK_POLL_SECS = 0.05
LOCK_TIMEOUT_SECS = 15.0
READ_ATTEMPTS = 3
READ_BACKOFF_SECS = 0.05


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _tmp_sibling(path: Path) -> Path:
    return path.with_name(f".{path.name}.tmp.{os.getpid()}.{time.time_ns()}")


def _write_json_atomic(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = _tmp_sibling(path)
    try:
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(obj, f, indent=2, sort_keys=True, ensure_ascii=False)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        tmp.replace(path)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)


def _read_json(path: Path, default: Any) -> Any:
    """Read a store file, retrying briefly when it looks torn."""
    last_error: Exception | None = None
    for attempt in range(READ_ATTEMPTS):
        if not path.exists():
            return default
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            last_error = e
            time.sleep(READ_BACKOFF_SECS * (2 ** attempt))
    raise StoreError(f"{path} is unreadable: {last_error}")


def _remove_path(p: Path) -> None:
    if p.is_symlink() or p.is_file():
        p.unlink()
    elif p.is_dir():
        shutil.rmtree(p)


def _copy_path(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    if src.is_dir() and not src.is_symlink():
        shutil.copytree(src, dst, symlinks=True)
    else:
        shutil.copy2(src, dst, follow_symlinks=False)


def _write_archive(src_dir: Path, archive: Path) -> None:
    """Tar src_dir (as `payload/...`) with sorted members and symlinks kept as links."""
    base = src_dir.parent
    with tarfile.open(str(archive), mode="w") as tar:
        tar.add(str(src_dir), arcname=src_dir.name, recursive=False)
        for dirpath, dirnames, filenames in os.walk(src_dir):
            dirnames.sort()
            for name in sorted(dirnames + filenames):
                p = Path(dirpath) / name
                tar.add(str(p), arcname=p.relative_to(base).as_posix(), recursive=False)


def _extract_archive(archive: Path, dest: Path) -> None:
    with tarfile.open(str(archive), mode="r") as tar:
        tar.extractall(path=str(dest), filter="tar")


# ---------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------

@dataclass
class CheckpointStatus:
    id: str
    anchor_task: str
    use_policy: UsePolicy
    upload_policy: UploadPolicy
    backend: Optional[str]
    fingerprint: str
    exists: bool
    remote_exists: Optional[bool]
    remote_error: Optional[str]
    will_restore: bool
    will_download: bool
    will_rebuild: bool
    will_upload: bool
    pending_upload: bool
    reason: str

    @property
    def required_unavailable(self) -> bool:
        return self.use_policy == UsePolicy.REQUIRED and not self.will_restore


@dataclass
class CheckpointInventory:
    id: str
    anchor_task: str
    backend: Optional[str]
    current_fingerprint: str
    local_fingerprints: List[str]
    local_latest: Optional[str]
    remote_fingerprints: List[str] = field(default_factory=list)
    remote_error: Optional[str] = None


@dataclass
class UploadEntry:
    id: str
    anchor_task: str
    fingerprint: str
    backend: str
    object_rel_dir: str
    status: str = "pending"  # pending | failed | done
    attempts: int = 0
    last_error: Optional[str] = None
    transient: bool = True
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadEntry":
        return cls(
            id=data["id"],
            anchor_task=data.get("anchor_task", ""),
            fingerprint=data["fingerprint"],
            backend=data["backend"],
            object_rel_dir=data.get("object_rel_dir", ""),
            status=data.get("status", "pending"),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("last_error"),
            transient=bool(data.get("transient", True)),
            updated_at=data.get("updated_at", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "anchor_task": self.anchor_task,
            "fingerprint": self.fingerprint,
            "backend": self.backend,
            "object_rel_dir": self.object_rel_dir,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "transient": self.transient,
            "updated_at": self.updated_at,
        }

    def key(self) -> Tuple[str, str, str]:
        return (self.id, self.fingerprint, self.backend)


@dataclass
class RetryReport:
    attempted: int = 0
    uploaded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class CaptureResult:
    fingerprint: str
    uploaded: bool = False
    queued: bool = False
    upload_error: Optional[str] = None


# ---------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------

class CheckpointStore:
    """
    File-based checkpoint store with optional remote backends.

    Owns index.json, upload-queue.json and every point's manifests and
    payloads. Callers use decide/restore/capture/retry_uploads/list and
    never touch these files directly.
    """

    def __init__(
        self,
        root: str | Path,
        cfg: CheckpointsConfig,
        *,
        doc: ConfigDoc,
        workspace: WorkspacePaths,
        backends: Optional[Mapping[str, CheckpointBackend]] = None,
    ):
        self.root = Path(root)
        self.cfg = cfg
        self.doc = doc
        self.workspace = workspace
        self._points: Dict[str, CheckpointPoint] = {p.id: p for p in cfg.resolved_points()}
        self._backends: Dict[str, CheckpointBackend] = dict(backends or {})
        self._mutex = threading.RLock()
        self._lock_depth = 0

    @classmethod
    def from_doc(
        cls,
        doc: ConfigDoc,
        *,
        workspace: WorkspacePaths | None = None,
        backends: Optional[Mapping[str, CheckpointBackend]] = None,
    ) -> "CheckpointStore":
        cfg = load_checkpoints_config(doc)
        ws = workspace or load_paths(doc)
        return cls(ws.build_dir / "checkpoints", cfg, doc=doc, workspace=ws, backends=backends)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    @property
    def queue_path(self) -> Path:
        if self.cfg.queue_file:
            q = Path(self.cfg.queue_file)
            return q if q.is_absolute() else self.root / q
        return self.root / QUEUE_FILE

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_FILE

    def point_dir(self, point_id: str) -> Path:
        return self.root / "points" / point_id

    def object_dir(self, point_id: str, fingerprint: str) -> Path:
        return self.point_dir(point_id) / fingerprint

    def manifest_path(self, point_id: str, fingerprint: str) -> Path:
        return self.object_dir(point_id, fingerprint) / MANIFEST_FILE

    def archive_path(self, point_id: str, fingerprint: str) -> Path:
        return self.object_dir(point_id, fingerprint) / ARCHIVE_FILE

    def restored_marker(self, point_id: str) -> Path:
        return self.point_dir(point_id) / RESTORED_MARKER

    # ------------------------------------------------------------------
    # Lock
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def locked(self) -> Iterator[None]:
        """
        Hold the store-wide lock file. Reentrant within this store instance;
        other threads wait on the mutex, other processes poll the file.
        """
        with self._mutex:
            if self._lock_depth == 0:
                self._acquire_file_lock()
            self._lock_depth += 1
            try:
                yield
            finally:
                self._lock_depth -= 1
                if self._lock_depth == 0:
                    self.lock_path.unlink(missing_ok=True)

    def _acquire_file_lock(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + LOCK_TIMEOUT_SECS
        while True:
            try:
                fd = os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    raise StoreError(
                        f"timed out after {LOCK_TIMEOUT_SECS:.0f}s waiting for {self.lock_path} "
                        "(remove it if no other run is active)"
                    )
                time.sleep(LOCK_POLL_SECS)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n")
            return

    # ------------------------------------------------------------------
    # Index / queue
    # ------------------------------------------------------------------

    def load_index(self) -> Dict[str, Any]:
        data = _read_json(self.index_path, None)
        if not isinstance(data, dict) or data.get("version") != INDEX_VERSION:
            return {"version": INDEX_VERSION, "points": {}}
        data.setdefault("points", {})
        return data

    def _update_index(self, mutate: Callable[[Dict[str, Any]], None]) -> None:
        with self.locked():
            index = self.load_index()
            mutate(index)
            _write_json_atomic(self.index_path, index)

    def _index_fingerprint(self, index: Dict[str, Any], point: CheckpointPoint, fingerprint: str) -> Dict[str, Any]:
        entry = index["points"].setdefault(point.id, {"anchor_task": point.anchor_task, "fingerprints": {}})
        entry["anchor_task"] = point.anchor_task
        fps = entry.setdefault("fingerprints", {})
        return fps.setdefault(
            fingerprint,
            {
                "local": False,
                "remote": None,
                "manifest_rel": f"points/{point.id}/{fingerprint}/{MANIFEST_FILE}",
                "updated_at": _now(),
            },
        )

    def _record_local(self, point: CheckpointPoint, fingerprint: str) -> None:
        def mutate(index: Dict[str, Any]) -> None:
            fp_entry = self._index_fingerprint(index, point, fingerprint)
            fp_entry["local"] = True
            fp_entry["updated_at"] = _now()
            point_entry = index["points"][point.id]
            point_entry["latest_fingerprint"] = fingerprint
            point_entry["updated_at"] = fp_entry["updated_at"]

        self._update_index(mutate)

    def _record_remote(self, point: CheckpointPoint, fingerprint: str, exists: bool) -> None:
        def mutate(index: Dict[str, Any]) -> None:
            fp_entry = self._index_fingerprint(index, point, fingerprint)
            fp_entry["remote"] = exists
            fp_entry["updated_at"] = _now()

        self._update_index(mutate)

    def load_queue(self) -> List[UploadEntry]:
        data = _read_json(self.queue_path, None)
        if not isinstance(data, dict):
            return []
        return [UploadEntry.from_dict(e) for e in data.get("entries", [])]

    def _save_queue(self, entries: List[UploadEntry]) -> None:
        _write_json_atomic(self.queue_path, {"version": QUEUE_VERSION, "entries": [e.to_dict() for e in entries]})

    def _upsert_queue_entry(self, entry: UploadEntry, *, on_existing: Callable[[UploadEntry], None]) -> UploadEntry:
        with self.locked():
            entries = self.load_queue()
            for existing in entries:
                if existing.key() == entry.key():
                    on_existing(existing)
                    self._save_queue(entries)
                    return existing
            entries.append(entry)
            self._save_queue(entries)
            return entry

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self.cfg.enabled

    def points(self) -> List[CheckpointPoint]:
        return list(self._points.values())

    def point(self, point_id: str) -> CheckpointPoint:
        try:
            return self._points[point_id]
        except KeyError:
            raise CheckpointConfigError(f"unknown checkpoint '{point_id}'") from None

    def point_for_anchor(self, task_id: str) -> Optional[CheckpointPoint]:
        for p in self._points.values():
            if p.anchor_task == task_id:
                return p
        return None

    def validate_against_plan(self, plan: "Plan") -> None:
        """Check anchors against the plan and resolve every target path before any task runs."""
        validate_against_plan(self.cfg, plan)
        if not self.enabled:
            return
        for p in self.points():
            for name, raw in p.targets.items():
                try:
                    self.workspace.resolve_config_path(raw)
                except ConfigError as e:
                    raise CheckpointConfigError(f"checkpoint '{p.id}' target '{name}': {e}") from e

    def fingerprint(self, point: CheckpointPoint) -> Tuple[str, Dict[str, Any]]:
        inputs = selected_inputs(self.doc, point.fingerprint_from)
        return compute_fingerprint(point.id, point.anchor_task, inputs), inputs

    def backend_for(self, ref: Optional[str]) -> Optional[CheckpointBackend]:
        if ref is None:
            return None
        if ref not in self._backends:
            self._backends[ref] = create_backend(self.cfg.backends, ref)
        return self._backends[ref]

    # ------------------------------------------------------------------
    # Decide / status
    # ------------------------------------------------------------------

    def _check_local(self, point: CheckpointPoint, fingerprint: str) -> Tuple[bool, str]:
        manifest_path = self.manifest_path(point.id, fingerprint)
        if not manifest_path.exists():
            return False, "missing"
        try:
            manifest = _read_json(manifest_path, None)
        except StoreError:
            return False, "manifest_unreadable"
        if not isinstance(manifest, dict):
            return False, "manifest_unreadable"
        if point.trust_mode == TrustMode.PERMISSIVE:
            return True, "hit_permissive"
        if (
            manifest.get("id") != point.id
            or manifest.get("anchor_task") != point.anchor_task
            or manifest.get("fingerprint") != fingerprint
            or manifest.get("lineage") != compute_lineage(point.anchor_task, fingerprint)
        ):
            return False, "lineage_mismatch"
        return True, "hit"

    def _latest_inputs(self, point: CheckpointPoint) -> Optional[Dict[str, Any]]:
        entry = self.load_index()["points"].get(point.id) or {}
        latest = entry.get("latest_fingerprint")
        if not latest:
            return None
        try:
            manifest = _read_json(self.manifest_path(point.id, latest), None)
        except StoreError:
            return None
        if not isinstance(manifest, dict):
            return None
        return manifest.get("fingerprint_inputs")

    def _pending_upload(self, point_id: str, fingerprint: str) -> bool:
        return any(
            e.id == point_id and e.fingerprint == fingerprint and e.status != "done"
            for e in self.load_queue()
        )

    def decide(self, point: CheckpointPoint, *, record: bool = True) -> CheckpointStatus:
        """
        Decide restore vs rebuild for one point without executing anything.

        With record=True a remote probe result is cached in the index.
        """
        fingerprint, inputs = self.fingerprint(point)
        exists, local_reason = self._check_local(point, fingerprint)

        remote_exists: Optional[bool] = None
        remote_error: Optional[str] = None

        if not self.enabled:
            will_restore = False
            reason = "disabled"
        elif point.use_policy == UsePolicy.OFF:
            will_restore = False
            reason = "policy_off"
        else:
            if not exists and point.backend:
                try:
                    backend = self.backend_for(point.backend)
                    remote_exists = backend.probe(point.id, fingerprint)
                except (BackendError, CheckpointConfigError) as e:
                    remote_error = str(e)
                if record and remote_exists is not None:
                    self._record_remote(point, fingerprint, remote_exists)

            will_restore = exists or bool(remote_exists)
            if exists:
                reason = local_reason
            elif remote_exists:
                reason = "remote_hit"
            elif remote_error:
                reason = f"remote_probe_error: {remote_error}"
            elif local_reason != "missing":
                reason = local_reason
            else:
                previous = self._latest_inputs(point)
                changed = changed_paths(previous, inputs) if previous is not None else []
                if changed:
                    reason = describe_changes(changed)
                elif point.backend:
                    reason = "remote_missing"
                else:
                    reason = "missing"
            if point.use_policy == UsePolicy.REQUIRED and not will_restore:
                reason = f"required_missing ({reason})"

        will_rebuild = not will_restore
        return CheckpointStatus(
            id=point.id,
            anchor_task=point.anchor_task,
            use_policy=point.use_policy,
            upload_policy=point.upload_policy,
            backend=point.backend,
            fingerprint=fingerprint,
            exists=exists,
            remote_exists=remote_exists,
            remote_error=remote_error,
            will_restore=will_restore,
            will_download=will_restore and not exists,
            will_rebuild=will_rebuild,
            will_upload=(
                self.enabled
                and will_rebuild
                and point.upload_policy != UploadPolicy.OFF
                and point.backend is not None
            ),
            pending_upload=self._pending_upload(point.id, fingerprint),
            reason=reason,
        )

    def status(self, *, record: bool = True) -> List[CheckpointStatus]:
        return [self.decide(p, record=record) for p in self.points()]

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _download(self, point: CheckpointPoint, fingerprint: str) -> None:
        backend = self.backend_for(point.backend) if point.backend else None
        if backend is None:
            raise RestoreError(f"checkpoint {point.id}@{fingerprint[:12]} is not available locally and no backend is configured")

        obj_dir = self.object_dir(point.id, fingerprint)
        staging = _tmp_sibling(obj_dir)
        staging.mkdir(parents=True)
        try:
            backend.download(point.id, fingerprint, staging)
            with self.locked():
                if obj_dir.exists():
                    shutil.rmtree(obj_dir)
                staging.rename(obj_dir)
        except BackendError as e:
            raise RestoreError(f"download of {point.id}@{fingerprint[:12]} from {backend.ref} failed: {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        self._record_local(point, fingerprint)
        self._record_remote(point, fingerprint, True)

    def _verify(self, point: CheckpointPoint, fingerprint: str, manifest: Dict[str, Any]) -> None:
        expected = {
            "id": point.id,
            "anchor_task": point.anchor_task,
            "fingerprint": fingerprint,
            "lineage": compute_lineage(point.anchor_task, fingerprint),
        }
        for key, want in expected.items():
            if manifest.get(key) != want:
                raise RestoreError(f"manifest {key} mismatch for {point.id}@{fingerprint[:12]}")

        payload = manifest.get("payload") or {}
        archive = self.archive_path(point.id, fingerprint)
        if not archive.exists():
            raise RestoreError(f"payload archive missing for {point.id}@{fingerprint[:12]}")
        digest = _hash_file_contents(archive)
        if digest != payload.get("sha256"):
            raise RestoreError(f"payload checksum mismatch for {point.id}@{fingerprint[:12]}")

    def restore(self, point: CheckpointPoint, fingerprint: str) -> Dict[str, Any]:
        """
        Materialize a checkpoint into the workspace paths of the point's targets.

        Downloads first when the object is only remote. Returns the manifest.
        Raises RestoreError on any problem; callers treat that as a miss.
        """
        manifest_path = self.manifest_path(point.id, fingerprint)
        if not manifest_path.exists():
            self._download(point, fingerprint)

        try:
            manifest = _read_json(manifest_path, None)
        except StoreError as e:
            raise RestoreError(str(e)) from e
        if not isinstance(manifest, dict):
            raise RestoreError(f"manifest for {point.id}@{fingerprint[:12]} is empty")

        if point.trust_mode == TrustMode.VERIFY:
            self._verify(point, fingerprint, manifest)

        obj_dir = self.object_dir(point.id, fingerprint)
        payload_dir = obj_dir / PAYLOAD_DIR
        try:
            with self.locked():
                if not payload_dir.exists():
                    staging = _tmp_sibling(payload_dir)
                    staging.mkdir(parents=True)
                    try:
                        _extract_archive(obj_dir / ARCHIVE_FILE, staging)
                        (staging / PAYLOAD_DIR).rename(payload_dir)
                    finally:
                        shutil.rmtree(staging, ignore_errors=True)

            for target in manifest.get("targets", []):
                name = target["name"]
                raw = point.targets.get(name)
                if raw is None:
                    raise RestoreError(f"checkpoint target '{name}' is no longer configured for {point.id}")
                src = obj_dir / target["payload_rel"]
                if not src.exists() and not src.is_symlink():
                    raise RestoreError(f"payload for target '{name}' missing in {point.id}@{fingerprint[:12]}")
                dst = self.workspace.resolve_config_path(raw)
                if dst.exists() or dst.is_symlink():
                    _remove_path(dst)
                _copy_path(src, dst)
        except (OSError, tarfile.TarError, KeyError, ConfigError) as e:
            raise RestoreError(f"restore of {point.id}@{fingerprint[:12]} failed: {e}") from e

        with self.locked():
            _write_json_atomic(
                self.restored_marker(point.id),
                {"anchor_task": point.anchor_task, "fingerprint": fingerprint, "restored_at": _now()},
            )
        return manifest

    def restored_fingerprint(self, point: CheckpointPoint) -> Optional[str]:
        try:
            data = _read_json(self.restored_marker(point.id), None)
        except StoreError:
            return None
        if isinstance(data, dict) and data.get("anchor_task") == point.anchor_task:
            return data.get("fingerprint")
        return None

    # ------------------------------------------------------------------
    # Capture / upload
    # ------------------------------------------------------------------

    def capture(self, point: CheckpointPoint, fingerprint: str | None = None) -> CaptureResult:
        """
        Package the anchor's outputs as a new checkpoint, then upload or enqueue.

        Raises CaptureError when the outputs cannot be packaged. Upload
        failures never raise; they leave a pending queue entry instead.
        """
        computed, inputs = self.fingerprint(point)
        fingerprint = fingerprint or computed

        obj_dir = self.object_dir(point.id, fingerprint)
        staging = _tmp_sibling(obj_dir)
        try:
            payload_dir = staging / PAYLOAD_DIR
            payload_dir.mkdir(parents=True)
            targets = []
            for name, raw in point.targets.items():
                src = self.workspace.resolve_config_path(raw)
                if not src.exists() and not src.is_symlink():
                    raise CaptureError(f"target '{name}' ({src}) does not exist after {point.anchor_task}")
                _copy_path(src, payload_dir / name)
                targets.append({"name": name, "payload_rel": f"{PAYLOAD_DIR}/{name}"})

            archive = staging / ARCHIVE_FILE
            _write_archive(payload_dir, archive)

            manifest = {
                "version": MANIFEST_VERSION,
                "id": point.id,
                "anchor_task": point.anchor_task,
                "fingerprint": fingerprint,
                "lineage": compute_lineage(point.anchor_task, fingerprint),
                "created_at": _now(),
                "trust_mode": point.trust_mode.value,
                "fingerprint_inputs": inputs,
                "targets": targets,
                "payload": {
                    "archive": ARCHIVE_FILE,
                    "sha256": _hash_file_contents(archive),
                    "size": archive.stat().st_size,
                },
                "sync": {
                    "backend": point.backend,
                    "state": "pending" if self._upload_due(point) else "local",
                },
            }
            _write_json_atomic(staging / MANIFEST_FILE, manifest)

            with self.locked():
                if obj_dir.exists():
                    shutil.rmtree(obj_dir)
                staging.rename(obj_dir)
                self.restored_marker(point.id).unlink(missing_ok=True)
                self._record_local(point, fingerprint)
        except CaptureError:
            raise
        except (OSError, tarfile.TarError, StoreError, ConfigError) as e:
            raise CaptureError(f"capture of {point.id} failed: {e}") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        result = CaptureResult(fingerprint=fingerprint)
        if self._upload_due(point):
            result.uploaded, result.upload_error = self.upload_or_enqueue(point, fingerprint)
            result.queued = not result.uploaded
        return result

    def _upload_due(self, point: CheckpointPoint) -> bool:
        return point.upload_policy != UploadPolicy.OFF and point.backend is not None

    def upload_or_enqueue(self, point: CheckpointPoint, fingerprint: str) -> Tuple[bool, Optional[str]]:
        """Upload now; on failure record a pending queue entry. Returns (uploaded, error)."""
        assert point.backend is not None
        try:
            backend = self.backend_for(point.backend)
            backend.upload(
                point.id,
                fingerprint,
                self.manifest_path(point.id, fingerprint),
                self.archive_path(point.id, fingerprint),
            )
        except (BackendError, CheckpointConfigError) as e:
            transient = getattr(e, "transient", False)
            self._enqueue_failed_upload(point, fingerprint, str(e), transient)
            return False, str(e)

        self._record_remote(point, fingerprint, True)
        self._mark_done(point.id, fingerprint, point.backend)
        return True, None

    def _enqueue_failed_upload(self, point: CheckpointPoint, fingerprint: str, error: str, transient: bool) -> None:
        def refresh(existing: UploadEntry) -> None:
            existing.status = "pending"
            existing.attempts += 1
            existing.last_error = error
            existing.transient = transient
            existing.updated_at = _now()

        self._upsert_queue_entry(
            UploadEntry(
                id=point.id,
                anchor_task=point.anchor_task,
                fingerprint=fingerprint,
                backend=point.backend or "",
                object_rel_dir=f"points/{point.id}/{fingerprint}",
                status="pending",
                attempts=1,
                last_error=error,
                transient=transient,
                updated_at=_now(),
            ),
            on_existing=refresh,
        )

    def _mark_done(self, point_id: str, fingerprint: str, backend: str) -> None:
        with self.locked():
            entries = self.load_queue()
            changed = False
            for e in entries:
                if (e.id, e.fingerprint, e.backend) == (point_id, fingerprint, backend) and e.status != "done":
                    e.status = "done"
                    e.last_error = None
                    e.updated_at = _now()
                    changed = True
            if changed:
                self._save_queue(entries)

    def retry_uploads(self, max_count: int | None = None, *, include_permanent: bool = False) -> RetryReport:
        """
        Retry queued uploads. Pending entries and transiently failed ones are
        eligible; permanently failed ones only with include_permanent.
        Failures stay in the queue as `failed` with the attempt count bumped.
        """
        if max_count is not None and max_count < 0:
            raise ValueError(f"max_count must be >= 0, got {max_count}")
        report = RetryReport()
        entries = self.load_queue()
        eligible = [
            e for e in entries
            if e.status == "pending" or (e.status == "failed" and (e.transient or include_permanent))
        ]
        if max_count is not None:
            report.skipped += max(0, len(eligible) - max_count)
            eligible = eligible[:max_count]
        report.skipped += sum(1 for e in entries if e.status == "failed" and not e.transient and not include_permanent)

        for entry in eligible:
            report.attempted += 1
            manifest = self.root / entry.object_rel_dir / MANIFEST_FILE
            archive = self.root / entry.object_rel_dir / ARCHIVE_FILE
            error: Optional[str] = None
            transient = True
            if not manifest.exists() or not archive.exists():
                error = f"local checkpoint {entry.id}@{entry.fingerprint[:12]} no longer exists"
                transient = False
            else:
                try:
                    self.backend_for(entry.backend).upload(entry.id, entry.fingerprint, manifest, archive)
                except (BackendError, CheckpointConfigError) as e:
                    error = str(e)
                    transient = getattr(e, "transient", False)

            self._finish_retry(entry, error, transient)
            if error is None:
                report.uploaded += 1
                point = self._points.get(entry.id)
                if point is not None:
                    self._record_remote(point, entry.fingerprint, True)
            else:
                report.failed += 1
                report.errors.append(f"{entry.id}@{entry.fingerprint[:12]} -> {entry.backend}: {error}")
        return report

    def _finish_retry(self, entry: UploadEntry, error: Optional[str], transient: bool) -> None:
        entry.attempts += 1
        entry.updated_at = _now()
        if error is None:
            entry.status = "done"
            entry.last_error = None
        else:
            entry.status = "failed"
            entry.last_error = error
            entry.transient = transient

        with self.locked():
            entries = self.load_queue()
            keys = [e.key() for e in entries]
            if entry.key() in keys:
                entries[keys.index(entry.key())] = entry
            else:
                entries.append(entry)
            self._save_queue(entries)

    def clear_uploads(self, *, all_entries: bool = False) -> int:
        """Drop `done` queue entries (or every entry). Returns how many were removed."""
        with self.locked():
            entries = self.load_queue()
            keep = [] if all_entries else [e for e in entries if e.status != "done"]
            self._save_queue(keep)
            return len(entries) - len(keep)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def list(self, point_id: str | None = None, *, include_remote: bool = False) -> List[CheckpointInventory]:
        points = [self.point(point_id)] if point_id else self.points()
        index = self.load_index()
        out = []
        for p in points:
            entry = index["points"].get(p.id) or {}
            local = sorted(
                fp for fp, info in (entry.get("fingerprints") or {}).items()
                if info.get("local") and self.manifest_path(p.id, fp).exists()
            )
            inv = CheckpointInventory(
                id=p.id,
                anchor_task=p.anchor_task,
                backend=p.backend,
                current_fingerprint=self.fingerprint(p)[0],
                local_fingerprints=local,
                local_latest=entry.get("latest_fingerprint"),
            )
            if include_remote and p.backend:
                try:
                    inv.remote_fingerprints = self.backend_for(p.backend).list_fingerprints(p.id)
                except (BackendError, CheckpointConfigError) as e:
                    inv.remote_error = str(e)
            out.append(inv)
        return out
