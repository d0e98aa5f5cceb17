# checkpoints/config.py
from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from ..config import ConfigDoc, load_section
from ..errors import CheckpointConfigError

if TYPE_CHECKING:
    from ..planner import Plan

SAFE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
BACKEND_KINDS = ("s3", "http", "ssh")


class UsePolicy(str, Enum):
    AUTO = "auto"
    OFF = "off"
    REQUIRED = "required"


class UploadPolicy(str, Enum):
    OFF = "off"
    ON_SUCCESS = "on_success"
    ALWAYS = "always"


class TrustMode(str, Enum):
    VERIFY = "verify"
    PERMISSIVE = "permissive"


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# -------------------- Backends --------------------

class S3BackendConfig(_Strict):
    bucket: str = ""
    bucket_env: Optional[str] = None
    region: Optional[str] = None
    region_env: Optional[str] = None
    prefix: Optional[str] = None
    prefix_env: Optional[str] = None
    endpoint_url: Optional[str] = None
    endpoint_url_env: Optional[str] = None
    profile: Optional[str] = None
    profile_env: Optional[str] = None
    aws_access_key_id_env: Optional[str] = None
    aws_secret_access_key_env: Optional[str] = None
    aws_session_token_env: Optional[str] = None
    aws_shared_credentials_file_env: Optional[str] = None
    aws_config_file_env: Optional[str] = None
    aws_ca_bundle_env: Optional[str] = None


class HttpBackendConfig(_Strict):
    base_url: str = ""
    base_url_env: Optional[str] = None
    token: Optional[str] = None
    token_env: Optional[str] = None
    timeout_secs: float = 30.0


class SshBackendConfig(_Strict):
    target: str = ""  # user@host:/abs/path
    target_env: Optional[str] = None
    port: Optional[int] = None
    port_env: Optional[str] = None
    identity_file: Optional[str] = None
    identity_file_env: Optional[str] = None
    known_hosts_file: Optional[str] = None
    known_hosts_file_env: Optional[str] = None
    strict_host_key_checking: bool = True


class BackendsConfig(_Strict):
    s3: Dict[str, S3BackendConfig] = Field(default_factory=dict)
    http: Dict[str, HttpBackendConfig] = Field(default_factory=dict)
    ssh: Dict[str, SshBackendConfig] = Field(default_factory=dict)

    def names(self, kind: str) -> List[str]:
        return list(getattr(self, kind).keys())


# -------------------- Points --------------------

class PointConfig(_Strict):
    id: str
    anchor_task: str
    use_policy: Optional[UsePolicy] = None
    upload_policy: Optional[UploadPolicy] = None
    fingerprint_from: List[str]
    backend: Optional[str] = None
    trust_mode: Optional[TrustMode] = None
    targets: Dict[str, str]

    @field_validator("id")
    @classmethod
    def _safe_id(cls, v: str) -> str:
        v = v.strip()
        if not SAFE_ID_RE.match(v):
            raise ValueError(f"checkpoint id '{v}' is invalid (allowed: A-Za-z0-9._-)")
        return v

    @field_validator("anchor_task")
    @classmethod
    def _anchor(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("anchor_task is empty")
        return v

    @field_validator("fingerprint_from")
    @classmethod
    def _fingerprint_paths(cls, v: List[str]) -> List[str]:
        paths = [p.strip() for p in v if p.strip()]
        if not paths:
            raise ValueError("fingerprint_from must list at least one key path")
        return paths

    @field_validator("targets")
    @classmethod
    def _targets(cls, v: Dict[str, str]) -> Dict[str, str]:
        if not v:
            raise ValueError("targets must name at least one path the anchor task produces")
        for name in v:
            if not SAFE_ID_RE.match(name) or name in (".", ".."):
                raise ValueError(f"target name '{name}' is invalid (allowed: A-Za-z0-9._-)")
        return v

    @field_validator("backend")
    @classmethod
    def _backend(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class CheckpointsConfig(_Strict):
    enabled: bool = False
    default_use_policy: UsePolicy = UsePolicy.AUTO
    default_upload_policy: UploadPolicy = UploadPolicy.OFF
    trust_mode: TrustMode = TrustMode.VERIFY
    queue_file: Optional[str] = None
    points: List[PointConfig] = Field(default_factory=list)
    backends: BackendsConfig = Field(default_factory=BackendsConfig)

    @model_validator(mode="after")
    def _cross_checks(self) -> "CheckpointsConfig":
        ids: set[str] = set()
        anchors: Dict[str, str] = {}
        for p in self.points:
            if p.id in ids:
                raise ValueError(f"duplicate checkpoint id '{p.id}'")
            ids.add(p.id)
            if p.anchor_task in anchors:
                raise ValueError(
                    f"checkpoints '{anchors[p.anchor_task]}' and '{p.id}' share anchor task '{p.anchor_task}'"
                )
            anchors[p.anchor_task] = p.id
            if p.backend is not None:
                resolve_backend_ref(self.backends, p.backend)
        return self

    def resolved_points(self) -> List["CheckpointPoint"]:
        out = []
        for p in self.points:
            out.append(
                CheckpointPoint(
                    id=p.id,
                    anchor_task=p.anchor_task,
                    use_policy=p.use_policy or self.default_use_policy,
                    upload_policy=p.upload_policy or self.default_upload_policy,
                    fingerprint_from=tuple(p.fingerprint_from),
                    backend=p.backend,
                    trust_mode=p.trust_mode or self.trust_mode,
                    targets=dict(p.targets),
                )
            )
        return out


@dataclass(frozen=True)
class CheckpointPoint:
    """A point with global defaults applied."""
    id: str
    anchor_task: str
    use_policy: UsePolicy
    upload_policy: UploadPolicy
    fingerprint_from: Tuple[str, ...]
    backend: Optional[str]
    trust_mode: TrustMode
    targets: Dict[str, str]


# -------------------- Helpers --------------------

def resolve_backend_ref(backends: BackendsConfig, ref: str) -> Tuple[str, str]:
    """
    Resolve `kind:name` or a bare `name` to (kind, name).

    A bare name must be unique across kinds.
    """
    text = ref.strip()
    if ":" in text:
        kind, _, name = text.partition(":")
        kind, name = kind.strip(), name.strip()
        if kind not in BACKEND_KINDS:
            raise ValueError(f"backend '{ref}' has unknown kind '{kind}' (expected one of {', '.join(BACKEND_KINDS)})")
        if name not in backends.names(kind):
            raise ValueError(f"backend '{ref}' is not defined under [checkpoints.backends.{kind}]")
        return kind, name

    matches = [k for k in BACKEND_KINDS if text in backends.names(k)]
    if not matches:
        raise ValueError(f"backend '{ref}' is not defined")
    if len(matches) > 1:
        options = ", ".join(f"{k}:{text}" for k in matches)
        raise ValueError(f"backend '{ref}' is ambiguous; use one of: {options}")
    return matches[0], text


def load_checkpoints_config(doc: ConfigDoc) -> CheckpointsConfig:
    return load_section(doc, "checkpoints", CheckpointsConfig, error=CheckpointConfigError)


def validate_against_plan(cfg: CheckpointsConfig, plan: "Plan") -> None:
    """Every enabled point must anchor on a task that is part of this run's plan."""
    if not cfg.enabled:
        return
    for p in cfg.points:
        if p.anchor_task not in plan:
            raise CheckpointConfigError(
                f"checkpoint '{p.id}' anchors on task '{p.anchor_task}', which is not in the plan"
            )
