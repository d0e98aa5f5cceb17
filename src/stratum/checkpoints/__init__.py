from .backends import CheckpointBackend, HttpBackend, S3Backend, SshBackend, create_backend
from .config import CheckpointPoint, CheckpointsConfig, TrustMode, UploadPolicy, UsePolicy
from .store import CheckpointInventory, CheckpointStatus, CheckpointStore, RetryReport, UploadEntry

__all__ = [
    "CheckpointBackend",
    "HttpBackend",
    "S3Backend",
    "SshBackend",
    "create_backend",
    "CheckpointPoint",
    "CheckpointsConfig",
    "TrustMode",
    "UploadPolicy",
    "UsePolicy",
    "CheckpointInventory",
    "CheckpointStatus",
    "CheckpointStore",
    "RetryReport",
    "UploadEntry",
]
