# checkpoints/server.py
from __future__ import annotations

import os
import time
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, Response

from .backends import ARCHIVE_FILE, MANIFEST_FILE
from .config import SAFE_ID_RE

# -------------------- Settings --------------------

ROOT_ENV = "STRATUM_CHECKPOINT_ROOT"
TOKEN_ENV = "STRATUM_CHECKPOINT_TOKEN"

OBJECT_FILES = (MANIFEST_FILE, ARCHIVE_FILE)


def _check_segment(value: str, what: str) -> str:
    if not SAFE_ID_RE.match(value) or value in (".", ".."):
        raise HTTPException(status_code=400, detail=f"invalid {what}")
    return value


def create_app(root: str | Path, token: str | None = None) -> FastAPI:
    """
    Checkpoint object server speaking the HTTP backend layout:

      GET  /<point>/                      -> {"fingerprints": [...]}
      HEAD /<point>/<fingerprint>/<file>  -> 200 | 404
      GET  /<point>/<fingerprint>/<file>  -> file body
      PUT  /<point>/<fingerprint>/<file>  -> stored atomically
    """
    base = Path(root)
    app = FastAPI(title="Stratum Checkpoint Server")

    async def require_token(request: Request) -> None:
        if not token:
            return
        if request.headers.get("authorization", "") != f"Bearer {token}":
            raise HTTPException(status_code=401, detail="missing or invalid bearer token")

    def object_path(point_id: str, fingerprint: str, name: str) -> Path:
        _check_segment(point_id, "checkpoint id")
        _check_segment(fingerprint, "fingerprint")
        if name not in OBJECT_FILES:
            raise HTTPException(status_code=404, detail="unknown object file")
        return base / point_id / fingerprint / name

    # -------------------- Endpoints --------------------

    @app.get("/{point_id}/", dependencies=[Depends(require_token)])
    async def list_fingerprints(point_id: str):
        point_dir = base / _check_segment(point_id, "checkpoint id")
        if not point_dir.is_dir():
            return {"fingerprints": []}
        found = sorted(
            p.name for p in point_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".") and (p / MANIFEST_FILE).is_file()
        )
        return {"fingerprints": found}

    @app.api_route("/{point_id}/{fingerprint}/{name}", methods=["GET", "HEAD"], dependencies=[Depends(require_token)])
    async def get_object(point_id: str, fingerprint: str, name: str):
        path = object_path(point_id, fingerprint, name)
        if not path.is_file():
            raise HTTPException(status_code=404, detail="not found")
        media = "application/json" if name == MANIFEST_FILE else "application/x-tar"
        return FileResponse(path, media_type=media)

    @app.put("/{point_id}/{fingerprint}/{name}", dependencies=[Depends(require_token)])
    async def put_object(point_id: str, fingerprint: str, name: str, request: Request):
        path = object_path(point_id, fingerprint, name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{name}.tmp.{os.getpid()}.{time.time_ns()}")
        try:
            with tmp.open("wb") as f:
                async for chunk in request.stream():
                    f.write(chunk)
            tmp.replace(path)
        finally:
            tmp.unlink(missing_ok=True)
        return Response(status_code=201)

    return app


def app_from_env() -> FastAPI:
    """uvicorn factory: `uvicorn stratum.checkpoints.server:app_from_env --factory`."""
    return create_app(os.environ[ROOT_ENV], os.environ.get(TOKEN_ENV) or None)
