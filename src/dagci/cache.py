# cache.py
from __future__ import annotations

import hashlib
import json
import shutil
import tarfile
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

from .model import CacheSpec, Job

# ---------------------------------------------------------------------
# Job-level directory cache
# ---------------------------------------------------------------------
# cache_key = key_prefix + sha256(job name, cached paths, contents of the
#                                 files matched by key_files)
#
# Layout:
#   <cache_root>/<job>/<key>.tar.gz        one member dir per cached path ("0/", "1/", ...)
#   <cache_root>/<job>/<key>.manifest.json
#
# The store is passed in explicitly; the engine never reads cache location
# from globals.
# ---------------------------------------------------------------------

DEFAULT_CACHE_DIR = ".dagci/cache"


@dataclass(frozen=True)
class CacheHit:
    hit: bool
    key: str
    reason: str


def _sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _resolve_path(repo_root: Path, entry: str) -> Path:
    p = Path(entry).expanduser()
    return p if p.is_absolute() else (repo_root / p)


def _key_file_digests(repo_root: Path, patterns: List[str]) -> List[Tuple[str, str]]:
    digests: Dict[str, str] = {}
    for pat in patterns:
        for p in sorted(repo_root.glob(pat)):
            if p.is_file():
                rel = str(p.relative_to(repo_root)).replace("\\", "/")
                digests[rel] = _sha256_file(p)
    return sorted(digests.items())


def compute_cache_key(job: Job, spec: CacheSpec, repo_root: Path) -> Tuple[str, Dict]:
    """Returns (key, manifest). Like hashFiles(): only key_files contents matter."""
    root = repo_root.resolve()
    files = _key_file_digests(root, list(spec.key_files))
    payload = {
        "v": 1,
        "job": job.name,
        "paths": list(spec.paths),
        "files": files,
    }
    digest = hashlib.sha256(
        json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    key = f"{spec.key_prefix}{digest}"
    manifest = {"key": key, "payload": payload, "generated_at_unix": int(time.time())}
    return key, manifest


def _safe_extract(tar: tarfile.TarFile, dest: Path) -> None:
    if hasattr(tarfile, "data_filter"):
        tar.extractall(path=str(dest), filter="data")
        return
    for member in tar.getmembers():
        target = (dest / member.name).resolve()
        if dest.resolve() not in target.parents and target != dest.resolve():
            raise tarfile.TarError(f"Refusing to extract outside cache dir: {member.name}")
    tar.extractall(path=str(dest))


class CacheStore:
    """File-based cache store rooted at `root`."""

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).resolve()

    def _job_dir(self, job_name: str) -> Path:
        d = self.root / job_name
        d.mkdir(parents=True, exist_ok=True)
        return d

    def artifact_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.tar.gz"

    def manifest_path(self, job_name: str, key: str) -> Path:
        return self._job_dir(job_name) / f"{key}.manifest.json"

    def restore(self, job: Job, repo_root: Path) -> CacheHit:
        spec = job.cache
        if spec is None or not spec.paths:
            return CacheHit(hit=False, key="", reason="no cache configured")

        key, _manifest = compute_cache_key(job, spec, repo_root)
        art = self.artifact_path(job.name, key)
        if not art.exists():
            return CacheHit(hit=False, key=key, reason="cache miss")

        with tempfile.TemporaryDirectory(prefix="dagci-cache-") as tmp:
            tmp_path = Path(tmp)
            with tarfile.open(str(art), mode="r:gz") as tar:
                _safe_extract(tar, tmp_path)
            for i, entry in enumerate(spec.paths):
                src = tmp_path / str(i)
                if src.is_dir():
                    shutil.copytree(src, _resolve_path(repo_root, entry), dirs_exist_ok=True)

        return CacheHit(hit=True, key=key, reason="restored")

    def save(self, job: Job, repo_root: Path) -> str:
        spec = job.cache
        if spec is None or not spec.paths:
            return ""

        key, manifest = compute_cache_key(job, spec, repo_root)
        art = self.artifact_path(job.name, key)
        tmp = art.with_suffix(".tmp")
        try:
            with tarfile.open(str(tmp), mode="w:gz") as tar:
                for i, entry in enumerate(spec.paths):
                    src = _resolve_path(repo_root, entry)
                    if src.is_dir():
                        tar.add(str(src), arcname=str(i))
            tmp.replace(art)
            self.manifest_path(job.name, key).write_text(
                json.dumps(manifest, sort_keys=True, indent=2), encoding="utf-8"
            )
        finally:
            tmp.unlink(missing_ok=True)
        return key

    def prune(self, job_name: str, keep: int = 3) -> None:
        """Keep only the newest `keep` archives for a job."""
        d = self._job_dir(job_name)
        archives = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        for p in archives[keep:]:
            key = p.name[: -len(".tar.gz")]
            p.unlink(missing_ok=True)
            (d / f"{key}.manifest.json").unlink(missing_ok=True)
