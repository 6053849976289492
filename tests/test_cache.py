"""
Job cache tests.

Run with:
    pytest tests/test_cache.py -v
"""

import io
import sys

import pytest

from dagci.cache import CacheStore, compute_cache_key
from dagci.dsl import cache, job, sh, wf
from dagci.executor import StepOutcome
from dagci.model import RunContext
from dagci.runner import RunOptions, run_workflow
from dagci.ui.console import Console


def _job_with_cache(**kwargs):
    return job("deps", sh("install", "true"), cache=cache("node_modules", key_files=["package-lock.json"], **kwargs))


def test_key_depends_on_key_file_contents(tmp_path):
    (tmp_path / "package-lock.json").write_text("v1")
    j = _job_with_cache()
    k1, manifest = compute_cache_key(j, j.cache, tmp_path)
    assert manifest["payload"]["files"][0][0] == "package-lock.json"

    assert compute_cache_key(j, j.cache, tmp_path)[0] == k1
    (tmp_path / "package-lock.json").write_text("v2")
    assert compute_cache_key(j, j.cache, tmp_path)[0] != k1


def test_key_prefix(tmp_path):
    j = _job_with_cache(prefix="npm-")
    key, _ = compute_cache_key(j, j.cache, tmp_path)
    assert key.startswith("npm-")


def test_miss_then_save_then_restore(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    (repo / "package-lock.json").write_text("lock")
    store = CacheStore(tmp_path / "cache")
    j = _job_with_cache()

    assert store.restore(j, repo).hit is False

    (repo / "node_modules" / "left-pad").mkdir(parents=True)
    (repo / "node_modules" / "left-pad" / "index.js").write_text("module.exports = 1")
    key = store.save(j, repo)
    assert store.artifact_path("deps", key).exists()

    import shutil
    shutil.rmtree(repo / "node_modules")

    hit = store.restore(j, repo)
    assert hit.hit is True
    assert hit.key == key
    assert (repo / "node_modules" / "left-pad" / "index.js").read_text() == "module.exports = 1"


def test_prune_keeps_newest(tmp_path):
    repo = tmp_path / "repo"
    (repo / "node_modules").mkdir(parents=True)
    (repo / "node_modules" / "f").write_text("x")
    store = CacheStore(tmp_path / "cache")
    j = _job_with_cache()
    for i in range(4):
        (repo / "package-lock.json").write_text(f"v{i}")
        store.save(j, repo)
    store.prune("deps", keep=2)
    assert len(list((tmp_path / "cache" / "deps").glob("*.tar.gz"))) == 2
    assert len(list((tmp_path / "cache" / "deps").glob("*.manifest.json"))) == 2


def test_no_cache_configured(tmp_path):
    store = CacheStore(tmp_path / "cache")
    j = job("plain", sh("s", "true"))
    assert store.restore(j, tmp_path).hit is False
    assert store.save(j, tmp_path) == ""


@pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell")
def test_scheduler_saves_cache_after_success(tmp_path):
    repo = tmp_path / "repo"
    repo.mkdir()
    out = io.StringIO()
    j = job(
        "deps",
        sh("install", "mkdir -p node_modules && echo x > node_modules/a"),
        cache=cache("node_modules"),
    )
    options = RunOptions(repo_root=repo, cache_root=tmp_path / "cache", max_workers=1)
    report = run_workflow(wf(j), context=RunContext(), options=options,
                          console=Console(stream=out, err_stream=io.StringIO()))
    assert report.status == "success"
    assert list((tmp_path / "cache" / "deps").glob("*.tar.gz"))
    assert "CACHE: saved" in out.getvalue()


def test_scheduler_does_not_save_cache_after_failure(tmp_path):
    j = job("deps", sh("install", "false"), cache=cache("node_modules"))
    options = RunOptions(
        repo_root=tmp_path,
        cache_root=tmp_path / "cache",
        max_workers=1,
        step_runner=lambda inv: StepOutcome(exit_code=1),
    )
    report = run_workflow(wf(j), context=RunContext(), options=options,
                          console=Console(stream=io.StringIO(), err_stream=io.StringIO()))
    assert report.status == "failure"
    assert not list((tmp_path / "cache").glob("deps/*.tar.gz"))
