from pathlib import Path

from buildenv_verifier.cache import INDEX_FILE, ProvisionCache
from buildenv_verifier.models import EnvironmentSpec, SourceMount


def _spec(**overrides) -> EnvironmentSpec:
    fields = {
        "base_image": "rust:1.42.0",
        "system_packages": ("strace", "clang"),
        "source_mount": SourceMount(source=Path("/tmp/code")),
    }
    fields.update(overrides)
    return EnvironmentSpec(**fields)


def test_miss_then_hit() -> None:
    cache = ProvisionCache()
    spec = _spec()
    assert cache.lookup(spec, "docker") is None

    cache.store(spec, "docker", "buildenv-verifier-cache:abc")
    entry = cache.lookup(spec, "docker")
    assert entry is not None
    assert entry.reference == "buildenv-verifier-cache:abc"
    assert entry.fingerprint == spec.fingerprint()


def test_backends_do_not_share_entries() -> None:
    cache = ProvisionCache()
    spec = _spec()
    cache.store(spec, "docker", "image:abc")
    assert cache.lookup(spec, "local") is None


def test_spec_change_invalidates_slot() -> None:
    cache = ProvisionCache()
    cache.store(_spec(), "docker", "image:old")

    changed = _spec(system_packages=("strace", "clang", "llvm"))
    assert cache.lookup(changed, "docker") is None
    assert cache.entries() == []

    evicted = cache.drain_evicted("docker")
    assert [entry.reference for entry in evicted] == ["image:old"]
    assert cache.drain_evicted("docker") == []


def test_store_replacing_reference_evicts_previous() -> None:
    cache = ProvisionCache()
    spec = _spec()
    cache.store(spec, "local", "/snapshots/one")
    cache.store(spec, "local", "/snapshots/two")
    assert [entry.reference for entry in cache.drain_evicted("local")] == ["/snapshots/one"]
    assert cache.lookup(spec, "local").reference == "/snapshots/two"


def test_drain_evicted_only_returns_own_backend() -> None:
    cache = ProvisionCache()
    cache.store(_spec(), "docker", "image:a")
    cache.store(_spec(), "local", "/snap/a")
    cache.invalidate("docker:rust")
    cache.invalidate("local:rust")
    assert [entry.reference for entry in cache.drain_evicted("local")] == ["/snap/a"]
    assert [entry.reference for entry in cache.drain_evicted("docker")] == ["image:a"]


def test_invalidate_without_discard() -> None:
    cache = ProvisionCache()
    cache.store(_spec(), "docker", "image:a")
    removed = cache.invalidate("docker:rust", discard=False)
    assert removed is not None and removed.reference == "image:a"
    assert cache.entries() == []
    assert cache.drain_evicted("docker") == []


def test_index_is_persisted(tmp_path: Path) -> None:
    spec = _spec(name="my-crate")
    ProvisionCache(tmp_path).store(spec, "docker", "image:abc")
    assert (tmp_path / INDEX_FILE).exists()

    reloaded = ProvisionCache(tmp_path)
    entry = reloaded.lookup(spec, "docker")
    assert entry is not None
    assert entry.slot == "docker:my-crate"


def test_unreadable_index_starts_empty(tmp_path: Path) -> None:
    (tmp_path / INDEX_FILE).write_text("{not json", encoding="utf-8")
    cache = ProvisionCache(tmp_path)
    assert cache.entries() == []
    assert cache.snapshot_dir == tmp_path / "snapshots"
