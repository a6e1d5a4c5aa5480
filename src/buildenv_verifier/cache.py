"""Provisioning cache for environments with their packages installed."""

import json
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from buildenv_verifier.models.spec import EnvironmentSpec

INDEX_FILE = "index.json"


class CacheEntry(BaseModel):
    """A snapshot of a provisioned environment."""

    slot: str = Field(..., description="Cache slot the entry occupies")
    fingerprint: str = Field(..., description="Fingerprint of the spec that produced it")
    backend: str = Field(..., description="Environment backend that owns the snapshot")
    reference: str = Field(..., description="Backend-specific snapshot reference")
    created_at: datetime = Field(default_factory=datetime.now)


class ProvisionCache:
    """Explicit cache of provisioned environments.

    Each slot holds at most one entry. A lookup with a spec whose fingerprint
    differs from the stored one evicts the stale entry; evicted entries are
    queued so their snapshots can be discarded by the owning backend.

    With a ``root`` the index is persisted as JSON, otherwise it lives only as
    long as the object.
    """

    def __init__(self, root: Path | None = None):
        self.root = root
        self._entries: dict[str, CacheEntry] = {}
        self._evicted: list[CacheEntry] = []
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
            self._entries = self._load()

    @property
    def snapshot_dir(self) -> Path | None:
        """Directory where file-based backends may keep snapshots."""
        return self.root / "snapshots" if self.root is not None else None

    @staticmethod
    def key(spec: EnvironmentSpec, backend: str) -> str:
        return f"{backend}:{spec.cache_slot}"

    def lookup(self, spec: EnvironmentSpec, backend: str) -> CacheEntry | None:
        """
        Find the snapshot for a spec.

        Args:
            spec: Environment spec
            backend: Backend asking for the snapshot

        Returns:
            The matching entry, or None on a miss
        """
        key = self.key(spec, backend)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.fingerprint != spec.fingerprint():
            logger.info(f"Cache slot {key} holds a different spec, invalidating")
            self.invalidate(key)
            return None
        return entry

    def store(self, spec: EnvironmentSpec, backend: str, reference: str) -> CacheEntry:
        key = self.key(spec, backend)
        previous = self._entries.get(key)
        if previous is not None and previous.reference != reference:
            self._evicted.append(previous)
        entry = CacheEntry(
            slot=key, fingerprint=spec.fingerprint(), backend=backend, reference=reference
        )
        self._entries[key] = entry
        self._save()
        logger.info(f"Cached {key} -> {reference}")
        return entry

    def invalidate(self, key: str, discard: bool = True) -> CacheEntry | None:
        """
        Remove a slot.

        Args:
            key: Slot key
            discard: Queue the removed entry for snapshot disposal. Pass False when
                the snapshot is already gone.

        Returns:
            The removed entry, if any
        """
        entry = self._entries.pop(key, None)
        if entry is not None:
            if discard:
                self._evicted.append(entry)
            self._save()
        return entry

    def drain_evicted(self, backend: str) -> list[CacheEntry]:
        """Return and forget evicted entries owned by a backend."""
        drained = [entry for entry in self._evicted if entry.backend == backend]
        self._evicted = [entry for entry in self._evicted if entry.backend != backend]
        return drained

    def entries(self) -> list[CacheEntry]:
        return list(self._entries.values())

    def _load(self) -> dict[str, CacheEntry]:
        index = self.root / INDEX_FILE
        if not index.exists():
            return {}
        try:
            raw = json.loads(index.read_text(encoding="utf-8"))
            return {key: CacheEntry.model_validate(value) for key, value in raw.items()}
        except (json.JSONDecodeError, ValidationError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable cache index {index}: {e}")
            return {}

    def _save(self) -> None:
        if self.root is None:
            return
        payload = {key: entry.model_dump(mode="json") for key, entry in self._entries.items()}
        (self.root / INDEX_FILE).write_text(
            json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8"
        )
