"""
Hop Process Registry
====================
A file-backed table of ``{name, pid, port, startTime}`` records shared by
every Hop process on the host.

Entries are pruned lazily: every read drops records whose pid no longer
denotes a live process and persists the pruned table. Writes replace the
whole file. There is no inter-process lock, so two processes writing at
nearly the same moment can lose an update (last writer wins).
"""

from __future__ import annotations

import json
import logging
import os
import signal
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from hop.config import REGISTRY_FILE
from hop.errors import RegistryIOError

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    name: str
    pid: int
    port: int
    start_time: int  # ms since epoch

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "pid": self.pid,
            "port": self.port,
            "startTime": self.start_time,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegistryEntry":
        return cls(
            name=str(data["name"]),
            pid=int(data["pid"]),
            port=int(data["port"]),
            start_time=int(data.get("startTime", 0)),
        )

    @property
    def uptime_seconds(self) -> float:
        return max(0.0, time.time() - self.start_time / 1000)


class ProcessProbe:
    """Liveness checks and termination for OS processes (POSIX signals)."""

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by another user
            return True
        except OSError:
            return False
        return True

    def terminate(self, pid: int) -> None:
        """Send SIGTERM. Raises ProcessLookupError if the process is gone."""
        os.kill(pid, signal.SIGTERM)


class Registry:
    """Cross-process record of which endpoint names are bound, and by whom."""

    def __init__(self, path: Optional[Path] = None, probe: Optional[ProcessProbe] = None):
        self.path = Path(path) if path else REGISTRY_FILE
        self.probe = probe or ProcessProbe()
        self._lock = threading.RLock()

    # ── Storage ──────────────────────────────────────────────────────────

    def _load(self) -> List[RegistryEntry]:
        try:
            return self._read()
        except RegistryIOError as e:
            logger.error(f"Failed to load registry: {e}")
            return []

    def _read(self) -> List[RegistryEntry]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except (OSError, ValueError) as e:
            raise RegistryIOError(f"{self.path}: {e}") from e
        if not isinstance(raw, list):
            raise RegistryIOError(f"{self.path}: expected a JSON array")

        entries: List[RegistryEntry] = []
        for item in raw:
            try:
                entries.append(RegistryEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                logger.debug(f"Skipping malformed registry record: {item!r}")
        return entries

    def _save(self, entries: List[RegistryEntry]) -> None:
        try:
            self._write(entries)
        except RegistryIOError as e:
            logger.error(f"Failed to save registry: {e}")

    def _write(self, entries: List[RegistryEntry]) -> None:
        data = json.dumps([e.to_dict() for e in entries], indent=2)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".registry-", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(data)
                os.replace(tmp, self.path)
            except BaseException:
                Path(tmp).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise RegistryIOError(f"{self.path}: {e}") from e

    # ── Queries ──────────────────────────────────────────────────────────

    def get_running_proxies(self) -> List[RegistryEntry]:
        """Return entries whose process is alive, persisting any pruning."""
        with self._lock:
            entries = self._load()
            active = [e for e in entries if self.probe.is_alive(e.pid)]
            if len(active) != len(entries):
                for e in entries:
                    if e not in active:
                        logger.debug(f"Pruning stale registry entry {e.name} (PID: {e.pid})")
                self._save(active)
            return active

    def is_running(self, name: str) -> bool:
        return any(e.name == name for e in self.get_running_proxies())

    def get_entry(self, name: str) -> Optional[RegistryEntry]:
        for e in self.get_running_proxies():
            if e.name == name:
                return e
        return None

    # ── Mutations ────────────────────────────────────────────────────────

    def register(self, name: str, pid: int, port: int) -> RegistryEntry:
        """Record ``name`` as bound by ``pid``, replacing any previous entry."""
        with self._lock:
            entries = [e for e in self.get_running_proxies() if e.name != name]
            entry = RegistryEntry(
                name=name,
                pid=pid,
                port=port,
                start_time=int(time.time() * 1000),
            )
            entries.append(entry)
            self._save(entries)
            return entry

    def unregister(self, name: str) -> None:
        """Drop ``name`` from the raw table, whoever owns it."""
        with self._lock:
            entries = self._load()
            remaining = [e for e in entries if e.name != name]
            if len(remaining) != len(entries):
                self._save(remaining)
