"""
Tests for the Hop cross-process registry.
"""

import json
import logging
import os
import signal
import subprocess
import sys
from unittest.mock import patch

from hop.core.registry import ProcessProbe, Registry, RegistryEntry


class TestRegistry:
    def test_empty_without_file(self, registry):
        assert registry.get_running_proxies() == []
        assert not registry.path.exists()

    def test_register_and_lookup(self, registry):
        entry = registry.register("api", os.getpid(), 8080)

        assert entry.pid == os.getpid()
        assert registry.is_running("api")
        assert registry.get_entry("api").port == 8080
        assert registry.get_entry("other") is None

    def test_file_format(self, registry):
        registry.register("api", os.getpid(), 8080)
        data = json.loads(registry.path.read_text())
        assert data == [{
            "name": "api",
            "pid": os.getpid(),
            "port": 8080,
            "startTime": data[0]["startTime"],
        }]
        assert isinstance(data[0]["startTime"], int)

    def test_reads_are_idempotent(self, registry):
        registry.register("a", os.getpid(), 8001)
        registry.register("b", os.getpid(), 8002)
        first = registry.get_running_proxies()
        second = registry.get_running_proxies()
        assert first == second
        assert [e.name for e in first] == ["a", "b"]

    def test_register_replaces_same_name(self, registry):
        registry.register("api", os.getpid(), 8080)
        registry.register("api", os.getpid(), 9090)
        entries = registry.get_running_proxies()
        assert len(entries) == 1
        assert entries[0].port == 9090

    def test_dead_entries_are_pruned_and_persisted(self, registry, probe):
        probe.alive.add(4242)
        registry.register("live", os.getpid(), 8001)
        registry.register("dead", 4242, 8002)

        probe.alive.discard(4242)
        assert [e.name for e in registry.get_running_proxies()] == ["live"]

        on_disk = json.loads(registry.path.read_text())
        assert [r["name"] for r in on_disk] == ["live"]

    def test_unregister_ignores_owner(self, registry, probe):
        probe.alive.add(4242)
        registry.register("theirs", 4242, 8001)
        registry.unregister("theirs")
        assert not registry.is_running("theirs")

    def test_unregister_missing_name(self, registry):
        registry.register("api", os.getpid(), 8080)
        registry.unregister("nope")
        assert registry.is_running("api")

    def test_corrupt_file_reads_as_empty(self, registry, caplog):
        registry.path.parent.mkdir(parents=True)
        registry.path.write_text("{not json")

        with caplog.at_level(logging.ERROR, logger="hop.core.registry"):
            assert registry.get_running_proxies() == []
        assert "Failed to load registry" in caplog.text

        # A later write replaces the corrupt file
        registry.register("api", os.getpid(), 8080)
        assert registry.is_running("api")

    def test_non_array_file_reads_as_empty(self, registry):
        registry.path.parent.mkdir(parents=True)
        registry.path.write_text('{"name": "api"}')
        assert registry.get_running_proxies() == []

    def test_malformed_records_are_skipped(self, registry):
        registry.path.parent.mkdir(parents=True)
        registry.path.write_text(json.dumps([
            {"name": "ok", "pid": os.getpid(), "port": 8080, "startTime": 1},
            {"name": "no-pid"},
            "garbage",
        ]))
        assert [e.name for e in registry.get_running_proxies()] == ["ok"]

    def test_unwritable_path_fails_softly(self, tmp_path, probe, caplog):
        target = tmp_path / "dir-not-file"
        target.mkdir()
        registry = Registry(path=target, probe=probe)

        with caplog.at_level(logging.ERROR, logger="hop.core.registry"):
            entry = registry.register("api", os.getpid(), 8080)

        assert entry.name == "api"
        assert registry.get_running_proxies() == []
        assert "Failed to save registry" in caplog.text

    def test_entry_round_trip(self):
        entry = RegistryEntry(name="api", pid=1, port=80, start_time=1700000000000)
        assert RegistryEntry.from_dict(entry.to_dict()) == entry
        assert entry.uptime_seconds > 0


class TestProcessProbe:
    def test_own_process_is_alive(self):
        assert ProcessProbe().is_alive(os.getpid())

    def test_exited_process_is_dead(self):
        proc = subprocess.Popen([sys.executable, "-c", "pass"])
        proc.wait()
        assert not ProcessProbe().is_alive(proc.pid)

    def test_non_positive_pid_is_dead(self):
        assert not ProcessProbe().is_alive(0)
        assert not ProcessProbe().is_alive(-1)

    def test_permission_error_counts_as_alive(self):
        with patch("hop.core.registry.os.kill", side_effect=PermissionError):
            assert ProcessProbe().is_alive(1)

    def test_terminate_sends_sigterm(self):
        with patch("hop.core.registry.os.kill") as kill:
            ProcessProbe().terminate(1234)
        kill.assert_called_once_with(1234, signal.SIGTERM)
