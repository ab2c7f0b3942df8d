"""
Hop Proxy Manager
=================
Per-process supervisor for proxy engines.

The manager is the only place in a process that decides whether starting or
stopping an endpoint is safe. It owns the engines it binds and reconciles
them with the shared process registry, so it can tell an endpoint running
here from one running in another Hop process.

Events (subscribe with :meth:`ProxyManager.on`):
  • ``start``:    ``callback(name)``
  • ``stop``:     ``callback(name)``
  • ``request``:  ``callback(name, RequestEvent)``
  • ``response``: ``callback(name, ResponseEvent)``
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from hop.config import ProxyRule, Settings
from hop.core.cert import FileCertificateProvider
from hop.core.exchange import ProxyEvent, RequestEvent
from hop.core.plugins import PluginLoader, PluginPipeline
from hop.core.proxy import ProxyEngine
from hop.core.registry import Registry
from hop.errors import ExternalTerminationError, OwnershipConflictError

logger = logging.getLogger(__name__)

EVENTS = ("start", "stop", "request", "response")


class ProxyState(str, Enum):
    STOPPED = "stopped"
    RUNNING_LOCAL = "running_local"
    RUNNING_EXTERNAL = "running_external"
    CONFLICT = "conflict"


@dataclass
class RunningProxy:
    """An engine bound by this process."""
    rule: ProxyRule
    engine: ProxyEngine
    pipeline: PluginPipeline
    started_at: float


class ProxyManager:
    """
    Starts and stops proxy engines, keeping the registry in step.

    Usage::

        manager = ProxyManager()
        await manager.start(rule)
        ...
        await manager.stop_all()
    """

    def __init__(
        self,
        registry: Optional[Registry] = None,
        plugin_loader: Optional[PluginLoader] = None,
        certificate_provider=None,
        settings: Optional[Settings] = None,
        pid: Optional[int] = None,
    ):
        self.registry = registry or Registry()
        self.plugin_loader = plugin_loader or PluginLoader()
        self.certificate_provider = certificate_provider or FileCertificateProvider()
        self.settings = settings or Settings()
        self.pid = pid if pid is not None else os.getpid()
        self._running: Dict[str, RunningProxy] = {}
        self._conflicts: Set[str] = set()
        self._listeners: Dict[str, List[Callable[..., None]]] = {e: [] for e in EVENTS}
        self._lock = asyncio.Lock()

    # ── Events ───────────────────────────────────────────────────────────

    def on(self, event: str, callback: Callable[..., None]) -> None:
        """Subscribe to a lifecycle or traffic event."""
        if event not in self._listeners:
            raise ValueError(f"Unknown event '{event}'. Expected one of: {', '.join(EVENTS)}")
        self._listeners[event].append(callback)

    def off(self, event: str, callback: Callable[..., None]) -> None:
        if callback in self._listeners.get(event, []):
            self._listeners[event].remove(callback)

    def _emit(self, event: str, *args: Any) -> None:
        for cb in list(self._listeners[event]):
            try:
                cb(*args)
            except Exception as e:
                logger.warning(f"{event} listener error: {e}")

    def _forward_event(self, name: str) -> Callable[[ProxyEvent], None]:
        def forward(event: ProxyEvent) -> None:
            kind = "request" if isinstance(event, RequestEvent) else "response"
            self._emit(kind, name, event)
        return forward

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def start(self, rule: ProxyRule) -> None:
        """Bind and register an endpoint.

        Raises:
            OwnershipConflictError: Another live process owns ``rule.name``.
            PortInUseError: The port is already bound.
        """
        async with self._lock:
            if rule.name in self._running:
                logger.warning(f"Proxy {rule.name} is already running locally")
                return

            entry = self.registry.get_entry(rule.name)
            if entry and entry.pid != self.pid:
                self._conflicts.add(rule.name)
                raise OwnershipConflictError(rule.name, entry.pid)

            pipeline = PluginPipeline(self.plugin_loader.load(rule.plugins))
            engine = ProxyEngine(
                rule,
                pipeline=pipeline,
                settings=self.settings,
                certificate_provider=self.certificate_provider,
            )
            engine.on_event(self._forward_event(rule.name))

            try:
                await engine.start()
            except Exception as e:
                logger.error(f"Failed to start proxy {rule.name}: {e}")
                raise

            self._running[rule.name] = RunningProxy(
                rule=rule,
                engine=engine,
                pipeline=pipeline,
                started_at=time.time(),
            )
            self._conflicts.discard(rule.name)
            self.registry.register(rule.name, self.pid, rule.port)

            logger.info(f"Proxy {rule.name} started on port {rule.port} -> {rule.target}")
            self._emit("start", rule.name)

    async def stop(self, name: str, wait: bool = False) -> None:
        """Stop an endpoint, wherever it runs.

        A local engine is closed. If the registry shows another live process
        owning ``name``, that process is sent SIGTERM and the entry is removed
        without waiting for confirmation, unless ``wait`` is set, in which
        case liveness is polled for up to ``settings.external_stop_timeout``.
        """
        async with self._lock:
            handle = self._running.pop(name, None)
            if handle is not None:
                await handle.engine.stop()

            entry = self.registry.get_entry(name)
            if entry is not None:
                if entry.pid == self.pid:
                    self.registry.unregister(name)
                else:
                    try:
                        self.registry.probe.terminate(entry.pid)
                    except ProcessLookupError:
                        self.registry.unregister(name)
                    except OSError as e:
                        logger.error(str(ExternalTerminationError(name, entry.pid, e)))
                    else:
                        logger.info(f"Sent SIGTERM to external proxy {name} (PID: {entry.pid})")
                        self.registry.unregister(name)
                        if wait:
                            await self._wait_for_exit(name, entry.pid)

            self._conflicts.discard(name)
        logger.info(f"Proxy {name} stopped")
        self._emit("stop", name)

    async def _wait_for_exit(self, name: str, pid: int) -> bool:
        deadline = time.monotonic() + self.settings.external_stop_timeout
        while time.monotonic() < deadline:
            if not self.registry.probe.is_alive(pid):
                return True
            await asyncio.sleep(0.1)
        logger.warning(f"External proxy {name} (PID: {pid}) still alive after SIGTERM")
        return False

    async def stop_all(self) -> None:
        """Stop every endpoint bound by this process.

        Endpoints owned by other processes are left alone.
        """
        for name in list(self._running):
            await self.stop(name)

    # ── Status ───────────────────────────────────────────────────────────

    def is_running(self, name: str) -> bool:
        if name in self._running:
            return True
        return self.registry.is_running(name)

    def is_running_locally(self, name: str) -> bool:
        return name in self._running

    def state(self, name: str) -> ProxyState:
        if name in self._running:
            return ProxyState.RUNNING_LOCAL
        entry = self.registry.get_entry(name)
        if entry is None or entry.pid == self.pid:
            return ProxyState.STOPPED
        if name in self._conflicts:
            return ProxyState.CONFLICT
        return ProxyState.RUNNING_EXTERNAL

    def get_engine(self, name: str) -> Optional[ProxyEngine]:
        handle = self._running.get(name)
        return handle.engine if handle else None

    @property
    def local_names(self) -> List[str]:
        return list(self._running)

    def status(self) -> List[Dict[str, Any]]:
        """Describe every endpoint known locally or through the registry."""
        rows: Dict[str, Dict[str, Any]] = {}
        for entry in self.registry.get_running_proxies():
            rows[entry.name] = {
                "name": entry.name,
                "port": entry.port,
                "pid": entry.pid,
                "state": (ProxyState.RUNNING_LOCAL if entry.pid == self.pid
                          else ProxyState.RUNNING_EXTERNAL).value,
                "uptime_seconds": round(entry.uptime_seconds, 1),
            }
        for name, handle in self._running.items():
            rows[name] = {
                "name": name,
                "port": handle.rule.port,
                "pid": self.pid,
                "state": ProxyState.RUNNING_LOCAL.value,
                "uptime_seconds": round(time.time() - handle.started_at, 1),
                "target": handle.rule.target,
                "plugins": handle.pipeline.names,
            }
        return sorted(rows.values(), key=lambda r: r["name"])


# ── Shutdown ─────────────────────────────────────────────────────────────────

async def wait_for_shutdown(manager: ProxyManager, stop_event: Optional[asyncio.Event] = None) -> None:
    """Block until SIGINT/SIGTERM (or ``stop_event``), then stop every local engine.

    In-flight requests get at most ``settings.shutdown_timeout`` to finish.
    """
    loop = asyncio.get_running_loop()
    stop_event = stop_event or asyncio.Event()
    installed: List[int] = []

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass

    try:
        await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("Shutting down proxies")
        await manager.stop_all()
