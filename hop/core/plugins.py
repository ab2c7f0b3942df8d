"""
Hop Plugin System
=================
Request/response hooks that run inside a proxy endpoint.

A rule lists plugin references in its ``plugins`` field. Each reference is a
Python file path (``./plugins/auth.py``), a dotted module (``mypkg.hooks``) or
``module:attribute``. A plugin exposes ``on_request`` and/or ``on_response``;
both may be plain functions or coroutines.

Minimal Plugin Example
----------------------
::

    def on_request(request, response):
        request.headers["X-Request-Id"] = request.id

Advanced Plugin Example (using register function)
--------------------------------------------------
::

    from hop.core.plugins import PluginDefinition

    def register() -> PluginDefinition:
        return PluginDefinition(
            name="maintenance",
            description="Answer every request with 503",
            on_request=block,
        )

    def block(request, response):
        response.send(503, "Down for maintenance")

Calling ``response.send()`` from a request hook ends the response: later
request hooks are skipped and nothing is forwarded upstream.
"""

from __future__ import annotations

import hashlib
import importlib
import importlib.util
import inspect
import logging
import os
import sys
import types
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from hop.core.exchange import ProxyRequest, ProxyResponse, UpstreamResponse
from hop.errors import PluginError

logger = logging.getLogger(__name__)

RequestHook = Callable[[ProxyRequest, ProxyResponse], Any]
ResponseHook = Callable[[UpstreamResponse, ProxyRequest, ProxyResponse], Any]


# ── Plugin Definition ────────────────────────────────────────────────────────

@dataclass
class PluginDefinition:
    """
    A loaded plugin: a name plus optional request and response hooks.

    Attributes:
        name: Identifier used in log messages.
        on_request: Called as ``on_request(request, response)`` before the
            request is forwarded.
        on_response: Called as ``on_response(upstream, request, response)``
            before the upstream response is returned to the client.
        description: Optional human-readable description.
        version: Optional version string.
        source_path: The reference the plugin was loaded from.
    """
    name: str
    on_request: Optional[RequestHook] = None
    on_response: Optional[ResponseHook] = None
    description: str = ""
    version: str = "1.0.0"
    source_path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Serialize plugin metadata (not the hooks)."""
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "source_path": self.source_path,
            "hooks": [h for h in ("on_request", "on_response") if getattr(self, h)],
        }


def as_plugin(obj: Any, name: str = "") -> PluginDefinition:
    """Adapt any object exposing ``on_request``/``on_response`` to a PluginDefinition."""
    if isinstance(obj, PluginDefinition):
        return obj

    on_request = getattr(obj, "on_request", None)
    on_response = getattr(obj, "on_response", None)
    if on_request is not None and not callable(on_request):
        raise TypeError(f"{name or obj!r}: on_request is not callable")
    if on_response is not None and not callable(on_response):
        raise TypeError(f"{name or obj!r}: on_response is not callable")
    if on_request is None and on_response is None:
        raise ValueError(f"{name or obj!r}: defines neither on_request nor on_response")

    plugin_name = (
        getattr(obj, "name", None)
        or name
        or getattr(obj, "__name__", None)
        or type(obj).__name__
    )
    return PluginDefinition(
        name=str(plugin_name),
        on_request=on_request,
        on_response=on_response,
        description=str(getattr(obj, "description", "") or ""),
        version=str(getattr(obj, "version", "1.0.0") or "1.0.0"),
    )


# ── Pipeline ─────────────────────────────────────────────────────────────────

class PluginPipeline:
    """
    Runs plugin hooks for one endpoint, strictly in configured order.

    A hook that raises is logged and skipped; the chain continues with the
    next plugin. A request hook that ends the response stops the chain.
    """

    def __init__(self, plugins: Optional[Sequence[PluginDefinition]] = None):
        self.plugins: List[PluginDefinition] = list(plugins or [])

    @property
    def names(self) -> List[str]:
        return [p.name for p in self.plugins]

    def __len__(self) -> int:
        return len(self.plugins)

    @property
    def has_response_hooks(self) -> bool:
        """True when some plugin needs to see the buffered upstream response."""
        return any(p.on_response is not None for p in self.plugins)

    async def run_request(self, request: ProxyRequest, response: ProxyResponse) -> bool:
        """Run ``on_request`` hooks. Returns True if a hook ended the response."""
        for plugin in self.plugins:
            if response.ended:
                break
            if plugin.on_request is None:
                continue
            try:
                await _call(plugin.on_request, request, response)
            except Exception as e:
                _log_failure(PluginError(plugin.name, "on_request", e))
        return response.ended

    async def run_response(
        self,
        upstream: UpstreamResponse,
        request: ProxyRequest,
        response: ProxyResponse,
    ) -> None:
        """Run ``on_response`` hooks against the upstream response."""
        for plugin in self.plugins:
            if plugin.on_response is None:
                continue
            try:
                await _call(plugin.on_response, upstream, request, response)
            except Exception as e:
                _log_failure(PluginError(plugin.name, "on_response", e))


async def _call(hook: Callable[..., Any], *args: Any) -> None:
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


def _log_failure(error: PluginError) -> None:
    logger.error(str(error), exc_info=error.cause)


# ── Loader ───────────────────────────────────────────────────────────────────

class PluginLoader:
    """
    Resolves plugin references into PluginDefinitions.

    Usage::

        loader = PluginLoader()
        plugins = loader.load(["./plugins/request_id.py", "mypkg.hooks:plugin"])
    """

    def __init__(self, base_dir: Optional[Path] = None):
        self.base_dir = base_dir
        self._load_errors: List[Dict[str, str]] = []

    def load(self, references: Sequence[str]) -> List[PluginDefinition]:
        """
        Load each reference in order.

        References that cannot be loaded are logged and skipped.

        Returns:
            The loaded plugins, in configured order.
        """
        self._load_errors = []
        plugins: List[PluginDefinition] = []

        for ref in references:
            try:
                plugin = self.load_one(ref)
            except Exception as e:
                self._load_errors.append({"reference": ref, "error": str(e)})
                logger.warning(f"Failed to load plugin {ref}: {e}")
                continue
            plugins.append(plugin)
            logger.info(f"Loaded plugin: {plugin.name}")

        return plugins

    def load_one(self, ref: str) -> PluginDefinition:
        """Load a single reference. Raises on failure."""
        attr = ""
        target = ref
        # "module:attr", but leave Windows drive letters ("C:\...") alone
        if ":" in ref and not (len(ref) > 1 and ref[1] == ":"):
            target, attr = ref.rsplit(":", 1)

        if target.endswith(".py") or os.sep in target or "/" in target:
            path = self._resolve_path(target)
            module = self._load_file(path)
            short_name = path.stem
        else:
            module = importlib.import_module(target)
            short_name = target.rsplit(".", 1)[-1]

        if attr:
            obj = getattr(module, attr, None)
            if obj is None:
                raise AttributeError(f"{target} has no attribute '{attr}'")
            plugin = as_plugin(obj, name=attr)
        else:
            plugin = self._from_module(module, short_name)

        plugin.source_path = ref
        return plugin

    def _resolve_path(self, target: str) -> Path:
        path = Path(target).expanduser()
        if not path.is_absolute():
            path = (self.base_dir or Path.cwd()) / path
        if not path.exists():
            raise FileNotFoundError(f"Plugin not found: {target}")
        return path

    @staticmethod
    def _load_file(path: Path) -> types.ModuleType:
        # Same-named files in different directories must not share a module
        digest = hashlib.sha1(str(path.resolve()).encode("utf-8")).hexdigest()[:8]
        module_name = f"hop_plugin_{path.stem}_{digest}"
        spec = importlib.util.spec_from_file_location(module_name, str(path))
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot create module spec for {path}")

        module = importlib.util.module_from_spec(spec)

        # Temporarily add module to sys.modules so imports within the plugin work
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            raise ImportError(f"Error executing {path.name}: {e}") from e
        return module

    @staticmethod
    def _from_module(module: types.ModuleType, short_name: str) -> PluginDefinition:
        """
        Resolve a module into a plugin.

        Supports three forms, in order:
        1. A ``register()`` function returning a plugin object
        2. A module-level ``plugin`` object
        3. Module-level ``on_request`` / ``on_response`` functions
        """
        register = getattr(module, "register", None)
        if callable(register):
            return as_plugin(register(), name=short_name)

        obj = getattr(module, "plugin", None)
        if obj is not None:
            return as_plugin(obj, name=short_name)

        if hasattr(module, "on_request") or hasattr(module, "on_response"):
            plugin = as_plugin(module, name=short_name)
            plugin.name = short_name
            return plugin

        raise ValueError(
            f"{short_name}: No register() function, plugin object, "
            f"or on_request/on_response hooks found"
        )

    def get_load_errors(self) -> List[Dict[str, str]]:
        """Return any errors from the last load() call."""
        return self._load_errors.copy()
