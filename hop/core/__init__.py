"""
Hop Core Module
"""

from hop.core.manager import ProxyManager, ProxyState, wait_for_shutdown
from hop.core.plugins import PluginDefinition, PluginLoader, PluginPipeline
from hop.core.proxy import ProxyEngine
from hop.core.registry import ProcessProbe, Registry, RegistryEntry

__all__ = [
    "ProxyManager",
    "ProxyState",
    "wait_for_shutdown",
    "PluginDefinition",
    "PluginLoader",
    "PluginPipeline",
    "ProxyEngine",
    "ProcessProbe",
    "Registry",
    "RegistryEntry",
]
