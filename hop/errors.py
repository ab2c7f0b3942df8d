"""
Hop Errors
==========
Exception hierarchy shared by the config layer, the proxy engine, the
process registry and the proxy manager.
"""

from __future__ import annotations

from typing import List, Optional


class HopError(Exception):
    """Base class for all Hop errors."""


class ConfigError(HopError):
    """The configuration file is unreadable or contains invalid rules."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or []
        if self.errors:
            message = message + ":\n" + "\n".join(f"  - {e}" for e in self.errors)
        super().__init__(message)


class PortInUseError(HopError):
    """The requested port is already bound by another socket."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(f"Port {port} is already in use")


class OwnershipConflictError(HopError):
    """Another live process owns the endpoint name."""

    def __init__(self, name: str, pid: int):
        self.name = name
        self.pid = pid
        super().__init__(
            f"Proxy {name} is already running in another process (PID: {pid})"
        )


class UpstreamError(HopError):
    """Forwarding to the target failed (refused, timeout, reset)."""


class PluginError(HopError):
    """A plugin hook raised while handling a request."""

    def __init__(self, plugin: str, phase: str, cause: BaseException):
        self.plugin = plugin
        self.phase = phase
        self.cause = cause
        super().__init__(f"Plugin '{plugin}' {phase} hook failed: {cause}")


class RegistryIOError(HopError):
    """The shared registry file could not be read or written."""


class ExternalTerminationError(HopError):
    """Signalling a proxy owned by another process failed."""

    def __init__(self, name: str, pid: int, cause: BaseException):
        self.name = name
        self.pid = pid
        self.cause = cause
        super().__init__(f"Failed to stop external proxy {name} (PID: {pid}): {cause}")


class CertificateError(HopError):
    """The TLS key/certificate pair is missing or unreadable."""
