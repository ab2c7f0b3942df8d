"""
Hop — Local Reverse-Proxy Endpoints
===================================

Runs independently configured local proxy endpoints, each forwarding a
local port to a remote target with:

  • CORS policy and preflight handling
  • Path filtering and regex path rewriting
  • Header injection with ``$VAR`` expansion
  • Optional TLS termination
  • A request/response plugin hook chain

Several Hop processes on one host share a process registry so they agree
on which endpoints are live.
"""

__version__ = "0.3.0"
__app_name__ = "Hop"
