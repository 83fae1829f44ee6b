"""
MCPServer Operator

Keeps a Deployment and a Service in sync with each MCPServer custom resource.
"""

from mcpserver_operator._version import __version__

__all__ = ["__version__"]
