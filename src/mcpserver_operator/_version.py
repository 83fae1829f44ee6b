"""Version information for mcpserver-operator."""

import importlib.metadata

try:
    __version__ = importlib.metadata.version("mcpserver-operator")
except importlib.metadata.PackageNotFoundError:
    __version__ = "0.1.0+dev"
