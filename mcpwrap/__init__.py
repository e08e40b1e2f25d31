"""
debug-mcp wrapper.

Fronts a leak-prone debug-mcp stdio server with a long-lived supervisor that
restarts it periodically while keeping the client's stream open.
"""

__version__ = "0.1.0"
