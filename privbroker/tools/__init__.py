"""
MCP tool registration.
"""
from .handlers import register_tools

__all__ = ["register_tools"]
