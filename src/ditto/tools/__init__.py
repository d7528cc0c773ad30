"""Tool hosts and the namespaced tool catalog."""

from .catalog import ToolCatalog, to_function_declaration
from .host import HttpToolHost, ToolHost

__all__ = ["HttpToolHost", "ToolCatalog", "ToolHost", "to_function_declaration"]
