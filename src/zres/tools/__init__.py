from zres.tools.registry import BuiltinRegistry, BuiltinTool, ToolContext, help_summary
from zres.tools.builtins import BUILTINS
from zres.tools.locator import ToolLocator, ToolTarget, ToolTier

__all__ = [
    "BUILTINS",
    "BuiltinRegistry",
    "BuiltinTool",
    "ToolContext",
    "ToolLocator",
    "ToolTarget",
    "ToolTier",
    "help_summary",
]
