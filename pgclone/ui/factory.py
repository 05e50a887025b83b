"""Factory for creating UI interfaces."""
from typing import Any

from ..core.logging import get_logger
from .ascii import ASCIIInterface
from .rich_console import RichInterface

logger = get_logger(__name__)


def create_interface(interface_type: str = "rich", ui_config=None, **kwargs) -> Any:
    """Create an appropriate UI interface.

    Args:
        interface_type: Type of interface to create ('rich' or 'ascii')
        ui_config: UI configuration options (from config.ui)
        **kwargs: Additional arguments to pass to the interface constructor

    Returns:
        UI interface instance
    """
    if ui_config:
        kwargs.setdefault('show_logs', getattr(ui_config, 'show_logs', True))

    if interface_type.lower() == "ascii":
        logger.debug("Using basic ASCII interface")
        return ASCIIInterface(**kwargs)
    logger.debug("Using Rich interface")
    return RichInterface(**kwargs)
