"""
chainstate Utils - logging and id generation.
"""

from chainstate.utils.logging import get_logger, setup_logging
from chainstate.utils.ids import generate_id

__all__ = [
    "setup_logging",
    "get_logger",
    "generate_id",
]
