"""
rlmkit - recursive query orchestration over summarized knowledge agents
"""

from loguru import logger

__version__ = "0.1.0"
__logo__ = "🧭"

# Silent until an application opts in via configure_logging()
logger.disable("rlmkit")
