# chatlink package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("CHATLINK_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("chatlink")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CHATLINK][%(levelname)s] %(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    ai_level_name = (os.getenv("CHATLINK_AI_LOG_LEVEL") or level_name).upper()
    ai_level = getattr(logging, ai_level_name, level)
    logging.getLogger("chatlink.ai").setLevel(ai_level)


_configure_logging()
