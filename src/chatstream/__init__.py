# Chat stream package init
import logging
import os


def _configure_logging() -> None:
    level_name = (os.getenv("CHATSTREAM_LOG_LEVEL") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logger = logging.getLogger("chatstream")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CHATSTREAM][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)

    llm_level_name = (os.getenv("CHATSTREAM_LLM_LOG_LEVEL") or level_name).upper()
    llm_level = getattr(logging, llm_level_name, level)
    logging.getLogger("chatstream.llm").setLevel(llm_level)


_configure_logging()
