import logging

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


def setup_logging(level: str = "INFO", name: str = "chat_cost_relay") -> logging.Logger:
    """Attach one stream handler to the package logger.

    Calling it again only updates the level.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(console_handler)
    else:
        for handler in logger.handlers:
            handler.setLevel(level)

    return logger
