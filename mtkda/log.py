import logging

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] : %(message)s'
LOG_DATEFMT = '%H:%M:%S'

logger = logging.getLogger("mtkda")


def setup_logging(debug: bool = False):
    """Install the console handler used by mtkda tools."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    # Elevate log level so TX/RX traffic lines are visible
    if debug:
        logger.setLevel(logging.DEBUG)
    return logger


def trace(direction: str, data: bytes, tag: str = ""):
    """Log one TX/RX buffer at DEBUG, truncated past 32 bytes."""
    if not data or not logger.isEnabledFor(logging.DEBUG):
        return
    t = tag or "DEFAULT"
    if len(data) > 32:
        logger.debug(f"[{t}] [{direction} len={len(data)}] {data[:16].hex(' ')}...")
    else:
        logger.debug(f"[{t}] [{direction} len={len(data)}] {data.hex(' ')}")
