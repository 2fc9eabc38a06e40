import logging
import sys
import os


class ColoredFormatter(logging.Formatter):
    """Custom formatter that adds colors to log levels"""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',    # cyan
        'INFO': '\033[32m',     # green
        'WARNING': '\033[33m',  # yellow
        'ERROR': '\033[31m',    # red
        'CRITICAL': '\033[35m', # magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def __init__(self, use_colors=True):
        super().__init__()
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self):
        """Check if terminal supports colors"""
        return (
            hasattr(sys.stderr, "isatty") and sys.stderr.isatty() and
            os.environ.get('TERM') != 'dumb' and
            os.environ.get('NO_COLOR') is None
        )

    def format(self, record):
        message = record.getMessage()
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"

        if self.use_colors:
            level_color = self.COLORS.get(record.levelname, '')
            level_name = f"{level_color}{self.BOLD}{record.levelname:<8}{self.RESET}"

            # format timestamp with subdued color
            timestamp = f"\033[90m{self.formatTime(record, '%H:%M:%S')}\033[0m"

            return f"{timestamp} {level_name} [{record.name}] {message}"
        else:
            # fallback to standard format without colors
            return f"{self.formatTime(record, '%Y-%m-%d %H:%M:%S')} - {record.levelname} - {record.name} - {message}"

# configure colored logging
def setup_logging(verbose=False, no_color=False):
    """Setup logging with colors and appropriate level"""
    logger = logging.getLogger()

    # remove existing handlers
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    # create console handler with colored formatter
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(ColoredFormatter(use_colors=not no_color))

    # set level
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    console_handler.setLevel(level)

    logger.addHandler(console_handler)

    # third-party clients are chatty at DEBUG
    for noisy in ('urllib3', 'web3', 'websockets', 'asyncio'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger

def shutdown_logging(logger=None):
    """Flush and close every handler attached to the given (or root) logger"""
    logger = logger or logging.getLogger()
    for handler in logger.handlers[:]:
        try:
            handler.flush()
            handler.close()
        finally:
            logger.removeHandler(handler)
