import os
import logging
from logging.handlers import RotatingFileHandler

__version__ = '0.3.0'

CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
FILE_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'


def configure_logging(level='INFO', log_dir=None):
    """Configure application logging"""

    log_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers = [console_handler]

    # File handler, only when a log directory is configured
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'reback.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    # Replace handlers from any earlier call (settings are read after startup logging)
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # Keep third-party request logging quiet unless debugging
    if log_level > logging.DEBUG:
        for name in ('botocore', 'boto3', 's3transfer', 'urllib3', 'docker', 'apscheduler'):
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
