"""
Logging setup shared by the web app, CLI commands and the bootstrap script.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)-20s | %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(
    service_name: str = 'proctorquiz',
    level: str = 'INFO',
    log_dir: Optional[str] = None,
    log_to_console: bool = True,
) -> logging.Logger:
    """Configure the root logger; file handlers are only added when `log_dir` is given."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    root_logger.handlers = []

    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if log_dir:
        target = Path(log_dir)
        target.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            target / f'{service_name}.log', maxBytes=10 * 1024 * 1024, backupCount=5, encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            target / f'{service_name}_errors.log', maxBytes=5 * 1024 * 1024, backupCount=3, encoding='utf-8'
        )
        error_handler.setFormatter(formatter)
        error_handler.setLevel(logging.ERROR)
        root_logger.addHandler(error_handler)

    logger = logging.getLogger(service_name)
    logger.info('%s logging configured (level=%s, log_dir=%s)', service_name, level, log_dir or '-')
    return logger
