# ============================================================================
# FILE: src/airshed/config/logging_config.py
# ============================================================================
import logging
import logging.handlers
import sys
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional

# style -> (file format, console format); selected by ``logging.format`` in config.yaml
LOG_FORMATS = {
    'detailed': ("%(asctime)s - %(name)s - %(levelname)s - %(module)s:%(funcName)s:%(lineno)d - %(message)s",
                 "%(asctime)s - %(levelname)s - %(name)s - %(message)s"),
    'simple': ("%(levelname)s - %(name)s - %(message)s",
               "%(levelname)s - %(name)s - %(message)s"),
    'json': ('{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
             '"function": "%(funcName)s", "line": %(lineno)d, "message": "%(message)s"}',) * 2,
}


def setup_logging(log_level: str = "INFO",
                 log_file: Optional[str] = None,
                 log_dir: str = "logs",
                 max_file_size: int = 10 * 1024 * 1024,  # 10MB
                 backup_count: int = 5,
                 console_output: bool = True,
                 format_style: str = "detailed") -> logging.Logger:
    """
    Setup logging for the emission aggregation and trajectory pipelines.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Specific log file path (optional)
        log_dir: Directory for log files
        max_file_size: Maximum size of log file before rotation (bytes)
        backup_count: Number of backup files to keep
        console_output: Whether to output logs to console
        format_style: Key of LOG_FORMATS

    Returns:
        Configured logger instance
    """

    if format_style not in LOG_FORMATS:
        raise ValueError(f"Unknown log format '{format_style}'; choose from {sorted(LOG_FORMATS)}")

    log_dir_path = Path(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)

    if log_file is None:
        timestamp = datetime.now().strftime("%Y%m%d")
        log_file = log_dir_path / f"airshed_{timestamp}.log"
    else:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    file_format, console_format = LOG_FORMATS[format_style]
    file_formatter = logging.Formatter(file_format, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    file_handler = logging.handlers.RotatingFileHandler(
        filename=log_file,
        maxBytes=max_file_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(file_formatter)
    root_logger.addHandler(file_handler)

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter(console_format, datefmt="%H:%M:%S"))
        root_logger.addHandler(console_handler)

    # Per-file and per-chunk failures end up here as well
    error_log_file = log_dir_path / f"errors_{datetime.now().strftime('%Y%m%d')}.log"
    error_handler = logging.handlers.RotatingFileHandler(
        filename=error_log_file,
        maxBytes=max_file_size,
        backupCount=backup_count,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.WARNING)
    error_handler.setFormatter(file_formatter)
    root_logger.addHandler(error_handler)

    _configure_module_loggers(numeric_level)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging to {log_file} (level={log_level}, format={format_style}), "
                f"warnings also to {error_log_file}")

    return logger


def setup_logging_from_config(log_config: Dict, log_file: Optional[str] = None,
                              verbose: bool = False) -> logging.Logger:
    """Apply the ``logging`` section of config.yaml."""

    return setup_logging(
        log_level="DEBUG" if verbose else log_config.get('level', 'INFO'),
        log_file=log_file,
        log_dir=log_config.get('dir', 'logs'),
        max_file_size=int(log_config.get('max_file_mb', 10)) * 1024 * 1024,
        backup_count=int(log_config.get('backup_count', 5)),
        console_output=bool(log_config.get('console', True)),
        format_style=log_config.get('format', 'detailed'),
    )


def _configure_module_loggers(level: int):
    """Configure specific loggers for the package and noisy dependencies."""

    module_configs = {
        'airshed.data': level,
        'airshed.analysis': level,
        'airshed.trajectory': level,
        'airshed.utils': level,
    }

    # Geospatial IO libraries log every file open at INFO/DEBUG
    external_configs = {
        'fiona': logging.WARNING,
        'pyogrio': logging.WARNING,
        'pyproj': logging.WARNING,
    }

    for module_name, module_level in module_configs.items():
        logging.getLogger(module_name).setLevel(module_level)

    for module_name, module_level in external_configs.items():
        logging.getLogger(module_name).setLevel(module_level)


def log_function_call(func):
    """Decorator to log function calls with execution time."""

    import functools
    import time

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        start_time = time.time()

        logger.debug(f"Entering {func.__name__} with args={len(args)}, kwargs={list(kwargs.keys())}")

        try:
            result = func(*args, **kwargs)
            execution_time = time.time() - start_time

            logger.debug(f"Completed {func.__name__} in {execution_time:.3f} seconds")

            if execution_time > 1.0:
                perf_logger = logging.getLogger('performance')
                perf_logger.info(f"{func.__module__}.{func.__name__} took {execution_time:.3f} seconds")

            return result

        except Exception as e:
            execution_time = time.time() - start_time
            logger.error(f"Failed {func.__name__} after {execution_time:.3f} seconds: {str(e)}")
            raise

    return wrapper


def log_system_info():
    """Log system information relevant to worker pool sizing."""

    import platform
    import psutil

    logger = logging.getLogger(__name__)

    logger.info("SYSTEM INFORMATION:")
    logger.info(f"  Platform: {platform.platform()}")
    logger.info(f"  Python version: {platform.python_version()}")
    logger.info(f"  CPU cores: {psutil.cpu_count()}")
    logger.info(f"  Memory: {psutil.virtual_memory().total / (1024**3):.1f} GB")
    logger.info(f"  Available memory: {psutil.virtual_memory().available / (1024**3):.1f} GB")
