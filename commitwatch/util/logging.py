import logging

LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARNING": logging.WARNING, "ERROR": logging.ERROR}


class LogConfig:
    """Global logging configuration"""

    _verbose = False
    _log_level = logging.INFO

    @classmethod
    def configure_logging(cls, level: str = "INFO"):
        """Configure logging globally, defaulting to INFO for unknown levels"""
        cls._log_level = LEVELS.get(level.upper(), logging.INFO)
        logging.basicConfig(
            level=cls._log_level,
            format="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            force=True,
        )
        # telegram's httpx transport logs every request
        for noisy in ("httpx", "httpcore", "aiosqlite"):
            logging.getLogger(noisy).setLevel(max(cls._log_level, logging.WARNING))

    @classmethod
    def set_verbose(cls, verbose: bool):
        cls._verbose = verbose
        cls.configure_logging("DEBUG" if verbose else "INFO")

    @classmethod
    def set_log_level(cls, level: str):
        """Set the log level directly"""
        cls.configure_logging(level)

    @classmethod
    def is_verbose(cls) -> bool:
        return cls._verbose


class Logger:
    """Wraps Python's logging with an optional structured suffix"""

    def __init__(self, source: str):
        """Initialize logger

        Args:
            source: Name of the component/module using the logger
        """
        self.source = source
        self.python_logger = logging.getLogger(source)

    @staticmethod
    def _format(message: str, extra_data: dict = None) -> str:
        return f"{message} - {extra_data}" if extra_data else message

    def debug(self, message: str, extra_data: dict = None) -> None:
        self.python_logger.debug(self._format(message, extra_data))

    def info(self, message: str, extra_data: dict = None) -> None:
        self.python_logger.info(self._format(message, extra_data))

    def warning(self, message: str, extra_data: dict = None) -> None:
        self.python_logger.warning(self._format(message, extra_data))

    def error(self, message: str, extra_data: dict = None, exc_info: bool = False) -> None:
        """Log an error message, optionally with the active traceback"""
        self.python_logger.error(self._format(message, extra_data), exc_info=exc_info)
