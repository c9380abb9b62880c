import logging
import os
import traceback
from datetime import datetime
from typing import Optional, Union

DEFAULT_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


def setup_logging(level: Union[int, str] = logging.INFO, fmt: Optional[str] = None, log_file: Optional[str] = None) -> None:
	"""Configure root logging once. Later calls only attach a log file and set the level.
	If fmt is not provided, a sensible default is used.
	When log_file is given, output goes to both stderr and the file.
	"""
	if isinstance(level, str):
		level = logging.getLevelName(level.upper())
		if not isinstance(level, int):
			level = logging.INFO
	format_str = fmt or DEFAULT_FORMAT
	root = logging.getLogger()
	if root.handlers:
		# Already configured (module-level get_logger calls); only attach the log file
		if log_file:
			_attach_file_handler(root, log_file, format_str)
			root.setLevel(level)
		return
	handlers = [logging.StreamHandler()]
	if log_file:
		handlers.append(logging.FileHandler(log_file, encoding='utf-8'))
	logging.basicConfig(level=level, format=format_str, handlers=handlers)


def _attach_file_handler(root: logging.Logger, log_file: str, format_str: str) -> None:
	target = os.path.abspath(log_file)
	for handler in root.handlers:
		if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
			return
	handler = logging.FileHandler(log_file, encoding='utf-8')
	handler.setFormatter(logging.Formatter(format_str))
	root.addHandler(handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	"""Return a module/logger by name, after ensuring logging is configured."""
	setup_logging()
	return logging.getLogger(name) if name else logging.getLogger(__name__)


def log_exception(logger: logging.Logger, message: str = "An error occurred", exc_info: Exception = None) -> None:
	"""Centralized exception logging with full traceback.

	Args:
		logger: Logger instance to use
		message: Custom error message to log before the traceback
		exc_info: Exception instance (if None, uses current exception context)
	"""
	logger.error(message)
	if exc_info is not None:
		logger.error(f"Exception type: {type(exc_info).__name__}")
		logger.error(f"Exception message: {str(exc_info)}")
	logger.error("Full traceback:")
	logger.error(traceback.format_exc())


def setup_run_logging(output_dir: str, strategy: str, stage: Optional[str], level: Union[int, str] = logging.INFO, log_file: Optional[str] = None) -> str:
	"""Configure logging for one cleaner run, teeing output to a log file.

	Without an explicit log_file the file is named
	harbor-cleaner-<timestamp>-strategy-<strategy>[-stage-<stage>].log under output_dir.
	The stage part is left out when stage is None.

	Returns:
		Path of the log file
	"""
	if not log_file:
		timestamp = datetime.now().strftime("%Y-%m-%d-%H-%M-%S")
		name = f"harbor-cleaner-{timestamp}-strategy-{strategy}"
		if stage:
			name += f"-stage-{stage}"
		log_file = os.path.join(output_dir, f"{name}.log")
	parent = os.path.dirname(log_file)
	if parent:
		os.makedirs(parent, exist_ok=True)
	setup_logging(level, log_file=log_file)
	return log_file
