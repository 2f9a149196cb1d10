"""
Structured Logger
=================

Unified structured logger for all aidp operations.

Key Features:
- Levels: debug, info, warn, error
- Human-readable text lines or JSON lines
- Size-based rotation of the log file
- Redaction of secrets before anything is written
- Falls back to STDERR when the log file cannot be created
- Process-wide accessor backed by an explicitly configured instance

Usage:
    from aidp.logger import setup_logger, get_logger

    setup_logger(project_dir, {"level": "debug", "json": True})
    get_logger().info("worktree", "created", branch="feature/login")
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional
import json
import logging
import logging.handlers
import os
import re
import sys
import tempfile
import threading
import warnings

LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

LOG_DIR = ".aidp/logs"
INFO_LOG = f"{LOG_DIR}/aidp.log"

DEFAULT_MAX_SIZE_MB = 10
DEFAULT_MAX_BACKUPS = 5

REDACTED = "<REDACTED>"

# (pattern, replacement) pairs applied in order
REDACTION_PATTERNS = [
    (re.compile(r"""\b(api[_-]?key|token|secret|password|passwd|pwd)[=:]\s*['"]?([^\s'")]+)['"]?""", re.IGNORECASE),
     r"\1=" + REDACTED),
    (re.compile(r"Bearer\s+[A-Za-z0-9\-._~+/]+=*"), REDACTED),
    (re.compile(r"\bgh[ps]_[A-Za-z0-9_]{36,}"), REDACTED),
    (re.compile(r"\bAKIA[0-9A-Z]{16}"), REDACTED),
    (re.compile(r"""\b(secret|credentials?|auth)[=:]\s*['"]?([^\s'")]{8,})['"]?""", re.IGNORECASE),
     r"\1=" + REDACTED),
]

_DEBUG_TRUE_VALUES = {'true', 'on', 'yes', 'debug'}


def redact(text: Any) -> Any:
    """
    Replace known secret shapes in a string with the redaction marker.

    Non-string values are returned unchanged. A bare secret with no
    recognizable ``key=value`` shape around it is left as is.
    """
    if not isinstance(text, str):
        return text

    redacted = text
    for pattern, replacement in REDACTION_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def redact_mapping(metadata: Dict[str, Any]) -> Dict[str, Any]:
    """Redact every string value of a metadata mapping."""
    return {key: redact(value) if isinstance(value, str) else value for key, value in metadata.items()}


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _debug_env_enabled() -> bool:
    raw = os.environ.get("AIDP_DEBUG") or os.environ.get("DEBUG")
    if raw is None:
        return False

    normalized = raw.strip().lower()
    if normalized in _DEBUG_TRUE_VALUES:
        return True
    if normalized.isdigit():
        return int(normalized) > 0
    return False


class AidpLogger:
    """
    Leveled, structured logger writing to a rotating file.

    Each instance owns a private stdlib logger with either a
    RotatingFileHandler or, when the file cannot be created, a
    StreamHandler on stderr. The instance never raises on I/O problems.
    """

    _instance_counter = 0
    _counter_lock = threading.Lock()

    def __init__(self, project_dir: Optional[str] = None, config: Optional[Any] = None):
        """
        Initialize logger.

        Args:
            project_dir: Project root; log paths are resolved relative to it
            config: LoggingConfig or dict with level, json, file,
                max_size_mb and max_backups keys
        """
        self.config = self._normalize_config(config)
        self.project_dir = self._sanitize_project_dir(project_dir)
        self.level = self._determine_log_level()
        self.json_format = bool(self.config.get('json') or False)

        max_size_mb = self.config.get('max_size_mb')
        self.max_size = int(float(max_size_mb) * 1024 * 1024) if max_size_mb else DEFAULT_MAX_SIZE_MB * 1024 * 1024
        max_backups = self.config.get('max_backups')
        # backupCount=0 disables rollover in RotatingFileHandler
        self.max_backups = max(1, int(max_backups)) if max_backups is not None else DEFAULT_MAX_BACKUPS

        self.log_file: Optional[str] = None
        self.fallback_to_stderr = False
        self._logger = self._create_logger()

    def info(self, component: str, message: str, **metadata: Any) -> None:
        self.log('info', component, message, **metadata)

    def warn(self, component: str, message: str, **metadata: Any) -> None:
        self.log('warn', component, message, **metadata)

    # stdlib spelling
    warning = warn

    def error(self, component: str, message: str, **metadata: Any) -> None:
        self.log('error', component, message, **metadata)

    def debug(self, component: str, message: str, **metadata: Any) -> None:
        self.log('debug', component, message, **metadata)

    def log(self, level: str, component: str, message: str, **metadata: Any) -> None:
        """
        Log a message at the given level.

        Args:
            level: One of debug, info, warn, error
            component: Emitting component (e.g. "parallel_processor")
            message: Event message
            **metadata: Extra key/value pairs appended to the entry
        """
        if level not in LEVELS:
            level = 'info'
        if not self.should_log(level):
            return

        safe_message = redact(message)
        safe_metadata = redact_mapping(metadata)
        entry = self.format_entry(level, component, safe_message, safe_metadata)
        self._logger.log(LEVELS[level], entry)

    def should_log(self, level: str) -> bool:
        return LEVELS[level] >= LEVELS[self.level]

    def format_entry(self, level: str, component: str, message: Any, metadata: Dict[str, Any]) -> str:
        if self.json_format:
            return self._format_json(level, component, message, metadata)
        return self._format_text(level, component, message, metadata)

    def close(self) -> None:
        """Flush and close the underlying handlers."""
        for handler in list(self._logger.handlers):
            try:
                handler.flush()
                handler.close()
            except (OSError, ValueError):
                pass
            self._logger.removeHandler(handler)

    def _format_text(self, level: str, component: str, message: Any, metadata: Dict[str, Any]) -> str:
        line = f"{_timestamp()} {level.upper()} {component} {message}"
        if metadata:
            pairs = " ".join(f"{key}={redact(str(value))}" for key, value in metadata.items())
            line = f"{line} {pairs}"
        return line

    def _format_json(self, level: str, component: str, message: Any, metadata: Dict[str, Any]) -> str:
        entry = {
            'ts': _timestamp(),
            'level': level,
            'component': component,
            'msg': message,
        }
        entry.update(metadata)
        return json.dumps(entry, default=str)

    def _normalize_config(self, config: Optional[Any]) -> Dict[str, Any]:
        if config is None:
            return {}
        if hasattr(config, 'model_dump'):
            return config.model_dump(by_alias=True, exclude_none=True)
        return {str(key): value for key, value in dict(config).items()}

    def _determine_log_level(self) -> str:
        # explicit env override > config > debug flags > default
        if os.environ.get("AIDP_LOG_LEVEL"):
            level = os.environ["AIDP_LOG_LEVEL"]
        elif self.config.get('level'):
            level = self.config['level']
        elif _debug_env_enabled():
            level = 'debug'
        else:
            level = 'info'

        level = str(level).strip().lower()
        if level == 'warning':
            level = 'warn'
        return level if level in LEVELS else 'info'

    def _determine_log_file_path(self) -> Path:
        custom = (os.environ.get("AIDP_LOG_FILE") or self.config.get('file') or "").strip()
        path = Path(custom or INFO_LOG)
        if path.is_absolute():
            return path
        return Path(self.project_dir) / path

    def _create_logger(self) -> logging.Logger:
        with AidpLogger._counter_lock:
            AidpLogger._instance_counter += 1
            name = f"aidp.structured.{AidpLogger._instance_counter}"

        std_logger = logging.getLogger(name)
        std_logger.setLevel(logging.DEBUG)
        std_logger.propagate = False

        path = self._determine_log_file_path()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            handler: logging.Handler = logging.handlers.RotatingFileHandler(
                path,
                maxBytes=self.max_size,
                backupCount=self.max_backups,
                encoding="utf-8",
            )
            self.log_file = str(path)
        except OSError as e:
            warnings.warn(
                f"[AIDP Logger] Failed to create log file at {path}: {e}. Falling back to STDERR.",
                RuntimeWarning,
                stacklevel=3,
            )
            handler = logging.StreamHandler(sys.stderr)
            self.fallback_to_stderr = True

        handler.setFormatter(logging.Formatter("%(message)s"))
        std_logger.addHandler(handler)
        return std_logger

    def _sanitize_project_dir(self, project_dir: Optional[Any]) -> str:
        cwd = os.getcwd()
        if project_dir is None:
            raw = cwd
        else:
            raw = str(project_dir)
            if not raw or re.search(r"[<>|]", raw) or re.search(r"[\x00-\x1f]", raw):
                warnings.warn(
                    f"[AIDP Logger] Invalid project_dir '{raw}' - falling back to {cwd}",
                    RuntimeWarning,
                    stacklevel=3,
                )
                raw = cwd

        if raw == os.sep:
            fallback = str(Path.home()) if str(Path.home()) not in ("", os.sep) else tempfile.gettempdir()
            warnings.warn(
                f"[AIDP Logger] Root directory detected - using {fallback} for logging instead of '{raw}'",
                RuntimeWarning,
                stacklevel=3,
            )
            return fallback
        return raw


# =============================================================================
# Process-wide accessor
# =============================================================================

_current_logger: Optional[AidpLogger] = None
_accessor_lock = threading.Lock()


def setup_logger(project_dir: Optional[str] = None, config: Optional[Any] = None) -> AidpLogger:
    """
    Create the process-wide logger, replacing (and closing) any previous one.

    Args:
        project_dir: Project root directory
        config: LoggingConfig or dict of logging options

    Returns:
        The new AidpLogger instance
    """
    global _current_logger
    new_logger = AidpLogger(project_dir, config)
    with _accessor_lock:
        previous = _current_logger
        _current_logger = new_logger
    if previous is not None:
        previous.close()
    return new_logger


def get_logger() -> AidpLogger:
    """Return the current process-wide logger, creating a default one if needed."""
    global _current_logger
    with _accessor_lock:
        if _current_logger is None:
            _current_logger = AidpLogger()
        return _current_logger


def shutdown_logger() -> None:
    """Flush, close and forget the process-wide logger."""
    global _current_logger
    with _accessor_lock:
        current = _current_logger
        _current_logger = None
    if current is not None:
        current.close()


def log_info(component: str, message: str, **metadata: Any) -> None:
    get_logger().info(component, message, **metadata)


def log_warn(component: str, message: str, **metadata: Any) -> None:
    get_logger().warn(component, message, **metadata)


def log_error(component: str, message: str, **metadata: Any) -> None:
    get_logger().error(component, message, **metadata)


def log_debug(component: str, message: str, **metadata: Any) -> None:
    get_logger().debug(component, message, **metadata)
