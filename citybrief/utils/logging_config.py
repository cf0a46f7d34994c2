"""
Logging setup for CityBrief.

Console output is colour-coded by level; files rotate at midnight and a
separate errors.log keeps ERROR and above. With ``structured=True`` every
handler writes one JSON object per line, carrying the city and data type
when a log call passes them in ``extra``.
"""

import json
import logging
import logging.handlers
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Record attributes copied into JSON lines when a call site sets them via `extra`
CONTEXT_FIELDS = ('city', 'data_type', 'job', 'stage')

QUIET_LOGGERS = ('aiohttp.access', 'aiosqlite', 'google_genai', 'httpx', 'premailer', 'cssutils')


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            'ts': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
            'where': f"{record.module}.{record.funcName}:{record.lineno}",
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        metrics = getattr(record, 'metrics', None)
        if metrics:
            entry['metrics'] = metrics
        if record.exc_info:
            entry['exc'] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    LEVEL_COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, '')
        city = getattr(record, 'city', None)
        scope = f"{record.name.rsplit('.', 1)[-1]}{'/' + city if city else ''}"
        line = f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:<8} {scope:<28} {record.getMessage()}{self.RESET}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    log_level: str = "INFO",
    log_dir: Optional[str] = None,
    enable_file_logging: bool = True,
    structured: bool = False,
    retention_days: int = 14,
) -> None:
    """
    Install CityBrief's handlers on the root logger, replacing any present.

    Args:
        log_level: Root level name (DEBUG, INFO, ...)
        log_dir: Directory for citybrief.log and errors.log (defaults to ./logs)
        enable_file_logging: Write log files in addition to the console
        structured: Emit JSON lines instead of human-readable text
        retention_days: Rotated daily files to keep
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()

    text_format = logging.Formatter('%(asctime)s | %(levelname)-8s | %(name)s | %(message)s')

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(StructuredFormatter() if structured else ColoredConsoleFormatter())
    root.addHandler(console)

    if enable_file_logging:
        directory = Path(log_dir) if log_dir else Path.cwd() / "logs"
        directory.mkdir(parents=True, exist_ok=True)

        daily = logging.handlers.TimedRotatingFileHandler(
            directory / "citybrief.log", when='midnight', backupCount=retention_days, encoding='utf-8'
        )
        daily.setLevel(logging.DEBUG)
        daily.setFormatter(StructuredFormatter() if structured else text_format)
        root.addHandler(daily)

        errors = logging.FileHandler(directory / "errors.log", encoding='utf-8')
        errors.setLevel(logging.ERROR)
        errors.setFormatter(StructuredFormatter() if structured else text_format)
        root.addHandler(errors)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class PerformanceTracker:
    """
    Time a pipeline stage and log how it ended.

    Stages slower than ``slow_after_ms`` are logged at WARNING so a stalled
    upstream stands out in the daily log.
    """

    def __init__(self, operation_name: str, logger: Optional[logging.Logger] = None,
                 slow_after_ms: float = 60_000):
        self.operation_name = operation_name
        self.logger = logger or logging.getLogger(__name__)
        self.slow_after_ms = slow_after_ms
        self.duration_ms: float = 0.0
        self._started: Optional[float] = None

    def __enter__(self) -> "PerformanceTracker":
        self._started = time.perf_counter()
        self.logger.debug(f"⏱️ {self.operation_name} started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.duration_ms = (time.perf_counter() - (self._started or time.perf_counter())) * 1000
        if exc_type is not None:
            self.logger.error(f"💥 {self.operation_name} failed after {self.duration_ms:.0f}ms: {exc_val}")
        elif self.duration_ms > self.slow_after_ms:
            self.logger.warning(f"🐢 {self.operation_name} took {self.duration_ms:.0f}ms")
        else:
            self.logger.info(f"✅ {self.operation_name} done in {self.duration_ms:.0f}ms")
        return False


def log_pipeline_metrics(logger: logging.Logger, stage: str, input_count: int, output_count: int, **extra) -> Dict[str, Any]:
    """Log how many items a normalisation stage kept out of how many it received."""
    metrics = {
        'input': input_count,
        'output': output_count,
        'dropped': max(input_count - output_count, 0),
        **extra,
    }
    logger.info(f"📊 {stage}: kept {output_count} of {input_count}", extra={'stage': stage, 'metrics': metrics})
    return metrics
