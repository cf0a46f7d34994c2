import logging
import json
import traceback
from typing import Dict, Any, Optional, List, Callable, Deque
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from collections import defaultdict, deque


class CityBriefError(Exception):
    """Base class for every error raised by the pipeline"""
    pass


class ConfigurationError(CityBriefError):
    """Missing API key, connection string or other required setting"""
    pass


class UpstreamError(CityBriefError):
    """Base for failures talking to a third-party API"""

    def __init__(self, message: str, service: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.status = status


class UpstreamTransientError(UpstreamError):
    """Timeout or connection reset that survived the retry budget"""
    pass


class UpstreamRejectionError(UpstreamError):
    """Provider answered with a 4xx; never retried"""
    pass


class ClassifierMalformedOutputError(CityBriefError):
    """LLM returned non-JSON or schema-violating output"""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class PayloadDecodeError(CityBriefError):
    """Upstream JSON did not have the expected top-level shape"""
    pass


class TotalPipelineFailure(CityBriefError):
    """Every data type failed for one city"""

    def __init__(self, city: str, errors: Dict[str, str]):
        joined = "; ".join(f"{k}: {v}" for k, v in errors.items())
        super().__init__(f"All data types failed for {city} ({joined})")
        self.city = city
        self.errors = errors


class InsufficientCacheError(CityBriefError):
    """Cached content for a city does not meet the dispatch quorum"""

    def __init__(self, city: str, missing: List[str]):
        super().__init__(f"Insufficient cached data for {city}: missing {', '.join(missing)}")
        self.city = city
        self.missing = missing


@dataclass
class ErrorContext:
    """Context for an error occurrence"""
    error_type: str
    error_message: str
    stack_trace: str
    timestamp: datetime
    service: str
    operation: str
    severity: str
    recovery_action: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data.pop("stack_trace", None)
        return data


class ErrorSeverity(Enum):
    """Error severity levels"""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ErrorHandler:
    """
    Records pipeline failures for operators.

    Nothing here decides control flow: failures are already recovered at the
    narrowest scope by the caller. The handler classifies, logs a structured
    line and keeps a bounded history that the status command can print.
    """

    def __init__(self, history_size: int = 100) -> None:
        self.error_history: Deque[ErrorContext] = deque(maxlen=history_size)
        self.error_counts: Dict[str, int] = defaultdict(int)

        self.recovery_strategies: Dict[type, Callable[[Exception], str]] = {
            ConfigurationError: self._suggest_config_recovery,
            UpstreamTransientError: self._suggest_transient_recovery,
            UpstreamRejectionError: self._suggest_rejection_recovery,
            TotalPipelineFailure: self._suggest_total_failure_recovery,
        }

        self.logger = logging.getLogger(__name__)

    def handle_error(
        self,
        error: Exception,
        service: str,
        operation: str,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorContext:
        error_type = type(error).__name__
        error_message = str(error)
        stack_trace = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        timestamp = datetime.now()

        severity = self.classify_severity(error)
        error_context = ErrorContext(
            error_type=error_type,
            error_message=error_message,
            stack_trace=stack_trace,
            timestamp=timestamp,
            service=service,
            operation=operation,
            severity=severity.value,
            recovery_action=self.get_recovery_suggestion(error),
            metadata=context or {},
        )

        self.error_history.append(error_context)
        self.error_counts[error_type] += 1

        self.logger.error(json.dumps({
            'event': 'error',
            'service': service,
            'operation': operation,
            'severity': severity.value,
            'error_type': error_type,
            'error_message': error_message,
            'timestamp': timestamp.isoformat(),
        }, ensure_ascii=False))

        return error_context

    def classify_severity(self, error: Exception) -> ErrorSeverity:
        if isinstance(error, ConfigurationError):
            return ErrorSeverity.CRITICAL
        if isinstance(error, TotalPipelineFailure):
            return ErrorSeverity.HIGH
        if isinstance(error, UpstreamRejectionError):
            return ErrorSeverity.MEDIUM
        if isinstance(error, (UpstreamTransientError, InsufficientCacheError)):
            return ErrorSeverity.MEDIUM
        return ErrorSeverity.LOW

    def get_recovery_suggestion(self, error: Exception) -> Optional[str]:
        for error_cls, strategy in self.recovery_strategies.items():
            if isinstance(error, error_cls):
                return strategy(error)
        return None

    def recent_errors(self, limit: int = 10) -> List[Dict[str, Any]]:
        return [ctx.to_dict() for ctx in list(self.error_history)[-limit:]]

    def get_error_summary(self) -> Dict[str, Any]:
        by_service: Dict[str, int] = defaultdict(int)
        for ctx in self.error_history:
            by_service[ctx.service] += 1
        return {
            'total_errors': sum(self.error_counts.values()),
            'by_type': dict(self.error_counts),
            'by_service': dict(by_service),
        }

    def _suggest_config_recovery(self, error: Exception) -> str:
        return "Set the missing key in the environment or .env file and restart the process."

    def _suggest_transient_recovery(self, error: Exception) -> str:
        return "Provider timed out or reset the connection; the next scheduled run will retry."

    def _suggest_rejection_recovery(self, error: Exception) -> str:
        status = getattr(error, 'status', None)
        if status in (401, 403):
            return "Provider rejected the credentials. Verify the API key and plan limits."
        if status == 429:
            return "Provider quota exhausted. Raise SEARCH_THROTTLE_SECONDS or upgrade the plan."
        return "Provider rejected the request. Check the query parameters."

    def _suggest_total_failure_recovery(self, error: Exception) -> str:
        return "Every data type failed for this city. Re-run with --collect --city after checking upstream status."
