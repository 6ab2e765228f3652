"""
強化ログシステム - 構造化ログ（structlog）と標準ログの二系統出力、同期メトリクス収集
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import structlog


class LogLevel(Enum):
    """ログレベル定義"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MetricsCollector:
    """同期メトリクス収集"""

    def __init__(self):
        self.counters = defaultdict(int)
        self.histograms = defaultdict(list)
        self.start_time = datetime.now()

    def record_success(self, operation: str, duration: float):
        """成功メトリクス記録"""
        self.counters[f"{operation}_success"] += 1
        self.histograms[f"{operation}_duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        """エラーメトリクス記録"""
        self.counters[f"{operation}_error_{error_type}"] += 1

    def record_event(self, event_name: str, count: int = 1):
        """イベント記録"""
        self.counters[event_name] += count

    def get_health_summary(self) -> dict:
        """健全性サマリー"""
        uptime = (datetime.now() - self.start_time).total_seconds()

        total_successes = sum(count for key, count in self.counters.items() if key.endswith('_success'))
        total_errors = sum(count for key, count in self.counters.items() if '_error_' in key)
        total_operations = total_successes + total_errors
        success_rate = (total_successes / total_operations * 100) if total_operations > 0 else 100.0

        avg_durations = {
            key: sum(durations) / len(durations)
            for key, durations in self.histograms.items() if durations
        }

        return {
            'uptime_seconds': uptime,
            'success_rate_percent': success_rate,
            'total_operations': total_operations,
            'avg_durations': avg_durations,
            'counters': dict(self.counters),
        }


class EnhancedLogger:
    """強化ログシステム"""

    def __init__(self,
                 name: str = "user_data_sync",
                 log_level: LogLevel = LogLevel.INFO,
                 log_file: Optional[Path] = None,
                 metrics_enabled: bool = True):

        self.name = name
        self.log_level = log_level
        self.log_file = log_file
        self.metrics = MetricsCollector() if metrics_enabled else None

        self._setup_structured_logging()
        self._setup_standard_logging()

    def _setup_structured_logging(self):
        """構造化ログの設定"""
        def add_timestamp(logger, method_name, event_dict):
            event_dict['timestamp'] = datetime.now().isoformat()
            event_dict['logger'] = self.name
            return event_dict

        def json_formatter(logger, method_name, event_dict):
            return json.dumps(event_dict, ensure_ascii=False, default=str)

        structlog.configure(
            processors=[
                add_timestamp,
                structlog.processors.add_log_level,
                json_formatter,
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, self.log_level.value)
            ),
            logger_factory=structlog.WriteLoggerFactory(),
            cache_logger_on_first_use=False,
        )

        self.structured_logger = structlog.get_logger(self.name)

    def _setup_standard_logging(self):
        """標準ログの設定"""
        self.logger = logging.getLogger(self.name)
        self.logger.setLevel(getattr(logging, self.log_level.value))

        if self.logger.handlers:
            return

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        if self.log_file:
            self.log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

    def info(self, message: str, **kwargs):
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[Exception] = None, **kwargs):
        """エラーログ"""
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        """内部ログ処理"""
        if self.metrics and level in [LogLevel.ERROR, LogLevel.CRITICAL]:
            operation = kwargs.get('operation', 'unknown')
            error_type = kwargs.get('error_type', 'unknown')
            self.metrics.record_error(operation, error_type)

        # 構造化ログ
        getattr(self.structured_logger, level.value.lower())(message, **kwargs)

        # 標準ログ
        log_method = getattr(self.logger, level.value.lower())
        if kwargs:
            message_with_context = f"{message} | Context: {json.dumps(kwargs, default=str)}"
        else:
            message_with_context = message
        log_method(message_with_context)

    def log_event(self, event_name: str, **context):
        """テレメトリイベント"""
        if self.metrics:
            self.metrics.record_event(event_name)
        self.debug(f"Telemetry: {event_name}", event_name=event_name, **context)

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.debug(f"Operation started: {operation}", operation=operation, status='started', **context)
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ"""
        end_time = datetime.now()
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation')
        duration = (end_time - start_time).total_seconds() if start_time else 0.0

        result_context = {
            **{k: v for k, v in operation_context.items() if k != 'start_time'},
            'duration_seconds': duration,
            'status': 'success' if success else 'failed',
            **additional_context
        }

        if success:
            if self.metrics:
                self.metrics.record_success(operation, duration)
            self.info(f"Operation completed: {operation} ({duration:.2f}s)", **result_context)
        else:
            self.error(f"Operation failed: {operation} ({duration:.2f}s)", **result_context)

    def get_health_status(self) -> dict:
        """健全性ステータス"""
        if not self.metrics:
            return {"status": "metrics_disabled"}

        health_summary = self.metrics.get_health_summary()
        success_rate = health_summary.get('success_rate_percent', 100.0)
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        elif success_rate >= 70.0:
            status = "degraded"
        else:
            status = "critical"

        return {
            "overall_status": status,
            "timestamp": datetime.now().isoformat(),
            **health_summary
        }


_loggers: Dict[str, EnhancedLogger] = {}
_defaults: Dict[str, Any] = {"log_level": LogLevel.INFO, "log_file": None, "metrics_enabled": True}


def get_logger(name: str = "user_data_sync",
               log_level: Optional[LogLevel] = None,
               log_file: Optional[Path] = None) -> EnhancedLogger:
    """名前ごとのロガー取得"""
    if name not in _loggers:
        _loggers[name] = EnhancedLogger(
            name,
            log_level or _defaults["log_level"],
            log_file or _defaults["log_file"],
            _defaults["metrics_enabled"]
        )
    return _loggers[name]


def setup_logging(config: dict = None):
    """ログ設定の初期化（以降に生成されるロガーと既存ロガーのレベルに反映）"""
    config = config or {}

    log_level = LogLevel(str(config.get('level') or 'INFO').upper())
    log_file_path = config.get('file_path')

    _defaults["log_level"] = log_level
    _defaults["log_file"] = Path(log_file_path) if log_file_path else None
    _defaults["metrics_enabled"] = config.get('metrics_enabled', True)

    for enhanced_logger in _loggers.values():
        enhanced_logger.log_level = log_level
        enhanced_logger.logger.setLevel(getattr(logging, log_level.value))

    logging.getLogger("user_data_sync").setLevel(getattr(logging, log_level.value))
    return get_logger()
