"""
強化ログシステムのテスト
"""

from user_data_sync.utils.enhanced_logger import EnhancedLogger, LogLevel, MetricsCollector, get_logger, setup_logging


class TestMetricsCollector:

    def test_success_rate(self):
        metrics = MetricsCollector()
        metrics.record_success("sync_cycle", 0.5)
        metrics.record_success("sync_cycle", 1.5)
        metrics.record_error("sync_cycle", "Network")

        summary = metrics.get_health_summary()

        assert summary['total_operations'] == 3
        assert round(summary['success_rate_percent'], 1) == 66.7
        assert summary['avg_durations']['sync_cycle_duration'] == 1.0

    def test_events_are_counted(self):
        metrics = MetricsCollector()
        metrics.record_event("sync/triggered")
        metrics.record_event("sync/triggered", 2)

        assert metrics.get_health_summary()['counters']['sync/triggered'] == 3


class TestEnhancedLogger:

    def test_operation_lifecycle(self):
        logger = EnhancedLogger("test_operations", LogLevel.DEBUG)

        context = logger.log_operation_start("sync_cycle", reason="Interval")
        logger.log_operation_end(context, success=True)
        context = logger.log_operation_start("sync_cycle", reason="Activity")
        logger.log_operation_end(context, success=False, error_message="offline")

        counters = logger.metrics.counters
        assert counters['sync_cycle_success'] == 1
        assert counters['sync_cycle_error_unknown'] == 1

    def test_error_records_type(self):
        logger = EnhancedLogger("test_errors")

        logger.error("Failed", error=ValueError("broken"), operation="apply")

        assert logger.metrics.counters['apply_error_ValueError'] == 1

    def test_health_status(self):
        logger = EnhancedLogger("test_health")
        assert logger.get_health_status()['overall_status'] == "healthy"

        logger.error("Failed", operation="sync_cycle")

        assert logger.get_health_status()['overall_status'] == "critical"

    def test_log_event_records_event(self):
        logger = EnhancedLogger("test_events", LogLevel.DEBUG)

        logger.log_event("sync/triggered", sources=["extensions"])

        assert logger.metrics.counters['sync/triggered'] == 1

    def test_metrics_disabled(self):
        logger = EnhancedLogger("test_no_metrics", metrics_enabled=False)

        logger.log_event("sync/triggered")

        assert logger.get_health_status() == {"status": "metrics_disabled"}


class TestLoggerRegistry:

    def test_loggers_are_cached(self):
        assert get_logger("test_cached") is get_logger("test_cached")

    def test_setup_logging_updates_levels(self):
        logger = get_logger("test_levels")

        setup_logging({"level": "debug"})
        try:
            assert logger.log_level == LogLevel.DEBUG
            assert get_logger("test_levels_new").log_level == LogLevel.DEBUG
        finally:
            setup_logging({"level": "INFO"})
