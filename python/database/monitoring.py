"""
Performance and Decision Monitoring for the KYC Screening Engine

This module provides:
- Query timing context manager for slow query detection
- Prometheus metrics for screening attempts, provider latency,
  case escalation and audit channel health
- Database health check with pool statistics

Usage:
    from database.monitoring import query_timer, record_screening_attempt

    with query_timer("select_stale"):
        ids = repo.select_stale(cutoff, 50)
"""

import logging
import time
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any

from prometheus_client import Histogram, Counter, Gauge

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    slow_query_threshold_ms: float = 1000.0  # Log queries slower than this
    warning_threshold_ms: float = 500.0       # Info-log queries slower than this
    enable_prometheus: bool = True
    enable_logging: bool = True


_config = MonitoringConfig()


# ============================================
# PROMETHEUS METRICS
# ============================================

db_query_duration = Histogram(
    'kyc_db_query_duration_seconds',
    'Database query duration in seconds',
    ['operation', 'status'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
)

db_slow_queries_total = Counter(
    'kyc_db_slow_queries_total',
    'Total number of slow database queries',
    ['operation']
)

screening_attempts_total = Counter(
    'kyc_screening_attempts_total',
    'Screening attempts by trigger and outcome',
    ['trigger', 'outcome']
)

provider_latency = Histogram(
    'kyc_screening_provider_seconds',
    'Screening provider call latency in seconds',
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

cases_escalated_total = Counter(
    'kyc_cases_escalated_total',
    'Escalation decisions by action',
    ['action']
)

audit_events_dropped_total = Counter(
    'kyc_audit_events_dropped_total',
    'Audit events dropped because the write channel was full'
)

audit_write_failures_total = Counter(
    'kyc_audit_write_failures_total',
    'Audit events that failed to persist'
)

audit_queue_depth = Gauge(
    'kyc_audit_queue_depth',
    'Audit events waiting in the write channel'
)

db_pool_checked_out = Gauge(
    'kyc_db_pool_checked_out',
    'Number of connections currently checked out'
)


def record_screening_attempt(trigger: str, outcome: str) -> None:
    if _config.enable_prometheus:
        screening_attempts_total.labels(trigger=trigger, outcome=outcome).inc()


def observe_provider_latency(seconds: float) -> None:
    if _config.enable_prometheus:
        provider_latency.observe(seconds)


def record_escalation(action: str) -> None:
    if _config.enable_prometheus:
        cases_escalated_total.labels(action=action).inc()


def record_audit_drop() -> None:
    if _config.enable_prometheus:
        audit_events_dropped_total.inc()


def record_audit_write_failure() -> None:
    if _config.enable_prometheus:
        audit_write_failures_total.inc()


def set_audit_queue_depth(depth: int) -> None:
    if _config.enable_prometheus:
        audit_queue_depth.set(depth)


# ============================================
# QUERY STATS TRACKING
# ============================================

@dataclass
class QueryStats:
    """Statistics for a single query type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    slow_queries: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        """Average query time in milliseconds."""
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        """Record a query execution."""
        self.count += 1
        self.total_time_ms += duration_ms
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()

        if error:
            self.errors += 1
        if slow:
            self.slow_queries += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow_queries': self.slow_queries,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class QueryStatsCollector:
    """Thread-safe collector for query statistics."""

    def __init__(self):
        self._stats: Dict[str, QueryStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = QueryStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {
                    op: stats.to_dict() for op, stats in self._stats.items()
                }
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


# Global stats collector
_stats_collector = QueryStatsCollector()


def get_db_metrics() -> Dict[str, Any]:
    """
    Get current database metrics.

    Returns:
        Dictionary with query statistics
    """
    return _stats_collector.get_stats()


def reset_metrics() -> None:
    """Reset all collected query statistics."""
    _stats_collector.reset()


# ============================================
# QUERY TIMER
# ============================================

@contextmanager
def query_timer(operation: str):
    """
    Context manager to time and monitor database operations.

    Logs slow operations and records metrics for monitoring.

    Args:
        operation: Name of the operation (e.g., 'select_stale', 'audit_search')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000

        is_slow = duration_ms > _config.slow_query_threshold_ms
        is_warning = duration_ms > _config.warning_threshold_ms

        _stats_collector.record(
            operation=operation,
            duration_ms=duration_ms,
            error=error_occurred,
            slow=is_slow
        )

        if _config.enable_prometheus:
            status = "error" if error_occurred else "success"
            db_query_duration.labels(operation=operation, status=status).observe(duration)
            if is_slow:
                db_slow_queries_total.labels(operation=operation).inc()

        if _config.enable_logging:
            if is_slow:
                logger.warning(
                    f"SLOW QUERY: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_query_threshold_ms}ms)"
                )
            elif is_warning and not error_occurred:
                logger.info(f"Query {operation} took {duration_ms:.2f}ms")


# ============================================
# HEALTH CHECK
# ============================================

@dataclass
class HealthStatus:
    """Database health status."""
    healthy: bool
    latency_ms: float
    pool_checked_out: int = 0
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'healthy': self.healthy,
            'latency_ms': round(self.latency_ms, 2),
            'pool_checked_out': self.pool_checked_out,
            'error': self.error,
            'timestamp': self.timestamp.isoformat()
        }


def check_health(engine, session_factory) -> HealthStatus:
    """
    Perform database health check with metrics.

    Args:
        engine: SQLAlchemy Engine
        session_factory: SQLAlchemy session factory

    Returns:
        HealthStatus with check results
    """
    from sqlalchemy import text
    from sqlalchemy.exc import SQLAlchemyError

    start_time = time.perf_counter()

    try:
        session = session_factory()
        try:
            session.execute(text("SELECT 1"))
            latency = (time.perf_counter() - start_time) * 1000

            checked_out = 0
            checkedout_fn = getattr(engine.pool, "checkedout", None)
            if checkedout_fn is not None:
                checked_out = checkedout_fn()
                if _config.enable_prometheus:
                    db_pool_checked_out.set(checked_out)

            return HealthStatus(healthy=True, latency_ms=latency, pool_checked_out=checked_out)
        finally:
            session.close()

    except SQLAlchemyError as e:
        latency = (time.perf_counter() - start_time) * 1000
        logger.error(f"Database health check failed: {e}")
        return HealthStatus(healthy=False, latency_ms=latency, error=str(e))
