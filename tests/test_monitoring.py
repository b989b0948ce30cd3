"""
Tests for alerting, metrics and the transient retry helper.
"""

import asyncio
import pytest
from unittest.mock import AsyncMock, Mock, patch

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from trade_ledger.config import Config
from trade_ledger.errors import NotFoundError, TransientError
from trade_ledger.monitoring import AlertLevel, AlertManager, MetricsCollector
from trade_ledger.retry import backoff_delay, retry_transient


class TestAlertManager:

    @pytest.mark.asyncio
    async def test_send_records_history(self):
        alerts = AlertManager(webhook_url=None)
        alert = await alerts.send(AlertLevel.ERROR, "Title", "Message", {"k": "v"})

        assert alert.sent_channels == ["console"]
        assert alerts.get_recent_alerts() == [alert]
        assert alert.to_dict()["level"] == "error"

    @pytest.mark.asyncio
    async def test_min_level_filters(self):
        alerts = AlertManager(webhook_url=None, min_alert_level=AlertLevel.WARNING)
        assert await alerts.send(AlertLevel.INFO, "quiet", "ignored") is None
        assert await alerts.warning("loud", "kept") is not None

    @pytest.mark.asyncio
    async def test_rate_limit_spares_critical(self):
        alerts = AlertManager(webhook_url=None, rate_limit_window=60, rate_limit_max=2)

        sent = [await alerts.warning("w", str(i)) for i in range(4)]
        assert sum(1 for a in sent if a is not None) == 2

        critical = [await alerts.critical("c", str(i)) for i in range(5)]
        assert all(a is not None for a in critical)

    @pytest.mark.asyncio
    async def test_webhook_used_when_configured(self):
        alerts = AlertManager(webhook_url="https://hooks.example.invalid/ledger")
        with patch.object(AlertManager, "_send_webhook", new=AsyncMock(return_value=True)) as webhook:
            alert = await alerts.data_integrity_violation("t1", "l1", "compensation failed")

        webhook.assert_awaited_once()
        assert alert.level == AlertLevel.CRITICAL
        assert alert.data == {"trade_id": "t1", "listing_id": "l1", "reason": "compensation failed"}

    @pytest.mark.asyncio
    async def test_index_update_deferred_is_warning(self):
        alerts = AlertManager(webhook_url=None)
        alert = await alerts.index_update_deferred("S", "l1", "timeout")
        assert alert.level == AlertLevel.WARNING

    @pytest.mark.asyncio
    async def test_webhook_timeout_does_not_escape_send(self):
        alerts = AlertManager(webhook_url="https://hooks.example.invalid/ledger")
        alerts._session = Mock(closed=False, post=Mock(side_effect=asyncio.TimeoutError()))

        alert = await alerts.critical("Data integrity violation", "trade t1")

        assert alert is not None
        assert alert.sent_channels == ["console"]
        assert alerts.get_recent_alerts(level=AlertLevel.CRITICAL) == [alert]


class TestMetricsCollector:

    def test_saga_counters_and_summary(self):
        metrics = MetricsCollector()
        metrics.record_saga("completed", 12)
        metrics.record_saga("settled_with_pending_index", 30)
        metrics.record_saga("compensated", 20)
        metrics.record_trade_event("created")

        summary = metrics.get_summary()
        assert summary["sagas"]["total"] == 3
        assert summary["sagas"]["completed"] == 2
        assert summary["sagas"]["compensated"] == 1
        assert summary["trades"]["created"] == 1

    def test_histogram_percentiles(self):
        metrics = MetricsCollector(histogram_size=100)
        for value in range(1, 101):
            metrics.observe_histogram("latency", value)

        assert metrics.get_histogram_percentile("latency", 50) == 51
        assert metrics.get_histogram_percentile("latency", 99) == 100
        assert metrics.get_histogram_percentile("missing", 50) == 0.0

    def test_query_metrics(self):
        metrics = MetricsCollector()
        metrics.record_query("list_trades", 5.0, 7)
        assert metrics.get_counter("queries_list_trades") == 1
        assert metrics.get_gauge("query_list_trades_last_count") == 7
        assert "query_list_trades_latency" in metrics.get_all_metrics()["histograms"]


class TestRetry:

    def test_backoff_is_capped(self):
        assert backoff_delay(1, base_delay=1, max_delay=10, jitter=0) == 1
        assert backoff_delay(3, base_delay=1, max_delay=10, jitter=0) == 4
        assert backoff_delay(10, base_delay=1, max_delay=10, jitter=0) == 10

    @pytest.mark.asyncio
    async def test_retries_transient_until_success(self):
        func = AsyncMock(side_effect=[TransientError("busy"), TransientError("busy"), "ok"])
        with patch.object(Config, "RETRY_BASE_DELAY", 0):
            assert await retry_transient(func, "arg", attempts=3) == "ok"
        assert func.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        func = AsyncMock(side_effect=TransientError("down"))
        with patch.object(Config, "RETRY_BASE_DELAY", 0):
            with pytest.raises(TransientError):
                await retry_transient(func, attempts=2)
        assert func.await_count == 2

    @pytest.mark.asyncio
    async def test_definite_errors_are_not_retried(self):
        func = AsyncMock(side_effect=NotFoundError("gone"))
        with pytest.raises(NotFoundError):
            await retry_transient(func, attempts=5)
        assert func.await_count == 1
