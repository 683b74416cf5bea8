"""Tests for the cron entry points."""

from unittest.mock import AsyncMock, MagicMock, patch

from pydantic import SecretStr

from circle.scheduler.cron import drip_run, resync_run


def fake_config() -> MagicMock:
    config = MagicMock()
    config.scheduler_token = SecretStr("cron-secret")
    config.service_url = "http://localhost:8080/"
    return config


def test_resync_run_posts_with_cron_secret():
    with patch("circle.scheduler.cron.get_config", return_value=fake_config()), patch(
        "circle.scheduler.cron.trigger", new_callable=AsyncMock
    ) as mock_trigger:
        resync_run()

    mock_trigger.assert_awaited_once_with("/admin/resync", {"X-CRON-SECRET": "cron-secret"})


def test_drip_run_posts_with_bearer_token():
    with patch("circle.scheduler.cron.get_config", return_value=fake_config()), patch(
        "circle.scheduler.cron.trigger", new_callable=AsyncMock
    ) as mock_trigger:
        drip_run()

    mock_trigger.assert_awaited_once_with("/api/drip/run", {"Authorization": "Bearer cron-secret"})
