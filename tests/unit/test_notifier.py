import sys
from pathlib import Path
from unittest.mock import Mock, patch

import requests

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from trailguard.notifier import DiscordNotifier


class TestDiscordNotifier:

    def test_disabled_without_url(self):
        notifier = DiscordNotifier(webhook_url="")
        assert notifier.enabled is False
        with patch("trailguard.notifier.requests.post") as post:
            assert notifier.send_risk_alert("hello", "critical") is False
        post.assert_not_called()

    def test_exit_alert_payload(self):
        notifier = DiscordNotifier(webhook_url="https://discord.test/hook")
        with patch("trailguard.notifier.requests.post", return_value=Mock(status_code=204)) as post:
            assert notifier.send_exit_alert("SOL", "long", 150.0, 152.0, 20.0, 0.2, "Trailing stop hit")

        payload = post.call_args.kwargs["json"]
        embed = payload["embeds"][0]
        assert payload["username"] == "TrailGuard"
        assert embed["title"] == "POSITION CLOSED: SOL"
        assert "Trailing stop hit" in embed["description"]
        assert embed["color"] == 0x00FF00

    def test_status_report_fields(self):
        notifier = DiscordNotifier(webhook_url="https://discord.test/hook")
        positions = [
            {"symbol": "SOL", "phase": "monitoring", "direction": "short", "entry_price": 150.0,
             "last_progress_pct": 1.25, "trailing_stop_price": 149.0},
            {"symbol": "ETH", "phase": "flat"},
        ]
        with patch("trailguard.notifier.requests.post", return_value=Mock(status_code=200)) as post:
            assert notifier.send_status_report("status", positions) is True

        fields = post.call_args.kwargs["json"]["embeds"][0]["fields"]
        assert fields[0]["value"].startswith("SHORT @ 150.0000")
        assert "+1.25%" in fields[0]["value"]
        assert fields[1]["value"] == "FLAT"

    def test_network_error_returns_false(self):
        notifier = DiscordNotifier(webhook_url="https://discord.test/hook")
        with patch("trailguard.notifier.requests.post", side_effect=requests.ConnectionError("down")):
            assert notifier.send_system_alert("title", "message") is False
