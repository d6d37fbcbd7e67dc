"""
TrailGuard - Discord Notification Module

Sends formatted alerts to Discord via webhook: opens, exits (with reason),
critical execution failures, stream health, and the periodic status report.

Blocking (requests). Call from async code through asyncio.to_thread.
Without a webhook URL every send is a no-op that returns False.
"""

import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")


class DiscordNotifier:
    """Sends embed cards to Discord."""

    def __init__(self, webhook_url: str = WEBHOOK_URL, username: str = "TrailGuard"):
        self.url = webhook_url
        self.username = username

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def _footer(self) -> Dict[str, str]:
        return {"text": f"TrailGuard | {datetime.utcnow().strftime('%Y-%m-%d %H:%M UTC')}"}

    def send_trade_alert(
        self,
        symbol: str,
        direction: str,
        entry_price: float,
        size: float,
        stop_loss: float,
        take_profit: Optional[float] = None,
        trailing_stop: Optional[float] = None,
    ) -> bool:
        """'Position opened' card, green for long and red for short."""
        color = 0x00FF00 if direction.lower() == "long" else 0xFF0000

        fields = [
            {"name": "Direction", "value": direction.upper(), "inline": True},
            {"name": "Entry Price", "value": f"${entry_price:,.4f}", "inline": True},
            {"name": "Size", "value": f"{size:.4f}", "inline": True},
            {"name": "Stop Loss", "value": f"${stop_loss:,.4f}", "inline": True},
        ]
        if take_profit:
            fields.append({"name": "Take Profit", "value": f"${take_profit:,.4f}", "inline": True})
        if trailing_stop:
            fields.append({"name": "Trailing Stop", "value": f"${trailing_stop:,.4f}", "inline": True})

        embed = {
            "title": f"NEW POSITION: {symbol}",
            "description": "**Position confirmed open. Guard engaged.**",
            "color": color,
            "fields": fields,
            "footer": self._footer(),
        }
        return self._post(embed)

    def send_exit_alert(
        self,
        symbol: str,
        direction: str,
        entry_price: float,
        exit_price: float,
        pnl: float,
        pnl_percent: float,
        reason: str,
    ) -> bool:
        """'Position closed' card with the exit reason."""
        color = 0x00FF00 if pnl >= 0 else 0xFF0000

        embed = {
            "title": f"POSITION CLOSED: {symbol}",
            "description": f"**{reason}**",
            "color": color,
            "fields": [
                {"name": "Direction", "value": direction.upper(), "inline": True},
                {"name": "Entry", "value": f"${entry_price:,.4f}", "inline": True},
                {"name": "Exit", "value": f"${exit_price:,.4f}", "inline": True},
                {"name": "P&L", "value": f"${pnl:,.2f}", "inline": True},
                {"name": "Balance Impact", "value": f"{pnl_percent:+.2f}%", "inline": True},
            ],
            "footer": self._footer(),
        }
        return self._post(embed)

    def send_risk_alert(self, message: str, severity: str = "warning") -> bool:
        """Risk / execution alert (blue info, orange warning, red critical)."""
        colors = {
            "info": 0x3498DB,
            "warning": 0xFFA500,
            "critical": 0xFF0000,
        }
        embed = {
            "title": "CRITICAL ALERT" if severity == "critical" else "RISK ALERT",
            "description": message,
            "color": colors.get(severity, 0xFFA500),
            "footer": self._footer(),
        }
        return self._post(embed)

    def send_system_alert(self, title: str, message: str) -> bool:
        """General system status card (blue)."""
        embed = {
            "title": title,
            "description": message,
            "color": 0x3498DB,
            "footer": self._footer(),
        }
        return self._post(embed)

    def send_status_report(self, title: str, positions: List[Dict[str, Any]]) -> bool:
        """One field per symbol with phase, direction and progress."""
        fields = []
        for p in positions:
            if p.get("phase") in ("monitoring", "closing"):
                progress = p.get("last_progress_pct")
                stop = p.get("trailing_stop_price")
                value = f"{(p.get('direction') or '?').upper()} @ {p.get('entry_price', 0):,.4f}"
                if progress is not None:
                    value += f"\nProgress: {progress:+.2f}%"
                if stop is not None:
                    value += f"\nTrailing stop: {stop:,.4f}"
            else:
                value = p.get("phase", "flat").upper()
            fields.append({"name": p.get("symbol", "?"), "value": value, "inline": True})

        embed = {
            "title": title,
            "color": 0x3498DB,
            "fields": fields or [{"name": "Positions", "value": "None configured", "inline": False}],
            "footer": self._footer(),
        }
        return self._post(embed)

    def _post(self, embed_data: dict) -> bool:
        """Posts embed to Discord webhook."""
        if not self.url:
            return False

        payload = {"username": self.username, "embeds": [embed_data]}
        try:
            response = requests.post(self.url, json=payload, timeout=10)
            return response.status_code in (200, 204)
        except requests.RequestException as e:
            logger.warning(f"Failed to send Discord alert: {e}")
            return False
