"""
Webhook notifications
=====================

Hooks are read from ``<state>/webhooks.json``, either a bare list or::

    {"cooldown_seconds": 300,
     "webhooks": [{"type": "discord", "url": "...", "min_severity": "WARN"}]}

Supported types: discord, slack, generic (plain JSON POST).
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests

from .records import DiscoveryEvent, DiscoveryKind
from .scoring import Severity, severity_for
from .util import read_json, utc_now_iso

SEVERITY_ORDER = {Severity.INFO: 0, Severity.WARN: 1, Severity.CRITICAL: 2}
SEVERITY_COLOR = {Severity.INFO: 0x3498db, Severity.WARN: 0xf39c12, Severity.CRITICAL: 0xe74c3c}
MAX_LISTED = 10


class WebhookNotifier:
    def __init__(self, hooks: Optional[List[Dict[str, Any]]] = None,
                 cooldown_s: int = 300,
                 post: Callable[..., Any] = requests.post,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[logging.Logger] = None):
        self.hooks = hooks or []
        self.cooldown_s = cooldown_s
        self._post = post
        self._clock = clock
        self._cooldowns: Dict[str, float] = {}
        self.log = logger or logging.getLogger(__name__)

    @classmethod
    def from_file(cls, config_path: Path, **kwargs) -> "WebhookNotifier":
        data = read_json(config_path)
        hooks: List[Dict[str, Any]] = []
        cooldown = 300
        if isinstance(data, list):
            hooks = data
        elif isinstance(data, dict) and "webhooks" in data:
            hooks = data["webhooks"]
            cooldown = data.get("cooldown_seconds", 300)
        return cls(hooks, cooldown_s=cooldown, **kwargs)

    @property
    def enabled(self) -> bool:
        return len(self.hooks) > 0

    def _cooled_down(self, key: str) -> bool:
        last = self._cooldowns.get(key, 0)
        return (self._clock() - last) >= self.cooldown_s

    def notify(self, event_type: str, subject: str, message: str,
               severity: str = Severity.INFO) -> int:
        """POST to every hook whose threshold admits ``severity``.
        Returns the number of hooks reached. Never raises."""
        if not self.hooks:
            return 0

        cooldown_key = f"{event_type}:{subject}"
        # CRITICAL always fires
        if severity != Severity.CRITICAL and not self._cooled_down(cooldown_key):
            self.log.debug("Webhook %s suppressed by cooldown", cooldown_key)
            return 0
        self._cooldowns[cooldown_key] = self._clock()

        rank = SEVERITY_ORDER.get(severity, 0)
        sent = 0
        for hook in self.hooks:
            if SEVERITY_ORDER.get(hook.get("min_severity", Severity.INFO), 0) > rank:
                continue
            url = hook.get("url", "")
            if not url:
                continue
            hook_type = hook.get("type", "generic")
            payload = self._payload(hook_type, severity, event_type, subject, message)
            try:
                self._post(url, json=payload, timeout=10)
                sent += 1
            except requests.RequestException as e:
                self.log.warning("Webhook %s failed: %s", hook_type, str(e)[:100])
        return sent

    def notify_discoveries(self, events: Sequence[DiscoveryEvent],
                           cycle_id: Optional[str] = None) -> int:
        """One message per cycle summarising its discoveries."""
        if not events or not self.hooks:
            return 0
        ranked = sorted(events, key=lambda e: e.significance, reverse=True)
        severity = severity_for(ranked[0].significance)
        new = sum(1 for e in events if e.kind is DiscoveryKind.NEW)
        lines = [f"{new} new, {len(events) - new} updated"]
        for e in ranked[:MAX_LISTED]:
            caps = ", ".join(sorted(e.new_state.capabilities)) or "-"
            lines.append(f"{e.kind.value} {e.model_key} (significance {e.significance}; {caps})")
        if len(ranked) > MAX_LISTED:
            lines.append(f"... and {len(ranked) - MAX_LISTED} more")
        subject = ",".join(sorted(e.model_key for e in events))
        return self.notify("DISCOVERIES", subject, "\n".join(lines), severity)

    def _payload(self, hook_type: str, sev: str, event_type: str,
                 subject: str, message: str) -> Dict[str, Any]:
        title = f"[{sev}] {event_type}"
        if hook_type == "discord":
            return {
                "embeds": [{
                    "title": title,
                    "description": message,
                    "color": SEVERITY_COLOR.get(sev, 0x95a5a6),
                    "timestamp": utc_now_iso(),
                    "footer": {"text": "Model Registry"},
                }]
            }
        if hook_type == "slack":
            return {
                "blocks": [
                    {"type": "header", "text": {"type": "plain_text", "text": title}},
                    {"type": "section", "text": {"type": "mrkdwn", "text": message}},
                ]
            }
        return {
            "severity": sev,
            "event_type": event_type,
            "subject": subject,
            "message": message,
            "timestamp": utc_now_iso(),
        }
