from __future__ import annotations
from typing import List, Dict, Any

class DashboardState:
    def __init__(self):
        self.feeds: List[Dict[str,Any]] = []
        self.alerts: Dict[str,int] = {}
        self.notifications: List[str] = []
        self.messages: List[str] = []

    def set_snapshot(self, snapshot: Dict[str,Any]):
        self.feeds = snapshot.get("feeds", [])
        self.alerts = snapshot.get("alerts", {})

    def add_notification(self, line: str, max_lines: int = 200):
        self.notifications.append(line)
        if len(self.notifications) > max_lines:
            self.notifications.pop(0)

    def add_message(self, line: str, max_lines: int = 50):
        self.messages.append(line)
        if len(self.messages) > max_lines:
            self.messages.pop(0)
