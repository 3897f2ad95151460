import os
import time
from typing import Any, Dict

import requests

from config_service import Settings, get_auth_header, get_log_endpoint


class AppLogger:
    """Server-side log sink of one app instance: stdout, its log file and its optional log endpoint."""

    def __init__(self, settings: Settings):
        self.log_file = settings.log_file
        self.endpoint = get_log_endpoint(settings)
        self.headers = get_auth_header(settings)

    def _append_log_file(self, line: str) -> None:
        if not self.log_file:
            return
        try:
            parent = os.path.dirname(self.log_file)
            if parent:
                os.makedirs(parent, exist_ok=True)
            now = time.strftime('%Y-%m-%d %H:%M:%S')
            with open(self.log_file, "a") as f:
                f.write(f"[{now}] {line}\n")
        except OSError:
            pass

    def log(self, msg: str, level: str = "INFO") -> None:
        line = f"[{level}] {msg}"
        print(line, flush=True)
        self._append_log_file(line)

    def forward(self, payload: Dict[str, Any]) -> None:
        """POST a JSON event to the log endpoint, if one is configured. Never raises."""
        if not self.endpoint:
            return
        try:
            requests.post(self.endpoint, json=payload, headers=self.headers, timeout=3)
        except requests.RequestException:
            pass
