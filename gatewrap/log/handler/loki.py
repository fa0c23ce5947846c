import os
import sys
import socket
import logging
import requests
import threading
from collections import deque
from typing import Any, Deque, Dict, Optional

from gatewrap import settings


class LokiHandler(logging.Handler):
    """
    A logging handler that ships supervisor and backend logs to a Grafana Loki
    instance in batches using a background thread.
    """
    def __init__(self, url: str, org_id: Optional[str] = None, flush_interval: float = settings.LOG_BUFFER_FLUSH_INTERVAL):
        """
        Initializes the Loki handler.

        :param url: The base URL of the Loki instance.
        :param org_id: The tenant ID for Loki (e.g., 'X-Scope-OrgID').
        :param flush_interval: Seconds between background flushes.
        """
        super().__init__()
        self.url = f"{url.rstrip('/')}/loki/api/v1/push"
        self.org_id = org_id
        self.log_buffer: Deque[Dict[str, Any]] = deque()
        self.buffer_lock = threading.Lock()
        self.flush_interval = flush_interval
        self.batch_size = settings.LOKI_BATCH_SIZE
        self.hostname = os.getenv('HOSTNAME') or socket.gethostname()

        self.stop_event = threading.Event()
        self.flush_thread = threading.Thread(target=self._periodic_flush, daemon=True, name="LokiFlushThread")
        self.flush_thread.start()

    def _periodic_flush(self) -> None:
        """
        Periodically flushes the log buffer. This runs in a background thread.
        The final flush is called when the handler is closed.
        """
        while not self.stop_event.wait(self.flush_interval):
            self.flush()
        self.flush()

    def build_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        """Converts a record into a single Loki stream entry."""
        if record.name.startswith('proc.'):
            # Backend lines are shipped verbatim, labelled with the process name.
            msg = record.getMessage()
            source = "backend"
            logger_name = record.name.split('.')[-1]
        else:
            msg = self.format(record)
            source = "supervisor"
            logger_name = record.name

        return {
            "stream": {
                "job": "gateway-supervisor",
                "source": source,
                "level": record.levelname.lower(),
                "hostname": self.hostname,
                "logger": logger_name,
            },
            "values": [
                [str(int(record.created * 1e9)), msg]
            ]
        }

    def emit(self, record: logging.LogRecord) -> None:
        """
        Adds a record to the internal buffer, flushing once the batch is full.

        :param record: The log record to be processed.
        """
        try:
            log_entry = self.build_entry(record)
            with self.buffer_lock:
                self.log_buffer.append(log_entry)
                full = len(self.log_buffer) >= self.batch_size
            if full:
                self.flush()
        except Exception:
            self.handleError(record)

    def _take_batch(self):
        with self.buffer_lock:
            batch = list(self.log_buffer)
            self.log_buffer.clear()
        return batch

    @staticmethod
    def group_streams(entries) -> list:
        """Merges entries sharing a label set into one stream each, keeping their order."""
        streams: Dict[tuple, Dict[str, Any]] = {}
        for entry in entries:
            key = tuple(sorted(entry["stream"].items()))
            if key not in streams:
                streams[key] = {"stream": entry["stream"], "values": []}
            streams[key]["values"].extend(entry["values"])
        return list(streams.values())

    def flush(self) -> None:
        """
        Sends everything currently buffered to Loki.
        The network call happens outside the buffer lock.
        """
        logs_to_send = self._take_batch()
        if not logs_to_send:
            return

        headers = {'Content-Type': 'application/json'}
        if self.org_id:
            headers['X-Scope-OrgID'] = self.org_id
        try:
            response = requests.post(self.url, json={"streams": self.group_streams(logs_to_send)}, headers=headers, timeout=5)
            # 204 No Content is the success status for Loki push
            if response.status_code != 204:
                print(
                    f"ERROR: Loki returned non-204 status: {response.status_code} - {response.text}",
                    file=sys.stderr
                )
        except requests.RequestException as e:
            # Logging here would recurse into this handler.
            print(f"CRITICAL: Failed to send {len(logs_to_send)} logs to Loki: {e}", file=sys.stderr)

    def close(self) -> None:
        """
        Shuts down the handler, flushing anything still buffered.
        """
        self.stop_event.set()
        if self.flush_thread.is_alive() and self.flush_thread is not threading.current_thread():
            self.flush_thread.join(timeout=self.flush_interval + 2)
        super().close()
