from __future__ import annotations

import json
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import requests

from tailbeacon.access import TOKEN_HEADER
from tailbeacon.models import VisualizerDataset
from tailbeacon.reducer import apply_record, empty_dataset, parse_record_line
from tailbeacon.wire import Frame, SSEDecoder

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    LIVE = "LIVE"
    ERROR = "ERROR"


class BridgeClient:
    """
    Follows a bridge's /events stream and keeps a VisualizerDataset current.

    A daemon worker thread owns the HTTP stream. Transport failures flip the
    status to ERROR and the worker reconnects with exponential backoff;
    only disconnect() moves the client to DISCONNECTED.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        on_status: Optional[Callable[[ConnectionStatus], None]] = None,
        initial_backoff: float = 0.5,
        max_backoff: float = 30.0,
        timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.on_status = on_status
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.timeout = timeout
        self.last_hello: Optional[Dict[str, Any]] = None
        self.records_applied = 0

        self._http = session or requests.Session()
        self._lock = threading.Lock()
        self._dataset = empty_dataset()
        self._status = ConnectionStatus.DISCONNECTED
        self._connected_url: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._response: Optional[requests.Response] = None

    # ----------------------------
    # State
    # ----------------------------
    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def dataset(self) -> VisualizerDataset:
        with self._lock:
            return self._dataset

    def replace_dataset(self, dataset: VisualizerDataset) -> None:
        """Swap in a whole dataset, e.g. one built from an imported file."""
        with self._lock:
            self._dataset = dataset

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        logger.debug("bridge status %s -> %s", self._status.value, status.value)
        self._status = status
        if self.on_status is not None:
            self.on_status(status)

    # ----------------------------
    # Connection lifecycle
    # ----------------------------
    def connect(self, base_url: Optional[str] = None) -> None:
        if self._thread is not None:
            self._stop_worker()
        if base_url:
            self.base_url = base_url.rstrip("/")
        if self._connected_url is not None and self._connected_url != self.base_url:
            self.replace_dataset(empty_dataset())
        self._connected_url = self.base_url

        self._stop = threading.Event()
        self._set_status(ConnectionStatus.CONNECTING)
        self._thread = threading.Thread(target=self._worker, args=(self._stop,), daemon=True)
        self._thread.start()

    def disconnect(self) -> None:
        self._stop_worker()
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _stop_worker(self, join_timeout: float = 5.0) -> None:
        self._stop.set()
        resp = self._response
        if resp is not None:
            resp.close()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(join_timeout)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        if self.token:
            headers[TOKEN_HEADER] = self.token
        return headers

    def _worker(self, stop: threading.Event) -> None:
        delay = self.initial_backoff
        url = f"{self.base_url}/events"
        while not stop.is_set():
            resp = None
            try:
                with self._http.get(url, headers=self._headers(), stream=True, timeout=(self.timeout, None)) as resp:
                    self._response = resp
                    if stop.is_set():
                        break
                    resp.raise_for_status()
                    self._on_open()
                    delay = self.initial_backoff
                    self._consume(resp, stop)
            except Exception as exc:
                if stop.is_set():
                    break
                logger.debug("bridge stream error on %s: %s", url, exc)
            finally:
                # a worker outliving its join must not clear its successor's stream
                if resp is not None and self._response is resp:
                    self._response = None

            if stop.is_set():
                break
            self._set_status(ConnectionStatus.ERROR)
            stop.wait(delay)
            delay = min(delay * 2, self.max_backoff)

    def _on_open(self) -> None:
        host = urlsplit(self.base_url).hostname or self.base_url
        with self._lock:
            self._dataset = self._dataset.model_copy(update={"source_label": f"live:{host}"})
        self._set_status(ConnectionStatus.LIVE)

    def _consume(self, resp: requests.Response, stop: threading.Event) -> None:
        decoder = SSEDecoder()
        # bytes.splitlines breaks on CR/LF only; str.splitlines would also cut
        # JSON strings at U+2028, U+2029 and U+0085
        for raw in resp.iter_lines(chunk_size=None):
            if stop.is_set():
                return
            frame = decoder.feed_line(raw.decode("utf-8", errors="replace"))
            if frame is not None:
                self.handle_frame(frame)

    def handle_frame(self, frame: Frame) -> None:
        if frame.event == "hello":
            try:
                self.last_hello = json.loads(frame.data)
            except ValueError:
                self.last_hello = None
            return

        rec = parse_record_line(frame.data)
        if rec is None:
            return
        with self._lock:
            self._dataset = apply_record(self._dataset, rec)
        self.records_applied += 1
