from __future__ import annotations

import signal
import threading
from typing import Any, Iterable, Mapping

from flask import Flask, jsonify
from werkzeug.serving import make_server


class HealthController:
    """
    Readiness, liveness and shutdown coordination shared by the pump and the probe server.

    The pump is the only writer; the probe server reads a snapshot under a lock.
    """

    def __init__(self) -> None:
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._ready = False
        self._live = True
        self._shutdown_reason: str | None = None
        self._snapshot: dict[str, Any] = {}

    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    def is_live(self) -> bool:
        with self._lock:
            return self._live

    def mark_ready(self) -> None:
        with self._lock:
            self._ready = True

    def mark_halted(self) -> None:
        with self._lock:
            self._live = False
            self._ready = False

    def publish(self, snapshot: Mapping[str, Any]) -> None:
        with self._lock:
            self._snapshot = dict(snapshot)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            out = dict(self._snapshot)
            out["ready"] = self._ready
            out["live"] = self._live
            return out

    @property
    def shutdown_requested(self) -> bool:
        return self._stop.is_set()

    @property
    def shutdown_reason(self) -> str | None:
        return self._shutdown_reason

    def request_shutdown(self, reason: str = "requested") -> None:
        if not self._stop.is_set():
            self._shutdown_reason = reason
        self._stop.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True early when shutdown is requested."""
        if seconds <= 0:
            return self._stop.is_set()
        return self._stop.wait(seconds)

    def install_signal_handlers(
        self, signals: Iterable[signal.Signals] = (signal.SIGTERM, signal.SIGINT)
    ) -> dict[signal.Signals, Any]:
        """Route termination signals to request_shutdown. Main thread only."""
        previous: dict[signal.Signals, Any] = {}

        def _handler(signum: int, _frame: object) -> None:
            self.request_shutdown(reason=signal.Signals(signum).name)

        for sig in signals:
            previous[sig] = signal.signal(sig, _handler)
        return previous


def create_probe_app(controller: HealthController) -> Flask:
    app = Flask("hashtag_importer.health")

    @app.get("/healthz")
    def healthz() -> Any:
        body = controller.snapshot()
        return jsonify(body), (200 if body["live"] else 503)

    @app.get("/readyz")
    def readyz() -> Any:
        body = controller.snapshot()
        return jsonify(body), (200 if body["ready"] else 503)

    return app


class ProbeServer:
    """Serves the probe app from a daemon thread."""

    def __init__(self, controller: HealthController, *, host: str, port: int) -> None:
        self._server = make_server(host, int(port), create_probe_app(controller), threaded=True)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="probe-server",
            daemon=True,
        )

    @property
    def port(self) -> int:
        return int(self._server.server_port)

    def start(self) -> "ProbeServer":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._thread.join(timeout=5.0)
