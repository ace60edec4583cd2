from __future__ import annotations

import threading
import urllib.error
import urllib.request

from pingap_provider.src.health import start_health_server
from pingap_provider.src.metrics import METRICS


def _get(url: str, timeout: float = 2) -> tuple[int, str]:
    """Helper to make a GET request and return (status_code, body)."""
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:  # noqa: S310
            return response.status, response.read().decode()
    except urllib.error.HTTPError as exc:
        return exc.code, exc.read().decode()


class TestHealthServer:
    """Tests for the liveness, readiness and metrics endpoints."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.server = start_health_server(ready=self.ready, port=0)
        self.port = self.server.server_address[1]
        self.base_url = f"http://127.0.0.1:{self.port}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_healthz_always_returns_200(self) -> None:
        status, body = _get(f"{self.base_url}/healthz")
        assert status == 200
        assert body == "ok"

    def test_readyz_returns_503_before_initial_sync(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=false engine=true"

    def test_readyz_returns_200_once_ready(self) -> None:
        self.ready.set()
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true engine=true"

    def test_readyz_returns_503_after_readiness_lost(self) -> None:
        self.ready.set()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 200

        self.ready.clear()
        status, _ = _get(f"{self.base_url}/readyz")
        assert status == 503

    def test_metrics_exposes_provider_series(self) -> None:
        METRICS.reconcile_passes_total.inc()
        status, body = _get(f"{self.base_url}/metrics")
        assert status == 200
        assert "pingap_provider_reconcile_passes_total" in body

    def test_404_for_unknown_path(self) -> None:
        status, _ = _get(f"{self.base_url}/unknown")
        assert status == 404


class TestHealthServerWithEngineCheck:
    """Tests for readiness gated on the reconcile engine's liveness."""

    def setup_method(self) -> None:
        self.ready = threading.Event()
        self.ready.set()
        self.engine_alive = True
        self.server = start_health_server(
            ready=self.ready, port=0, engine_alive=lambda: self.engine_alive
        )
        self.base_url = f"http://127.0.0.1:{self.server.server_address[1]}"

    def teardown_method(self) -> None:
        self.server.shutdown()

    def test_readyz_returns_200_when_synced_and_engine_alive(self) -> None:
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 200
        assert body == "ready=true engine=true"

    def test_readyz_returns_503_when_engine_stalls(self) -> None:
        self.engine_alive = False
        status, body = _get(f"{self.base_url}/readyz")
        assert status == 503
        assert body == "ready=true engine=false"

    def test_readyz_treats_failing_engine_check_as_not_ready(self) -> None:
        def broken() -> bool:
            raise RuntimeError("engine gone")

        server = start_health_server(ready=self.ready, port=0, engine_alive=broken)
        try:
            status, body = _get(f"http://127.0.0.1:{server.server_address[1]}/readyz")
        finally:
            server.shutdown()
        assert status == 503
        assert body == "ready=true engine=false"

    def test_healthz_ignores_engine_check(self) -> None:
        self.engine_alive = False
        status, _ = _get(f"{self.base_url}/healthz")
        assert status == 200
