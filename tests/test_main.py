"""Tests for app wiring in magma.main."""

import pytest

from magma.config import Settings
from magma.main import _LazyProxy, build_app


def test_lazy_proxy_resolves_after_init():
    components: dict = {}
    proxy = _LazyProxy(components, "store")

    with pytest.raises(RuntimeError, match="not yet initialized"):
        proxy.list_features

    class Store:
        name = "real"

    components["store"] = Store()
    assert proxy.name == "real"


def test_build_app_routes():
    app = build_app(Settings(ANTHROPIC_API_KEY="k", _env_file=None))

    paths = {route.path for route in app.routes}
    assert {"/conversations", "/conversations/{id}", "/conversations/{id}/messages", "/health"} <= paths
