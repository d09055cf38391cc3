import importlib

import pytest


@pytest.mark.smoke
@pytest.mark.parametrize(
    "module_name",
    [
        "integration_gateway.main",
        "integration_gateway.api.ehr",
        "integration_gateway.integrations.ehr",
        "integration_gateway.integrations.ehr.service",
    ],
)
def test_integration_modules_import(module_name):
    """Smoke test: ensure the integration modules import cleanly."""
    module = importlib.import_module(module_name)
    assert module is not None


@pytest.mark.smoke
def test_router_exposes_partner_routes():
    """Smoke test: the EHR router registers its endpoints under /api/ehr."""
    from integration_gateway.api.ehr import router

    paths = {route.path for route in router.routes}
    assert "/api/ehr/auth/{partner}" in paths
    assert "/api/ehr/webhooks/{partner}" in paths
    assert "/api/ehr/hl7/parse" in paths


@pytest.mark.smoke
def test_package_exports_are_resolvable():
    """Smoke test: every name in __all__ resolves on the package."""
    package = importlib.import_module("integration_gateway.integrations.ehr")
    missing = [name for name in package.__all__ if not hasattr(package, name)]
    assert missing == []
