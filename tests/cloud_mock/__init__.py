"""In-memory IBM Cloud mock for controller tests.

Stands in for the PowerVS workspace API, the resource controller and a VPC
load balancer, with call recording and error injection.

Usage:
    from cloud_mock import MockCloud

    cloud = MockCloud()
    reconciler = ServiceReconciler(store, cloud.factory, config)
    await reconciler.reconcile("default", "my-vm")

    assert cloud.compute.call_count("create_instance") == 1
"""

from .cloud import MockCloud
from .compute import MockPowerVS
from .credential import MockTokenCredential
from .http import MockHttpResponse, MockTransport
from .load_balancer import MockLoadBalancer
from .platform import MockPlatform
from .resources import make_catalog, make_service

__all__ = [
    "MockCloud",
    "MockHttpResponse",
    "MockLoadBalancer",
    "MockPlatform",
    "MockPowerVS",
    "MockTokenCredential",
    "MockTransport",
    "make_catalog",
    "make_service",
]
