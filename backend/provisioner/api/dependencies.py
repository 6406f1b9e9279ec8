"""
Request-scoped access to the services built by the lifespan composition root.
Tests override `get_provisioning_service` to inject a service with fakes.
"""

from starlette.requests import HTTPConnection

from provisioner.services.provisioning_service import ProvisioningService


def get_provisioning_service(connection: HTTPConnection) -> ProvisioningService:
    # HTTPConnection covers both HTTP requests and WebSockets
    return connection.app.state.provisioning
