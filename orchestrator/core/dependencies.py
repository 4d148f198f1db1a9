from fastapi import Depends, Request

from orchestrator.container import Container
from orchestrator.core.config import settings
from orchestrator.jobs.service import AnalysisService

# Host labels that never name a tenant
_RESERVED_SUBDOMAINS = {"www", "app"}


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_service(container: Container = Depends(get_container)) -> AnalysisService:
    return container.service


def resolve_tenant_id(request: Request) -> str:
    """Tenant of a request according to TENANT_RESOLVER.

    header:    value of TENANT_HEADER
    subdomain: first host label (acme.example.com -> acme), except www/app
    static:    TENANT_STATIC_ID
    Every strategy falls back to TENANT_STATIC_ID.
    """
    strategy = settings.tenant_resolver

    if strategy == "header":
        tenant = request.headers.get(settings.tenant_header, "").strip()
        if tenant:
            return tenant

    if strategy == "subdomain":
        host = request.headers.get("host", "").split(":")[0]
        labels = host.split(".")
        if len(labels) > 2 and labels[0] and labels[0] not in _RESERVED_SUBDOMAINS:
            return labels[0].lower()

    return settings.tenant_static_id


async def get_tenant_id(request: Request) -> str:
    return resolve_tenant_id(request)
