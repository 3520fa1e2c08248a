from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from eventrelay.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service is starting"},
        )
    return runtime


def get_tenant_id(request: Request, runtime: Runtime = Depends(get_runtime)) -> str:
    # Tenant identity is resolved upstream; propagate it as an opaque string.
    header_name = runtime.settings.tenant_header
    tenant_id = (request.headers.get(header_name) or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "TENANT_REQUIRED", "message": f"{header_name} header is required"},
        )
    return tenant_id
