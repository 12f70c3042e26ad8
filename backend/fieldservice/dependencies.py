from fastapi import Header, HTTPException

from fieldservice.exceptions import (
    ConcurrentMaterializationConflict,
    OccurrenceNotFound,
    SchedulingError,
    SeriesNotFound,
)


async def require_tenant(x_tenant_id: str = Header(...)):
    # The auth layer in front of this service resolves the session to a tenant.
    tenant_id = x_tenant_id.strip()
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Missing tenant context")
    return tenant_id


def http_error(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, (SeriesNotFound, OccurrenceNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConcurrentMaterializationConflict):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
