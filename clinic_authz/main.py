from __future__ import annotations

from fastapi import FastAPI, HTTPException

from clinic_authz.api.routers import access, audit, bootstrap, organizations, patients, permissions, roles, users
from clinic_authz.infra.db import check_db_ready
from clinic_authz.infra.logs import configure_logging

configure_logging()

app = FastAPI(
    title="clinic-authz",
    description="Role-based access control and tenant isolation for the clinic platform.",
    version="0.1.0",
)

app.include_router(bootstrap.router, prefix="/api/bootstrap", tags=["bootstrap"])
app.include_router(access.router, prefix="/api/access", tags=["access"])
app.include_router(permissions.router, prefix="/api/permissions", tags=["permissions"])
app.include_router(roles.router, prefix="/api/roles", tags=["roles"])
app.include_router(users.router, prefix="/api/users", tags=["users"])
app.include_router(organizations.router, prefix="/api/organizations", tags=["organizations"])
app.include_router(audit.router, prefix="/api/audit", tags=["audit"])
app.include_router(patients.router, prefix="/api/patients", tags=["patients"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
