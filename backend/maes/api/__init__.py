from fastapi import APIRouter

from maes.api.auth import require_principal, require_service
from maes.api.routes import internal, jobs, organizations

router = APIRouter()

# User-facing routes - require a bearer token; organization scope is checked per route
router.include_router(
    organizations.router,
    prefix="/organizations",
    tags=["organizations"],
    dependencies=[require_principal],
)
router.include_router(
    jobs.router,
    prefix="/organizations/{organization_id}/jobs",
    tags=["jobs"],
    dependencies=[require_principal],
)

# Executor callbacks - shared service token
router.include_router(
    internal.router,
    prefix="/internal",
    tags=["internal"],
    dependencies=[require_service],
)
