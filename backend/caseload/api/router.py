from fastapi import APIRouter
from caseload.api.routers import imports, admin

api_router = APIRouter()
api_router.include_router(imports.router, prefix="/imports", tags=["imports"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
