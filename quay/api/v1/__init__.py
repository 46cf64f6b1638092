"""API v1 router."""

from fastapi import APIRouter

from quay.api.v1.admin import router as admin_router
from quay.api.v1.files import router as files_router
from quay.api.v1.folders import router as folders_router
from quay.api.v1.links import router as links_router
from quay.api.v1.permissions import router as permissions_router
from quay.api.v1.public import router as public_router
from quay.api.v1.quota import router as quota_router
from quay.api.v1.uploads import router as uploads_router
from quay.api.v1.workspace import router as workspace_router

router = APIRouter()

# Include sub-routers
router.include_router(workspace_router, prefix="/workspace", tags=["workspace"])
router.include_router(links_router, prefix="/links", tags=["links"])
router.include_router(permissions_router, prefix="/links", tags=["permissions"])
router.include_router(folders_router, prefix="/folders", tags=["folders"])
router.include_router(files_router, prefix="/files", tags=["files"])
router.include_router(uploads_router, prefix="/uploads", tags=["uploads"])
router.include_router(public_router, prefix="/public", tags=["public"])
router.include_router(quota_router, prefix="/quota", tags=["quota"])
router.include_router(admin_router)  # /admin prefix is in the router itself
