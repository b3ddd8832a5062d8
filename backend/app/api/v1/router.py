"""API v1 router aggregation"""
from fastapi import APIRouter

from app.api.v1 import launchpad, collections, mints, stuck, bulk, cron

api_router = APIRouter()

# Wallet-facing launchpad endpoints (these have {collection_id} in their paths)
api_router.include_router(launchpad.router, prefix="/launchpad", tags=["Launchpad"])

# Admin endpoints
admin_router = APIRouter()
admin_router.include_router(collections.router, prefix="/collections", tags=["Admin Collections"])
admin_router.include_router(mints.router, prefix="/mints", tags=["Admin Mints"])
admin_router.include_router(stuck.router, prefix="/stuck", tags=["Admin Stuck Transactions"])
admin_router.include_router(bulk.router, prefix="/bulk-operations", tags=["Admin Bulk Operations"])

api_router.include_router(admin_router, prefix="/admin")
api_router.include_router(cron.router, prefix="/cron", tags=["Cron"])
