from fastapi import APIRouter
from app.api.v1.endpoints import auth, debug, sync, sync_job, threads

api_router = APIRouter(prefix="/api/v1")

# Include all endpoint routers
api_router.include_router(auth.router)
api_router.include_router(sync_job.router)
api_router.include_router(sync.router)
api_router.include_router(threads.router)
api_router.include_router(debug.router)
