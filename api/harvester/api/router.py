from fastapi import APIRouter

from harvester.api.routes import analytics, health, jobs, keywords

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(keywords.router, prefix="/keywords", tags=["keywords"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["analytics"])
