from fastapi import APIRouter

from registry_discovery.api.routes import candidates, health, rules, stats, submissions

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(candidates.router, prefix="/candidates", tags=["queue"])
api_router.include_router(submissions.router, prefix="/submissions", tags=["queue"])
api_router.include_router(rules.router, prefix="/rules", tags=["rules"])
api_router.include_router(stats.router, prefix="/stats", tags=["stats"])
