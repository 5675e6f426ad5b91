"""API v1 routes."""

from fastapi import APIRouter

from app.api.v1 import health, scans, vulnerabilities

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(scans.router, prefix="/scans", tags=["scans"])
router.include_router(vulnerabilities.router, prefix="/vulnerabilities", tags=["vulnerabilities"])
