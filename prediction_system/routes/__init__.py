"""
prediction_system/routes/__init__.py
Route registration for the JSON API (mounted under /api)
"""
from fastapi import APIRouter
from prediction_system.routes import auth, channels

router = APIRouter()

router.include_router(auth.router)
router.include_router(channels.router)
