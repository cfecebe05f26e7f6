"""FastAPI API endpoints under /api.

Endpoint groups: turns (game-response SSE stream, generate-story-recap),
voice-selection, and settings (health, providers, validate-key,
token-estimate).
"""

from fastapi import APIRouter

from .settings import router as settings_router
from .turns import router as turns_router
from .voice import router as voice_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(turns_router)
router.include_router(voice_router)
