"""
Gemini Proxy - API Routes

Route modules for the /api/gemini surface.
"""

from .gemini import router as gemini_router
from .models import router as models_router
from .proxy import router as proxy_router
from .usage import router as usage_router

__all__ = [
    "gemini_router",
    "models_router",
    "proxy_router",
    "usage_router",
]
