"""FastAPI dependency getters for the services built in the app lifespan"""

from fastapi import Request

from api.services.analytics import AnalyticsEngine
from api.services.ingestion import IngestionService


def get_ingestion(request: Request) -> IngestionService:
    return request.app.state.ingestion


def get_analytics(request: Request) -> AnalyticsEngine:
    return request.app.state.analytics
