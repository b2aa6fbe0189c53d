"""Versioned API routing for the registrar."""

from fastapi import APIRouter

from . import routes_admin, routes_anchors, routes_ingest, routes_media, routes_storage, routes_system


def get_api_router() -> APIRouter:
    router = APIRouter(prefix="/v1")
    router.include_router(routes_system.router)
    router.include_router(routes_admin.router)
    router.include_router(routes_ingest.router)
    router.include_router(routes_media.router)
    router.include_router(routes_anchors.router)
    router.include_router(routes_storage.router)
    return router


__all__ = ["get_api_router"]
