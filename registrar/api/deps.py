from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from registrar.core.auth import AuthContext, get_auth_context
from registrar.services.pipeline import Pipeline


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if not isinstance(pipeline, Pipeline):  # pragma: no cover
        raise RuntimeError("pipeline_not_configured")
    return pipeline


PipelineDependency = Annotated[Pipeline, Depends(get_pipeline)]
AuthDependency = Annotated[AuthContext, Depends(get_auth_context)]


__all__ = [
    "get_pipeline",
    "PipelineDependency",
    "AuthDependency",
]
