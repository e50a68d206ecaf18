"""Shared Pydantic schemas for Custody-Engine."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "custody-engine"


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: str = ""
