"""
API response schemas for the cron trigger.
"""
from datetime import datetime
from pydantic import BaseModel, Field


class TickResultSchema(BaseModel):
    processed: int = 0
    calls: int = 0
    errors: list[dict] = Field(default_factory=list)


class CronSuccessResponse(BaseModel):
    success: bool = True
    message: str
    force_mode: bool = False
    result: TickResultSchema
    timestamp: datetime


class CronErrorResponse(BaseModel):
    success: bool = False
    error: str
    message: str
    timestamp: datetime

