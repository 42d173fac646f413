"""Pydantic request and response models for the HTTP surface."""

# purpose: request and response contracts for the print queue API
# status: active

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class UserOut(BaseModel):
    id: int
    email: EmailStr
    display_name: str
    photo_url: Optional[str] = None
    role: str
    suspended: bool = False
    file_uploads_used: int = 0
    model_config = ConfigDict(from_attributes=True)


class UserProfile(UserOut):
    file_upload_limit: int
    files_remaining: int


class UserUpdate(BaseModel):
    role: Optional[Literal["USER", "ADMIN", "SUPERADMIN", "GUEST"]] = None
    suspended: Optional[bool] = None
    file_uploads_used: Optional[int] = Field(default=None, ge=0)
    model_config = ConfigDict(extra="forbid")


class ClubOut(BaseModel):
    id: int
    name: str
    code: str
    contact_email: Optional[str] = None
    is_active: bool = True
    model_config = ConfigDict(from_attributes=True)


class FileOut(BaseModel):
    id: UUID
    order_id: Optional[int] = None
    filename: str
    content_type: str
    size: int
    uploaded_by: int
    created_at: datetime
    expires_at: datetime
    model_config = ConfigDict(from_attributes=True)


class OrderCreate(BaseModel):
    project_name: str = Field(min_length=1)
    club_id: Optional[int] = None
    event_deadline: Optional[datetime] = None
    material: Optional[str] = None
    color: Optional[str] = None
    providing_filament: bool = False
    special_instructions: Optional[str] = None
    file_ids: List[UUID] = []

    @field_validator("project_name")
    @classmethod
    def strip_project_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Project name is required")
        return value


class OrderUpdate(BaseModel):
    project_name: Optional[str] = None
    material: Optional[str] = None
    color: Optional[str] = None
    providing_filament: Optional[bool] = None
    event_deadline: Optional[datetime] = None
    special_instructions: Optional[str] = None
    staff_notes: Optional[str] = None
    estimated_completion_time: Optional[datetime] = None
    model_config = ConfigDict(extra="forbid")


class StatusUpdate(BaseModel):
    status: Literal["submitted", "approved", "started", "finished", "failed", "cancelled"]
    reason: Optional[str] = None
    estimated_completion_time: Optional[datetime] = None
    staff_notes: Optional[str] = None


class OrderOut(BaseModel):
    id: int
    order_id: str
    user_id: int
    club_id: Optional[int] = None
    project_name: str
    event_deadline: Optional[datetime] = None
    material: str
    color: str
    providing_filament: bool = False
    special_instructions: Optional[str] = None
    staff_notes: Optional[str] = None
    files: List[Dict[str, Any]] = []
    status: str
    batch_id: Optional[int] = None
    estimated_completion_time: Optional[datetime] = None
    actual_completion_time: Optional[datetime] = None
    failure_reason: Optional[str] = None
    cancellation_reason: Optional[str] = None
    submitted_at: datetime
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class BatchCreate(BaseModel):
    name: Optional[str] = None
    order_ids: List[int] = Field(min_length=1)
    estimated_duration: Optional[int] = Field(default=None, ge=0)


class BatchUpdate(BaseModel):
    name: Optional[str] = None
    estimated_duration: Optional[int] = Field(default=None, ge=0)
    status: Optional[Literal["approved"]] = None
    model_config = ConfigDict(extra="forbid")


class BatchOut(BaseModel):
    id: int
    batch_number: str
    name: Optional[str] = None
    status: str
    created_by_id: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_duration: Optional[int] = None
    created_at: datetime
    order_ids: List[int] = []
    model_config = ConfigDict(from_attributes=True)


class AuditLogOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    details: Dict[str, Any] = {}
    reason: Optional[str] = None
    timestamp: datetime
    model_config = ConfigDict(from_attributes=True)


class AuditReportItem(BaseModel):
    action: str
    count: int


class SystemConfigIn(BaseModel):
    key: str = Field(min_length=1)
    value: Any
    description: Optional[str] = None


class SystemConfigOut(BaseModel):
    key: str
    value: Any
    description: Optional[str] = None
    updated_by: Optional[int] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class CleanupResult(BaseModel):
    deletedFilesCount: int
    totalSizeDeleted: int
    expiredOrdersCount: int
    orphanedFilesCount: int = 0
    failedCount: int = 0
    retentionDays: int
    cutoffDate: str
