from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, ValidationInfo, field_validator

TaskStatus = Literal["pending", "in_progress", "completed"]

TAG_MAX_LENGTH = 50


def _not_in_past(value: Optional[date]) -> Optional[date]:
    if value is not None and value < date.today():
        raise ValueError("The due date must be a date after or equal to today.")
    return value


def _clean_tags(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    cleaned = []
    for name in value:
        name = name.strip()
        if not name:
            raise ValueError("Tag names may not be blank.")
        if len(name) > TAG_MAX_LENGTH:
            raise ValueError(f"Tag names may not be greater than {TAG_MAX_LENGTH} characters.")
        cleaned.append(name)
    return cleaned


# USERS

class UserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(min_length=8)
    password_confirmation: Optional[str] = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("The name field is required.")
        return v

    @field_validator("password_confirmation")
    @classmethod
    def passwords_match(cls, v, info: ValidationInfo):
        if v is not None and v != info.data.get("password"):
            raise ValueError("The password confirmation does not match.")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class UserBrief(BaseModel):
    id: int
    name: str
    email: EmailStr

    class Config:
        from_attributes = True


class UserOut(UserBrief):
    role: str
    email_verified: bool
    email_verified_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime


class UserWithTaskCount(UserOut):
    tasks_count: int = 0


class RecentUser(UserBrief):
    created_at: datetime


# TASKS

class TagOut(BaseModel):
    id: int
    task_id: int
    name: str

    class Config:
        from_attributes = True


class TaskCreate(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    status: TaskStatus = "pending"
    due_date: Optional[date] = None
    tags: Optional[List[str]] = None

    @field_validator("due_date")
    @classmethod
    def due_date_not_in_past(cls, v):
        return _not_in_past(v)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v):
        return _clean_tags(v)


class TaskUpdate(BaseModel):
    """Partial update. Only fields present in the request body are applied."""

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    status: Optional[TaskStatus] = None
    due_date: Optional[date] = None
    tags: Optional[List[str]] = None

    @field_validator("due_date")
    @classmethod
    def due_date_not_in_past(cls, v):
        return _not_in_past(v)

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v):
        return _clean_tags(v)

    @field_validator("title", "status")
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError("This field may not be null.")
        return v


class TaskOut(BaseModel):
    id: int
    user_id: int
    title: str
    description: Optional[str] = None
    status: TaskStatus
    due_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime
    tags: List[TagOut] = []

    class Config:
        from_attributes = True


class TaskWithOwner(TaskOut):
    user: UserBrief


# ENVELOPES

class Pagination(BaseModel):
    current_page: int
    last_page: int
    per_page: int
    total: int


class TaskPage(BaseModel):
    items: List[TaskWithOwner]
    pagination: Pagination


class UserPage(BaseModel):
    items: List[UserWithTaskCount]
    pagination: Pagination


class MessageResponse(BaseModel):
    message: str


class TaskResponse(BaseModel):
    message: Optional[str] = None
    task: TaskWithOwner


class SignupResponse(BaseModel):
    message: str
    user: UserOut
    requires_verification: bool
    token: Optional[str] = None


class TokenResponse(BaseModel):
    message: str
    user: UserOut
    token: str
    token_type: str = "bearer"


class ProfileResponse(BaseModel):
    user: UserOut


class Statistics(BaseModel):
    total_users: int
    total_tasks: int
    completed_tasks: int
    pending_tasks: int
    in_progress_tasks: int
    overdue_tasks: int


class DashboardResponse(BaseModel):
    statistics: Statistics
    recent_users: List[RecentUser]
    recent_tasks: List[TaskWithOwner]
