"""
API request and response models for the Service Portal REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
questionnaire/models.py, which own the internal domain representation. Route
handlers map between the two.

Envelope: every success body carries "success": true; every error body is the
flat ErrorResponse {"success": false, "code": ..., "message": ...}.
"""

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from questionnaire.models import QUESTION_TYPES

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Flat error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    success: Literal[False] = False
    code: str
    message: str
    locked_until: Optional[str] = None
    fields: Optional[list[str]] = None


class MessageResponse(BaseModel):
    success: Literal[True] = True
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Empty username/password are accepted here and rejected by the auth
    service, so the client gets the same German validation message whichever
    layer the request reaches.
    """

    model_config = ConfigDict(str_strip_whitespace=False)

    username: str = Field(default="", max_length=255)
    password: str = Field(default="", max_length=255)
    remember: bool = False


class ProfileModel(BaseModel):
    id: int
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: str


class LoginResponse(BaseModel):
    success: Literal[True] = True
    message: str = "Anmeldung erfolgreich."
    user: ProfileModel
    permissions: list[str]
    csrf_token: str


class SessionResponse(BaseModel):
    success: Literal[True] = True
    authenticated: bool
    user: Optional[ProfileModel] = None
    permissions: list[str] = Field(default_factory=list)
    csrf_token: Optional[str] = None


class MeResponse(BaseModel):
    success: Literal[True] = True
    user: ProfileModel
    last_login: Optional[str] = None
    created_at: Optional[str] = None
    permissions: list[str]


class PermissionCheckResponse(BaseModel):
    success: Literal[True] = True
    permission: str
    granted: bool


# ---------------------------------------------------------------------------
# Log viewer
# ---------------------------------------------------------------------------


class SortDirection(str, Enum):
    asc = "asc"
    desc = "desc"


class Pagination(BaseModel):
    current_page: int
    per_page: int
    total_records: int
    total_pages: int


class ActivityRow(BaseModel):
    id: int
    user_id: Optional[int] = None
    username: Optional[str] = None
    action: str
    details: Optional[Any] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    success: bool
    timestamp: str


class ActivityPage(BaseModel):
    success: Literal[True] = True
    data: list[ActivityRow]
    pagination: Pagination


class SessionRow(BaseModel):
    id: int
    user_id: int
    username: Optional[str] = None
    session_token_prefix: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: str
    expires_at: str
    status: str


class SessionPage(BaseModel):
    success: Literal[True] = True
    data: list[SessionRow]
    pagination: Pagination


# ---------------------------------------------------------------------------
# Questionnaire builder
# ---------------------------------------------------------------------------


class QuestionnaireStatus(str, Enum):
    draft = "draft"
    active = "active"
    archived = "archived"


class ServiceCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=1, max_length=255)
    title: Optional[str] = Field(default=None, max_length=255)


class ServiceModel(BaseModel):
    id: int
    slug: str
    name: str
    title: Optional[str] = None
    is_active: bool


class QuestionnaireCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    service_id: int
    title: str = Field(min_length=1, max_length=255)
    status: QuestionnaireStatus = QuestionnaireStatus.active


def _check_question_type(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in QUESTION_TYPES:
        raise ValueError(f"question_type must be one of {', '.join(QUESTION_TYPES)}")
    return value


class QuestionCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question_text: str = Field(min_length=1, max_length=1000)
    question_type: str = "text"
    group_id: Optional[int] = None
    placeholder_text: str = Field(default="", max_length=255)
    help_text: str = Field(default="", max_length=1000)
    options: list[str] = Field(default_factory=list, max_length=100)
    is_required: bool = False

    @field_validator("question_type")
    @classmethod
    def known_type(cls, value: Optional[str]) -> Optional[str]:
        return _check_question_type(value)


class QuestionUpdate(BaseModel):
    """PATCH body; only the fields that are set are written."""

    model_config = ConfigDict(str_strip_whitespace=True)

    question_text: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    question_type: Optional[str] = None
    placeholder_text: Optional[str] = Field(default=None, max_length=255)
    help_text: Optional[str] = Field(default=None, max_length=1000)
    options: Optional[list[str]] = Field(default=None, max_length=100)
    is_required: Optional[bool] = None

    @field_validator("question_type")
    @classmethod
    def known_type(cls, value: Optional[str]) -> Optional[str]:
        return _check_question_type(value)


class QuestionMove(BaseModel):
    group_id: Optional[int] = None
    position: int = Field(default=1, ge=1)


class QuestionReorder(BaseModel):
    group_id: Optional[int] = None
    question_ids: list[int] = Field(min_length=1)


class GroupCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: str = Field(default="", max_length=1000)
    question_ids: list[int] = Field(default_factory=list)


class GroupUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)


class GroupReorder(BaseModel):
    group_ids: list[int] = Field(min_length=1)


class QuestionModel(BaseModel):
    id: int
    group_id: Optional[int] = None
    group_name: Optional[str] = None
    question_text: str
    question_type: str
    placeholder_text: str
    help_text: str
    options: list[str]
    is_required: bool
    sort_order: int
    is_fixed: bool


class GroupModel(BaseModel):
    id: int
    name: str
    description: str
    sort_order: int
    is_fixed: bool
    questions: list[QuestionModel] = Field(default_factory=list)


class QuestionnaireModel(BaseModel):
    id: int
    service_id: int
    title: str
    status: str
    created_at: str


class QuestionnaireDetail(BaseModel):
    success: Literal[True] = True
    questionnaire: QuestionnaireModel
    groups: list[GroupModel]
    ungrouped: list[QuestionModel]


class CreatedResponse(BaseModel):
    success: Literal[True] = True
    id: int
    message: str = "Erfolgreich erstellt."


# ---------------------------------------------------------------------------
# Submissions
# ---------------------------------------------------------------------------


class SubmissionRequest(BaseModel):
    """Request body for POST /api/v1/submissions (public lead form)."""

    service_slug: str = Field(min_length=1, max_length=100)
    fields: dict[str, Any] = Field(default_factory=dict)

    @field_validator("fields")
    @classmethod
    def limit_fields(cls, value: dict[str, Any]) -> dict[str, Any]:
        if len(value) > 200:
            raise ValueError("too many form fields")
        return value


class SubmissionResponse(BaseModel):
    success: Literal[True] = True
    message: str = "Vielen Dank! Ihre Anfrage wurde erfolgreich übermittelt."
    reference: str


class SubmissionRow(BaseModel):
    id: int
    reference: str
    service_id: int
    questionnaire_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    status: str
    submitted_at: str


class SubmissionPage(BaseModel):
    success: Literal[True] = True
    data: list[SubmissionRow]
    pagination: Pagination


class SubmissionDetail(SubmissionRow):
    """One stored submission with the answers and contact block it was saved with."""

    success: Literal[True] = True
    form_data: dict[str, Any]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
