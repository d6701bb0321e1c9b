"""
questionnaire/models.py -- Domain dataclasses for the lead-form builder.

Pure data containers. All persistence rules (sort positions, fixed-item
protection) live in questionnaire/store.py; submission rules live in
questionnaire/submission.py.
"""

from dataclasses import dataclass, field
from typing import Optional

QUESTION_TYPES: tuple[str, ...] = (
    "text",
    "textarea",
    "email",
    "phone",
    "number",
    "date",
    "select",
    "radio",
    "checkbox",
)


@dataclass
class Service:
    """A bookable service (e.g. moving, clearance). slug is the public key."""

    slug: str
    name: str
    id: Optional[int] = None
    title: Optional[str] = None
    is_active: bool = True


@dataclass
class Questionnaire:
    service_id: int
    title: str
    status: str = "active"  # "draft" | "active" | "archived"
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class QuestionGroup:
    """A titled block of questions.

    is_fixed marks the auto-provisioned contact group, which the builder may
    not edit or delete.
    """

    questionnaire_id: int
    name: str
    description: str = ""
    sort_order: int = 0
    is_fixed: bool = False
    id: Optional[int] = None


@dataclass
class Question:
    questionnaire_id: int
    question_text: str
    question_type: str = "text"
    group_id: Optional[int] = None  # None = ungrouped
    placeholder_text: str = ""
    help_text: str = ""
    options: list[str] = field(default_factory=list)
    is_required: bool = False
    sort_order: int = 0
    is_fixed: bool = False
    id: Optional[int] = None
    group_name: Optional[str] = None  # joined on read


@dataclass
class Answer:
    question_id: int
    question_text: str
    answer_text: str


@dataclass
class Submission:
    reference: str
    service_id: int
    form_data: dict
    questionnaire_id: Optional[int] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: str = "new"
    id: Optional[int] = None
    submitted_at: str = ""
