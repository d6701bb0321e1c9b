"""
questionnaire/store.py -- SQLAlchemy Core persistence for services, questionnaires and submissions.

Pattern: Repository + Data Mapper (same as auth/store.py). QuestionnaireStore
is the repository; the _row_to_* functions are the mappers.

Rules enforced here:
  - A new questionnaire always receives the fixed contact group
    ("Kontaktinformationen", sort order -1) with five fixed questions. The
    provisioning runs in the same transaction as the questionnaire insert
    and is idempotent.
  - Fixed groups and fixed questions cannot be updated, moved or deleted.
    Attempts raise FixedItemError; route code turns that into HTTP 403.
  - New questions and groups are appended at MAX(sort_order) + 1 within
    their container.
  - Multi-row changes (reorder, move, group delete) are transactional.

Security: all queries use bound parameters. No f-strings in SQL.
"""

from __future__ import annotations

import json
from typing import Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Connection, Engine

from core.database import to_iso, utcnow
from questionnaire.models import Question, QuestionGroup, Questionnaire, Service, Submission

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

services = Table(
    "services",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("slug", String(100), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("title", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
)

questionnaires = Table(
    "questionnaires",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("service_id", Integer, nullable=False),
    Column("title", String(255), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("created_at", String(32), nullable=False),
)

question_groups = Table(
    "question_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("questionnaire_id", Integer, nullable=False),
    Column("name", String(255), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("sort_order", Integer, nullable=False, server_default="0"),
    Column("is_fixed", Integer, nullable=False, server_default="0"),
)

questions = Table(
    "questions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("questionnaire_id", Integer, nullable=False),
    Column("group_id", Integer),  # NULL = ungrouped
    Column("question_text", Text, nullable=False),
    Column("question_type", String(30), nullable=False),
    Column("placeholder_text", Text, nullable=False, server_default=""),
    Column("help_text", Text, nullable=False, server_default=""),
    Column("options", Text),  # JSON list
    Column("is_required", Integer, nullable=False, server_default="0"),
    Column("sort_order", Integer, nullable=False, server_default="0"),
    Column("is_fixed", Integer, nullable=False, server_default="0"),
)

submissions = Table(
    "questionnaire_submissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("reference", String(32), nullable=False, unique=True),
    Column("service_id", Integer, nullable=False),
    Column("questionnaire_id", Integer),
    Column("customer_name", String(255)),
    Column("customer_email", String(255)),
    Column("customer_phone", String(100)),
    Column("form_data", Text, nullable=False),  # JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("status", String(20), nullable=False, server_default="new"),
    Column("submitted_at", String(32), nullable=False),
)

CONTACT_GROUP_NAME = "Kontaktinformationen"
CONTACT_GROUP_DESCRIPTION = "Bitte geben Sie Ihre Kontaktdaten ein, damit wir Sie erreichen können."

CONTACT_QUESTIONS: tuple[dict, ...] = (
    {"question_text": "Vorname", "question_type": "text", "is_required": True, "placeholder_text": "Ihr Vorname"},
    {"question_text": "Nachname", "question_type": "text", "is_required": True, "placeholder_text": "Ihr Nachname"},
    {
        "question_text": "E-Mail Adresse",
        "question_type": "email",
        "is_required": True,
        "placeholder_text": "ihre.email@beispiel.de",
    },
    {
        "question_text": "Telefonnummer",
        "question_type": "phone",
        "is_required": False,
        "placeholder_text": "+49 123 456789",
        "help_text": "Ihre Festnetznummer (optional)",
    },
    {
        "question_text": "Mobilnummer",
        "question_type": "phone",
        "is_required": False,
        "placeholder_text": "+49 170 1234567",
        "help_text": "Ihre Mobilnummer (optional)",
    },
)

_QUESTION_FIELDS = {"question_text", "question_type", "placeholder_text", "help_text", "options", "is_required"}
_GROUP_FIELDS = {"name", "description"}


class FixedItemError(Exception):
    """Raised when the builder tries to change a fixed contact group or question."""


class QuestionnaireStore:
    """Repository for services, questionnaires, groups, questions and submissions."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Services
    # ------------------------------------------------------------------

    def create_service(self, service: Service) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                services.insert().values(
                    slug=service.slug,
                    name=service.name,
                    title=service.title,
                    is_active=1 if service.is_active else 0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_service_by_slug(self, slug: str) -> Optional[Service]:
        """Return the active service with this slug, or None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                services.select().where(services.c.slug == slug, services.c.is_active == 1)
            ).fetchone()
        return _row_to_service(row) if row is not None else None

    def get_service(self, service_id: int) -> Optional[Service]:
        with self.engine.connect() as conn:
            row = conn.execute(services.select().where(services.c.id == service_id)).fetchone()
        return _row_to_service(row) if row is not None else None

    def list_services(self) -> list[Service]:
        with self.engine.connect() as conn:
            rows = conn.execute(services.select().order_by(services.c.name)).fetchall()
        return [_row_to_service(r) for r in rows]

    # ------------------------------------------------------------------
    # Questionnaires
    # ------------------------------------------------------------------

    def create_questionnaire(self, questionnaire: Questionnaire) -> int:
        """Insert a questionnaire together with its fixed contact fields (one transaction)."""
        with self.engine.begin() as conn:
            result = conn.execute(
                questionnaires.insert().values(
                    service_id=questionnaire.service_id,
                    title=questionnaire.title,
                    status=questionnaire.status,
                    created_at=to_iso(utcnow()),
                )
            )
            questionnaire_id = result.inserted_primary_key[0]
            _provision_contact_fields(conn, questionnaire_id)
        return questionnaire_id

    def ensure_contact_fields(self, questionnaire_id: int) -> int:
        """Provision the fixed contact group if missing. Returns its group id."""
        with self.engine.begin() as conn:
            return _provision_contact_fields(conn, questionnaire_id)

    def get_questionnaire(self, questionnaire_id: int) -> Optional[Questionnaire]:
        with self.engine.connect() as conn:
            row = conn.execute(questionnaires.select().where(questionnaires.c.id == questionnaire_id)).fetchone()
        return _row_to_questionnaire(row) if row is not None else None

    def list_questionnaires(self) -> list[Questionnaire]:
        with self.engine.connect() as conn:
            rows = conn.execute(questionnaires.select().order_by(questionnaires.c.id)).fetchall()
        return [_row_to_questionnaire(r) for r in rows]

    def latest_active_questionnaire(self, service_id: int) -> Optional[Questionnaire]:
        """Newest questionnaire with status 'active' for the service (the template submissions use)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                questionnaires.select()
                .where(questionnaires.c.service_id == service_id, questionnaires.c.status == "active")
                .order_by(questionnaires.c.created_at.desc(), questionnaires.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_questionnaire(row) if row is not None else None

    def list_groups(self, questionnaire_id: int) -> list[QuestionGroup]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                question_groups.select()
                .where(question_groups.c.questionnaire_id == questionnaire_id)
                .order_by(question_groups.c.sort_order, question_groups.c.id)
            ).fetchall()
        return [_row_to_group(r) for r in rows]

    def list_questions(self, questionnaire_id: int) -> list[Question]:
        """All questions, ordered by group position, then position inside the group. Ungrouped last."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(questions, question_groups.c.name.label("group_name"))
                .select_from(questions.outerjoin(question_groups, questions.c.group_id == question_groups.c.id))
                .where(questions.c.questionnaire_id == questionnaire_id)
                .order_by(
                    question_groups.c.id.is_(None),
                    question_groups.c.sort_order,
                    questions.c.sort_order,
                    questions.c.id,
                )
            ).fetchall()
        return [_row_to_question(r) for r in rows]

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def create_question(self, question: Question) -> int:
        with self.engine.begin() as conn:
            position = _next_question_position(conn, question.questionnaire_id, question.group_id)
            result = conn.execute(
                questions.insert().values(
                    questionnaire_id=question.questionnaire_id,
                    group_id=question.group_id,
                    question_text=question.question_text,
                    question_type=question.question_type,
                    placeholder_text=question.placeholder_text,
                    help_text=question.help_text,
                    options=json.dumps(question.options),
                    is_required=1 if question.is_required else 0,
                    sort_order=position,
                    is_fixed=0,
                )
            )
            return result.inserted_primary_key[0]

    def get_question(self, question_id: int) -> Optional[Question]:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(questions, question_groups.c.name.label("group_name"))
                .select_from(questions.outerjoin(question_groups, questions.c.group_id == question_groups.c.id))
                .where(questions.c.id == question_id)
            ).fetchone()
        return _row_to_question(row) if row is not None else None

    def update_question(self, question_id: int, **fields) -> bool:
        """Update editable fields. Returns False if not found; raises FixedItemError for fixed questions.

        Accepted fields: question_text, question_type, placeholder_text,
        help_text, options (list), is_required (bool).
        """
        unknown = set(fields) - _QUESTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown question fields: {unknown!r}")
        if "options" in fields:
            fields["options"] = json.dumps(fields["options"] or [])
        if "is_required" in fields:
            fields["is_required"] = 1 if fields["is_required"] else 0
        with self.engine.begin() as conn:
            if not _check_editable(conn, questions, question_id, "Fixed contact questions cannot be edited"):
                return False
            if fields:
                conn.execute(questions.update().where(questions.c.id == question_id).values(**fields))
        return True

    def delete_question(self, question_id: int) -> bool:
        with self.engine.begin() as conn:
            if not _check_editable(conn, questions, question_id, "Fixed contact questions cannot be deleted"):
                return False
            conn.execute(questions.delete().where(questions.c.id == question_id, questions.c.is_fixed == 0))
        return True

    def move_question(self, question_id: int, target_group_id: Optional[int], position: int) -> bool:
        """Move a question into target_group_id (None = ungrouped) at 1-based position.

        The target container is renumbered 1..n afterwards. Returns False if
        the question or the target group does not exist.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                select(questions.c.questionnaire_id, questions.c.is_fixed).where(questions.c.id == question_id)
            ).fetchone()
            if row is None:
                return False
            if row.is_fixed:
                raise FixedItemError("Fixed contact questions cannot be moved")
            if target_group_id is not None:
                group = conn.execute(
                    select(question_groups.c.is_fixed).where(
                        question_groups.c.id == target_group_id,
                        question_groups.c.questionnaire_id == row.questionnaire_id,
                    )
                ).fetchone()
                if group is None:
                    return False
                if group.is_fixed:
                    raise FixedItemError("Questions cannot be moved into the fixed contact group")

            siblings = [
                r.id
                for r in conn.execute(
                    select(questions.c.id)
                    .where(
                        questions.c.questionnaire_id == row.questionnaire_id,
                        _group_filter(target_group_id),
                        questions.c.id != question_id,
                    )
                    .order_by(questions.c.sort_order, questions.c.id)
                )
            ]
            index = min(max(position, 1), len(siblings) + 1) - 1
            siblings.insert(index, question_id)
            conn.execute(questions.update().where(questions.c.id == question_id).values(group_id=target_group_id))
            for order, qid in enumerate(siblings, start=1):
                conn.execute(questions.update().where(questions.c.id == qid).values(sort_order=order))
        return True

    def reorder_questions(self, questionnaire_id: int, group_id: Optional[int], question_ids: list[int]) -> int:
        """Assign positions 1..n in list order to questions of one container. Returns rows updated."""
        updated = 0
        with self.engine.begin() as conn:
            for order, qid in enumerate(question_ids, start=1):
                result = conn.execute(
                    questions.update()
                    .where(
                        questions.c.id == qid,
                        questions.c.questionnaire_id == questionnaire_id,
                        _group_filter(group_id),
                    )
                    .values(sort_order=order)
                )
                updated += result.rowcount
        return updated

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, group: QuestionGroup, question_ids: Optional[list[int]] = None) -> int:
        """Append a group; optionally adopt existing (non-fixed) questions into it."""
        with self.engine.begin() as conn:
            position = (
                conn.execute(
                    select(func.coalesce(func.max(question_groups.c.sort_order), 0) + 1).where(
                        question_groups.c.questionnaire_id == group.questionnaire_id
                    )
                ).scalar()
                or 1
            )
            result = conn.execute(
                question_groups.insert().values(
                    questionnaire_id=group.questionnaire_id,
                    name=group.name,
                    description=group.description,
                    sort_order=position,
                    is_fixed=0,
                )
            )
            group_id = result.inserted_primary_key[0]
            if question_ids:
                conn.execute(
                    questions.update()
                    .where(
                        questions.c.id.in_(question_ids),
                        questions.c.questionnaire_id == group.questionnaire_id,
                        questions.c.is_fixed == 0,
                    )
                    .values(group_id=group_id)
                )
        return group_id

    def get_group(self, group_id: int) -> Optional[QuestionGroup]:
        with self.engine.connect() as conn:
            row = conn.execute(question_groups.select().where(question_groups.c.id == group_id)).fetchone()
        return _row_to_group(row) if row is not None else None

    def update_group(self, group_id: int, **fields) -> bool:
        unknown = set(fields) - _GROUP_FIELDS
        if unknown:
            raise ValueError(f"Unknown group fields: {unknown!r}")
        with self.engine.begin() as conn:
            if not _check_editable(conn, question_groups, group_id, "Fixed contact group cannot be edited"):
                return False
            if fields:
                conn.execute(question_groups.update().where(question_groups.c.id == group_id).values(**fields))
        return True

    def delete_group(self, group_id: int) -> bool:
        """Delete a group; its questions become ungrouped."""
        with self.engine.begin() as conn:
            if not _check_editable(conn, question_groups, group_id, "Fixed contact group cannot be deleted"):
                return False
            conn.execute(questions.update().where(questions.c.group_id == group_id).values(group_id=None))
            conn.execute(
                question_groups.delete().where(question_groups.c.id == group_id, question_groups.c.is_fixed == 0)
            )
        return True

    def reorder_groups(self, questionnaire_id: int, group_ids: list[int]) -> int:
        """Assign positions 1..n in list order. The fixed group keeps its leading position."""
        updated = 0
        with self.engine.begin() as conn:
            for order, gid in enumerate(group_ids, start=1):
                result = conn.execute(
                    question_groups.update()
                    .where(
                        question_groups.c.id == gid,
                        question_groups.c.questionnaire_id == questionnaire_id,
                        question_groups.c.is_fixed == 0,
                    )
                    .values(sort_order=order)
                )
                updated += result.rowcount
        return updated

    # ------------------------------------------------------------------
    # Submissions
    # ------------------------------------------------------------------

    def save_submission(self, submission: Submission) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                submissions.insert().values(
                    reference=submission.reference,
                    service_id=submission.service_id,
                    questionnaire_id=submission.questionnaire_id,
                    customer_name=submission.customer_name,
                    customer_email=submission.customer_email,
                    customer_phone=submission.customer_phone,
                    form_data=json.dumps(submission.form_data, ensure_ascii=False, default=str),
                    ip_address=submission.ip_address,
                    user_agent=submission.user_agent,
                    status=submission.status,
                    submitted_at=to_iso(utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def get_submission_by_reference(self, reference: str) -> Optional[Submission]:
        with self.engine.connect() as conn:
            row = conn.execute(submissions.select().where(submissions.c.reference == reference)).fetchone()
        return _row_to_submission(row) if row is not None else None

    def list_submissions(
        self, page: int = 1, limit: int = 50, status: Optional[str] = None
    ) -> tuple[list[Submission], int]:
        """Newest first. Returns (one page of submissions, total matching)."""
        conditions = [submissions.c.status == status] if status else []
        with self.engine.connect() as conn:
            total = conn.execute(select(func.count()).select_from(submissions).where(*conditions)).scalar() or 0
            rows = conn.execute(
                submissions.select()
                .where(*conditions)
                .order_by(submissions.c.submitted_at.desc(), submissions.c.id.desc())
                .limit(limit)
                .offset((page - 1) * limit)
            ).fetchall()
        return [_row_to_submission(r) for r in rows], total

    def reference_exists(self, reference: str) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(submissions).where(submissions.c.reference == reference)
            ).scalar()
        return (count or 0) > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _group_filter(group_id: Optional[int]):
    return questions.c.group_id.is_(None) if group_id is None else questions.c.group_id == group_id


def _next_question_position(conn: Connection, questionnaire_id: int, group_id: Optional[int]) -> int:
    value = conn.execute(
        select(func.coalesce(func.max(questions.c.sort_order), 0) + 1).where(
            questions.c.questionnaire_id == questionnaire_id, _group_filter(group_id)
        )
    ).scalar()
    return value or 1


def _check_editable(conn: Connection, table: Table, item_id: int, fixed_message: str) -> bool:
    """False if the row is missing; FixedItemError if it is fixed."""
    row = conn.execute(select(table.c.is_fixed).where(table.c.id == item_id)).fetchone()
    if row is None:
        return False
    if row.is_fixed:
        raise FixedItemError(fixed_message)
    return True


def _provision_contact_fields(conn: Connection, questionnaire_id: int) -> int:
    existing = conn.execute(
        select(question_groups.c.id).where(
            question_groups.c.questionnaire_id == questionnaire_id, question_groups.c.is_fixed == 1
        )
    ).scalar()
    if existing is not None:
        return existing

    group_id = conn.execute(
        question_groups.insert().values(
            questionnaire_id=questionnaire_id,
            name=CONTACT_GROUP_NAME,
            description=CONTACT_GROUP_DESCRIPTION,
            sort_order=-1,
            is_fixed=1,
        )
    ).inserted_primary_key[0]
    for order, entry in enumerate(CONTACT_QUESTIONS, start=1):
        conn.execute(
            questions.insert().values(
                questionnaire_id=questionnaire_id,
                group_id=group_id,
                question_text=entry["question_text"],
                question_type=entry["question_type"],
                placeholder_text=entry.get("placeholder_text", ""),
                help_text=entry.get("help_text", ""),
                options=json.dumps([]),
                is_required=1 if entry["is_required"] else 0,
                sort_order=order,
                is_fixed=1,
            )
        )
    return group_id


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_service(row) -> Service:
    return Service(id=row.id, slug=row.slug, name=row.name, title=row.title, is_active=bool(row.is_active))


def _row_to_questionnaire(row) -> Questionnaire:
    return Questionnaire(
        id=row.id,
        service_id=row.service_id,
        title=row.title,
        status=row.status,
        created_at=row.created_at,
    )


def _row_to_group(row) -> QuestionGroup:
    return QuestionGroup(
        id=row.id,
        questionnaire_id=row.questionnaire_id,
        name=row.name,
        description=row.description or "",
        sort_order=row.sort_order,
        is_fixed=bool(row.is_fixed),
    )


def _row_to_question(row) -> Question:
    return Question(
        id=row.id,
        questionnaire_id=row.questionnaire_id,
        group_id=row.group_id,
        group_name=getattr(row, "group_name", None),
        question_text=row.question_text,
        question_type=row.question_type,
        placeholder_text=row.placeholder_text or "",
        help_text=row.help_text or "",
        options=json.loads(row.options) if row.options else [],
        is_required=bool(row.is_required),
        sort_order=row.sort_order,
        is_fixed=bool(row.is_fixed),
    )


def _row_to_submission(row) -> Submission:
    return Submission(
        id=row.id,
        reference=row.reference,
        service_id=row.service_id,
        questionnaire_id=row.questionnaire_id,
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        customer_phone=row.customer_phone,
        form_data=json.loads(row.form_data),
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        status=row.status,
        submitted_at=row.submitted_at,
    )
