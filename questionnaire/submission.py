"""
questionnaire/submission.py -- Turns a posted lead form into a stored submission.

Flow (SubmissionHandler.process):
  1. reject an empty form
  2. resolve the active service by slug, then its newest active questionnaire
  3. check required questions (key "question_<id>") and e-mail formats
  4. extract labelled answers and the customer's contact data
  5. store the submission under a fresh reference (ABC-YYMMDD-NNNN)

PDF rendering and e-mail notifications are not part of this module.
"""

from __future__ import annotations

import logging
import re
import secrets
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from auth.models import ClientInfo
from questionnaire.models import Answer, Question, Service, Submission
from questionnaire.store import QuestionnaireStore

logger = logging.getLogger("serviceportal.submissions")

SYSTEM_KEYS = frozenset({"service_id", "template_id", "csrf_token", "service_slug"})
LEGACY_CONTACT_KEYS = frozenset({"name", "email", "phone", "customer_name", "customer_email", "customer_phone"})

FIELD_LABELS: dict[str, str] = {
    "moving_date": "Umzugsdatum",
    "from_address": "Von Adresse",
    "to_address": "Zu Adresse",
    "pickup_address": "Abholadresse",
    "delivery_address": "Lieferadresse",
    "rooms": "Anzahl Zimmer",
    "elevator_from": "Aufzug vorhanden (von)",
    "elevator_to": "Aufzug vorhanden (zu)",
    "piano": "Klavier vorhanden",
    "packing_service": "Verpackungsservice",
    "storage": "Lagerung erforderlich",
    "transport_date": "Transportdatum",
    "items": "Gegenstände",
    "weight": "Geschätztes Gewicht",
    "special_handling": "Besondere Behandlung",
    "loading_help": "Ladehilfe benötigt",
    "service_date": "Wunschdatum",
    "property_address": "Objektadresse",
    "property_type": "Objekttyp",
    "disposal_method": "Entsorgungsart",
    "certificate_needed": "Bescheinigung erforderlich",
    "cleaning_included": "Reinigung inklusive",
    "storage_needed": "Lagerung benötigt",
    "contact_person": "Ansprechpartner",
    "phone": "Telefonnummer",
    "email": "E-Mail-Adresse",
    "message": "Nachricht",
    "comments": "Anmerkungen",
    "notes": "Hinweise",
}

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_LABEL_PREFIX_RE = re.compile(r"^(question_|q)")
_REFERENCE_ATTEMPTS = 5

MSG_EMPTY_FORM = "Keine Formulardaten übermittelt."
MSG_UNKNOWN_SERVICE = "Service nicht gefunden."
MSG_REQUIRED = "Bitte füllen Sie alle Pflichtfelder aus: {fields}"
MSG_INVALID_EMAIL = "Bitte geben Sie eine gültige E-Mail-Adresse ein."
MSG_INTERNAL = "Interner Serverfehler. Bitte versuchen Sie es später erneut."


class SubmissionError(Exception):
    """A submission that cannot be stored. code is one of validation / not_found / internal."""

    def __init__(self, code: str, message: str, fields: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.fields = fields or []


@dataclass
class SubmissionResult:
    reference: str
    submission_id: int
    service: Service
    answers: list[Answer] = field(default_factory=list)
    contact: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def generate_reference(service_slug: str, today: Optional[date] = None) -> str:
    """ABC-YYMMDD-NNNN: slug prefix, submission date, random 0001-9999."""
    today = today or date.today()
    prefix = service_slug[:3].upper()
    return f"{prefix}-{today:%y%m%d}-{secrets.randbelow(9999) + 1:04d}"


def format_field_label(key: str) -> str:
    """German label for a bare form key: known translation, else a humanized key."""
    if key in FIELD_LABELS:
        return FIELD_LABELS[key]
    cleaned = _LABEL_PREFIX_RE.sub("", key)
    return cleaned.replace("_", " ").replace("-", " ").lower().capitalize()


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def _as_text(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, bool):
        return "Ja" if value else "Nein"
    return str(value).strip()


def build_question_map(questions: list[Question]) -> dict[str, str]:
    """Map every key a form may use for a question to its text.

    Keys: question_<id>, q<id>, <id>, and the positional question_<n> / q<n>.
    Id-based keys win over positional ones on collision.
    """
    mapping: dict[str, str] = {}
    for position, question in enumerate(questions, start=1):
        mapping[f"question_{position}"] = question.question_text
        mapping[f"q{position}"] = question.question_text
    for question in questions:
        mapping[f"question_{question.id}"] = question.question_text
        mapping[f"q{question.id}"] = question.question_text
        mapping[str(question.id)] = question.question_text
    return mapping


def extract_answers(fields: dict[str, Any], questions: Optional[list[Question]] = None) -> list[Answer]:
    """Labelled answers in form order, skipping system, legacy contact, meta and empty fields."""
    question_map = build_question_map(questions or [])
    answers: list[Answer] = []
    for key, value in fields.items():
        if key in SYSTEM_KEYS or key in LEGACY_CONTACT_KEYS:
            continue
        if "_text" in key:
            continue
        if _is_empty(value):
            continue
        label = question_map.get(key) or format_field_label(key)
        answers.append(Answer(question_id=len(answers) + 1, question_text=label, answer_text=_as_text(value)))
    return answers


def extract_contact_data(fields: dict[str, Any], answers: list[Answer]) -> dict[str, Optional[str]]:
    """Name, e-mail and phone from the fixed contact answers, falling back to legacy keys."""
    first_name = last_name = email = phone = None
    for answer in answers:
        text = answer.question_text
        if text == "Vorname":
            first_name = answer.answer_text
        elif text == "Nachname":
            last_name = answer.answer_text
        elif text == "E-Mail Adresse":
            email = answer.answer_text
        elif text in ("Telefonnummer", "Mobilnummer") and not phone:
            phone = answer.answer_text

    name = f"{first_name or ''} {last_name or ''}".strip() or None
    name = name or _first_present(fields, "name", "customer_name")
    email = email or _first_present(fields, "email", "customer_email")
    phone = phone or _first_present(fields, "phone", "customer_phone")
    return {"name": name, "email": email, "phone": phone}


def _first_present(fields: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = fields.get(key)
        if not _is_empty(value):
            return _as_text(value)
    return None


def missing_required(fields: dict[str, Any], questions: list[Question]) -> list[str]:
    """Texts of required questions that have no answer under question_<id>."""
    return [q.question_text for q in questions if q.is_required and _is_empty(fields.get(f"question_{q.id}"))]


def invalid_emails(fields: dict[str, Any], questions: list[Question]) -> list[str]:
    bad = []
    for question in questions:
        if question.question_type != "email":
            continue
        value = fields.get(f"question_{question.id}")
        if not _is_empty(value) and not _EMAIL_RE.match(_as_text(value)):
            bad.append(question.question_text)
    for key in ("email", "customer_email"):
        value = fields.get(key)
        if not _is_empty(value) and not _EMAIL_RE.match(_as_text(value)):
            bad.append(key)
    return bad


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------


class SubmissionHandler:
    """Validates and stores public questionnaire submissions."""

    def __init__(self, store: QuestionnaireStore) -> None:
        self._store = store

    def process(
        self,
        fields: dict[str, Any],
        service_slug: str,
        client: Optional[ClientInfo] = None,
    ) -> SubmissionResult:
        client = client or ClientInfo()
        if not fields:
            raise SubmissionError("validation", MSG_EMPTY_FORM)

        try:
            service = self._store.get_service_by_slug(service_slug)
            if service is None:
                raise SubmissionError("not_found", MSG_UNKNOWN_SERVICE)
            questionnaire = self._store.latest_active_questionnaire(service.id)
            questions = self._store.list_questions(questionnaire.id) if questionnaire else []

            missing = missing_required(fields, questions)
            if missing:
                raise SubmissionError("validation", MSG_REQUIRED.format(fields=", ".join(missing)), missing)
            bad_emails = invalid_emails(fields, questions)
            if bad_emails:
                raise SubmissionError("validation", MSG_INVALID_EMAIL, bad_emails)

            answers = extract_answers(fields, questions)
            contact = extract_contact_data(fields, answers)
            reference = self._unique_reference(service.slug)
            submission = Submission(
                reference=reference,
                service_id=service.id,
                questionnaire_id=questionnaire.id if questionnaire else None,
                customer_name=contact["name"],
                customer_email=contact["email"],
                customer_phone=contact["phone"],
                form_data={"fields": fields, "answers": [asdict(a) for a in answers]},
                ip_address=client.address,
                user_agent=client.user_agent,
            )
            submission_id = self._store.save_submission(submission)
        except SQLAlchemyError as exc:
            logger.exception("Storing submission for service %r failed", service_slug)
            raise SubmissionError("internal", MSG_INTERNAL) from exc

        logger.info("Submission %s stored for service %s (%d answers)", reference, service.slug, len(answers))
        return SubmissionResult(
            reference=reference,
            submission_id=submission_id,
            service=service,
            answers=answers,
            contact=contact,
        )

    def _unique_reference(self, slug: str) -> str:
        reference = generate_reference(slug)
        for _ in range(_REFERENCE_ATTEMPTS - 1):
            if not self._store.reference_exists(reference):
                break
            reference = generate_reference(slug)
        return reference
