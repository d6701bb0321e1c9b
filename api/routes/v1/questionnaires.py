"""
api/routes/v1/questionnaires.py -- Questionnaire builder REST endpoints.

Routes:
  GET    /api/v1/services                                -- list services
  POST   /api/v1/services                                -- create service
  GET    /api/v1/questionnaires                          -- list questionnaires
  POST   /api/v1/questionnaires                          -- create (provisions contact fields)
  GET    /api/v1/questionnaires/{id}                     -- ordered groups and questions
  POST   /api/v1/questionnaires/{id}/questions           -- add question
  POST   /api/v1/questionnaires/{id}/questions/reorder   -- reorder one container
  POST   /api/v1/questionnaires/{id}/groups              -- add group (may adopt questions)
  POST   /api/v1/questionnaires/{id}/groups/reorder      -- reorder groups
  GET    /api/v1/questions/{id}
  PATCH  /api/v1/questions/{id}
  DELETE /api/v1/questions/{id}
  POST   /api/v1/questions/{id}/move
  GET    /api/v1/groups/{id}
  PATCH  /api/v1/groups/{id}
  DELETE /api/v1/groups/{id}                             -- questions become ungrouped

Every route requires manage_questionnaires; every mutation also requires the
X-CSRF-Token header. FixedItemError (fixed contact group/questions) is mapped
to HTTP 403 by the handler in api/main.py.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import (
    CreatedResponse,
    GroupCreate,
    GroupModel,
    GroupReorder,
    GroupUpdate,
    MessageResponse,
    QuestionCreate,
    QuestionModel,
    QuestionMove,
    QuestionnaireCreate,
    QuestionnaireDetail,
    QuestionnaireModel,
    QuestionReorder,
    QuestionUpdate,
    ServiceCreate,
    ServiceModel,
)
from auth.dependencies import require_permission
from auth.models import Account
from questionnaire.models import Question, QuestionGroup, Questionnaire, Service
from questionnaire.store import FixedItemError, QuestionnaireStore

router = APIRouter()

_read = require_permission("manage_questionnaires")
_write = require_permission("manage_questionnaires", csrf=True)


def _store(request: Request) -> QuestionnaireStore:
    return request.app.state.questionnaire_store


def _not_found(message: str) -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": message})


def _question_model(question: Question) -> QuestionModel:
    return QuestionModel(
        id=question.id,
        group_id=question.group_id,
        group_name=question.group_name,
        question_text=question.question_text,
        question_type=question.question_type,
        placeholder_text=question.placeholder_text,
        help_text=question.help_text,
        options=question.options,
        is_required=question.is_required,
        sort_order=question.sort_order,
        is_fixed=question.is_fixed,
    )


def _group_model(group: QuestionGroup, questions: list[Question]) -> GroupModel:
    return GroupModel(
        id=group.id,
        name=group.name,
        description=group.description,
        sort_order=group.sort_order,
        is_fixed=group.is_fixed,
        questions=[_question_model(q) for q in questions if q.group_id == group.id],
    )


def _questionnaire_model(questionnaire: Questionnaire) -> QuestionnaireModel:
    return QuestionnaireModel(
        id=questionnaire.id,
        service_id=questionnaire.service_id,
        title=questionnaire.title,
        status=questionnaire.status,
        created_at=questionnaire.created_at,
    )


def _require_questionnaire(store: QuestionnaireStore, questionnaire_id: int) -> Questionnaire:
    questionnaire = store.get_questionnaire(questionnaire_id)
    if questionnaire is None:
        raise _not_found("Fragebogen nicht gefunden.")
    return questionnaire


def _require_target_group(store: QuestionnaireStore, questionnaire_id: int, group_id: int | None) -> None:
    if group_id is None:
        return
    group = store.get_group(group_id)
    if group is None or group.questionnaire_id != questionnaire_id:
        raise _not_found("Gruppe nicht gefunden.")
    if group.is_fixed:
        raise FixedItemError("Questions cannot be added to the fixed contact group")


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@router.get("/services", response_model=list[ServiceModel])
def list_services(request: Request, account: Account = Depends(_read)) -> list[ServiceModel]:
    return [
        ServiceModel(id=s.id, slug=s.slug, name=s.name, title=s.title, is_active=s.is_active)
        for s in _store(request).list_services()
    ]


@router.post("/services", response_model=CreatedResponse, status_code=201)
def create_service(request: Request, body: ServiceCreate, account: Account = Depends(_write)) -> CreatedResponse:
    try:
        service_id = _store(request).create_service(Service(slug=body.slug, name=body.name, title=body.title))
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": f"Service '{body.slug}' existiert bereits."},
        ) from None
    return CreatedResponse(id=service_id)


# ---------------------------------------------------------------------------
# Questionnaires
# ---------------------------------------------------------------------------


@router.get("/questionnaires", response_model=list[QuestionnaireModel])
def list_questionnaires(request: Request, account: Account = Depends(_read)) -> list[QuestionnaireModel]:
    return [_questionnaire_model(q) for q in _store(request).list_questionnaires()]


@router.post("/questionnaires", response_model=CreatedResponse, status_code=201)
def create_questionnaire(
    request: Request, body: QuestionnaireCreate, account: Account = Depends(_write)
) -> CreatedResponse:
    """Create a questionnaire. The fixed contact group is provisioned in the same transaction."""
    store = _store(request)
    if store.get_service(body.service_id) is None:
        raise _not_found("Service nicht gefunden.")
    questionnaire_id = store.create_questionnaire(
        Questionnaire(service_id=body.service_id, title=body.title, status=body.status.value)
    )
    return CreatedResponse(id=questionnaire_id)


@router.get("/questionnaires/{questionnaire_id}", response_model=QuestionnaireDetail)
def get_questionnaire(
    request: Request, questionnaire_id: int, account: Account = Depends(_read)
) -> QuestionnaireDetail:
    store = _store(request)
    questionnaire = _require_questionnaire(store, questionnaire_id)
    groups = store.list_groups(questionnaire_id)
    questions = store.list_questions(questionnaire_id)
    return QuestionnaireDetail(
        questionnaire=_questionnaire_model(questionnaire),
        groups=[_group_model(g, questions) for g in groups],
        ungrouped=[_question_model(q) for q in questions if q.group_id is None],
    )


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


@router.post("/questionnaires/{questionnaire_id}/questions", response_model=CreatedResponse, status_code=201)
def create_question(
    request: Request, questionnaire_id: int, body: QuestionCreate, account: Account = Depends(_write)
) -> CreatedResponse:
    store = _store(request)
    _require_questionnaire(store, questionnaire_id)
    _require_target_group(store, questionnaire_id, body.group_id)
    question_id = store.create_question(
        Question(
            questionnaire_id=questionnaire_id,
            question_text=body.question_text,
            question_type=body.question_type,
            group_id=body.group_id,
            placeholder_text=body.placeholder_text,
            help_text=body.help_text,
            options=body.options,
            is_required=body.is_required,
        )
    )
    return CreatedResponse(id=question_id)


@router.post("/questionnaires/{questionnaire_id}/questions/reorder", response_model=MessageResponse)
def reorder_questions(
    request: Request, questionnaire_id: int, body: QuestionReorder, account: Account = Depends(_write)
) -> MessageResponse:
    store = _store(request)
    _require_questionnaire(store, questionnaire_id)
    updated = store.reorder_questions(questionnaire_id, body.group_id, body.question_ids)
    return MessageResponse(message=f"{updated} Fragen neu sortiert.")


@router.get("/questions/{question_id}", response_model=QuestionModel)
def get_question(request: Request, question_id: int, account: Account = Depends(_read)) -> QuestionModel:
    question = _store(request).get_question(question_id)
    if question is None:
        raise _not_found("Frage nicht gefunden.")
    return _question_model(question)


@router.patch("/questions/{question_id}", response_model=MessageResponse)
def update_question(
    request: Request, question_id: int, body: QuestionUpdate, account: Account = Depends(_write)
) -> MessageResponse:
    if not _store(request).update_question(question_id, **body.model_dump(exclude_unset=True, exclude_none=True)):
        raise _not_found("Frage nicht gefunden.")
    return MessageResponse(message="Frage aktualisiert.")


@router.delete("/questions/{question_id}", response_model=MessageResponse)
def delete_question(request: Request, question_id: int, account: Account = Depends(_write)) -> MessageResponse:
    if not _store(request).delete_question(question_id):
        raise _not_found("Frage nicht gefunden.")
    return MessageResponse(message="Frage gelöscht.")


@router.post("/questions/{question_id}/move", response_model=MessageResponse)
def move_question(
    request: Request, question_id: int, body: QuestionMove, account: Account = Depends(_write)
) -> MessageResponse:
    if not _store(request).move_question(question_id, body.group_id, body.position):
        raise _not_found("Frage oder Zielgruppe nicht gefunden.")
    return MessageResponse(message="Frage verschoben.")


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


@router.post("/questionnaires/{questionnaire_id}/groups", response_model=CreatedResponse, status_code=201)
def create_group(
    request: Request, questionnaire_id: int, body: GroupCreate, account: Account = Depends(_write)
) -> CreatedResponse:
    store = _store(request)
    _require_questionnaire(store, questionnaire_id)
    group_id = store.create_group(
        QuestionGroup(questionnaire_id=questionnaire_id, name=body.name, description=body.description),
        question_ids=body.question_ids,
    )
    return CreatedResponse(id=group_id)


@router.post("/questionnaires/{questionnaire_id}/groups/reorder", response_model=MessageResponse)
def reorder_groups(
    request: Request, questionnaire_id: int, body: GroupReorder, account: Account = Depends(_write)
) -> MessageResponse:
    store = _store(request)
    _require_questionnaire(store, questionnaire_id)
    updated = store.reorder_groups(questionnaire_id, body.group_ids)
    return MessageResponse(message=f"{updated} Gruppen neu sortiert.")


@router.get("/groups/{group_id}", response_model=GroupModel)
def get_group(request: Request, group_id: int, account: Account = Depends(_read)) -> GroupModel:
    store = _store(request)
    group = store.get_group(group_id)
    if group is None:
        raise _not_found("Gruppe nicht gefunden.")
    return _group_model(group, store.list_questions(group.questionnaire_id))


@router.patch("/groups/{group_id}", response_model=MessageResponse)
def update_group(
    request: Request, group_id: int, body: GroupUpdate, account: Account = Depends(_write)
) -> MessageResponse:
    if not _store(request).update_group(group_id, **body.model_dump(exclude_unset=True, exclude_none=True)):
        raise _not_found("Gruppe nicht gefunden.")
    return MessageResponse(message="Gruppe aktualisiert.")


@router.delete("/groups/{group_id}", response_model=MessageResponse)
def delete_group(request: Request, group_id: int, account: Account = Depends(_write)) -> MessageResponse:
    if not _store(request).delete_group(group_id):
        raise _not_found("Gruppe nicht gefunden.")
    return MessageResponse(message="Gruppe gelöscht. Enthaltene Fragen sind jetzt ohne Gruppe.")
