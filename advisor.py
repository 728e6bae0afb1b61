"""AI plan generation and spending advice.

The advisor itself is an interface; without a configured provider the
``OfflineAdvisor`` refuses every request and the endpoints fall back to
template plans and canned advice.
"""
from abc import ABC, abstractmethod
from typing import List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

import ledger
from auth import get_current_user_id
from config import get_settings
from database import CategoryType, NoteType, PriorityColor, get_db
from errors import BudgetExceededError, InvalidInputError
from hub import NotificationHub, ai_advices
from ratelimit import ai_limit
from router import get_hub, publish_budget_update
from schemas import (
    AdvicesResponse,
    AnalyzeSpendingRequest,
    GeneratePlanRequest,
    NoteOut,
    PlanDetail,
)

logger = structlog.get_logger(__name__)

FALLBACK_NOTE = "Ошибка AI генерации. Создан шаблонный план."
FALLBACK_ADVICES = [
    "Пересмотрите обязательные и необязательные расходы и ограничьте лишние траты.",
    "Держите резерв 5-10% бюджета на непредвиденные расходы.",
    "Отмечайте выполненные расходы еженедельно, чтобы вовремя заметить перерасход.",
]


class AdvisorUnavailable(Exception):
    pass


class AdvisorItem(BaseModel):
    title: str
    amount_cents: int
    priority: str


class AdvisorCategory(BaseModel):
    title: str
    type: str
    items: List[AdvisorItem] = []


class AdvisorNote(BaseModel):
    content: str
    type: str = "ai"


class AdvisorPlan(BaseModel):
    title: str
    categories: List[AdvisorCategory]
    notes: List[AdvisorNote] = []


class ItemSnapshot(BaseModel):
    title: str
    amount_cents: int
    priority: str
    is_completed: bool


class CategorySnapshot(BaseModel):
    title: str
    type: str
    items: List[ItemSnapshot]


class SpendingSnapshot(BaseModel):
    plan_title: str
    budget_cents: int
    currency: str
    categories: List[CategorySnapshot]


class Advisor(ABC):
    """Source of generated plans and spending advice.

    A provider returns an ``AdvisorPlan`` whose categories use the
    ``CategoryType`` values and whose items use the ``PriorityColor`` values,
    with positive ``amount_cents`` summing to no more than the requested
    budget. Advice comes back as ``AdvisorNote`` objects with non-empty
    ``content``. Anything it cannot answer raises ``AdvisorUnavailable``.

    The app uses the instance stored on ``app.state.advisor``; install a
    provider there at startup.
    """

    @abstractmethod
    def generate_plan(self, request: GeneratePlanRequest, currency: str) -> AdvisorPlan:
        """Return a plan tree for the request or raise AdvisorUnavailable."""

    @abstractmethod
    def analyze_spending(self, snapshot: SpendingSnapshot) -> List[AdvisorNote]:
        """Return advice notes for the snapshot or raise AdvisorUnavailable."""


class OfflineAdvisor(Advisor):
    """Default when no provider is installed: plan generation always yields
    the template plan and analysis always yields the canned advice."""

    def generate_plan(self, request, currency):
        raise AdvisorUnavailable("no AI provider configured")

    def analyze_spending(self, snapshot):
        raise AdvisorUnavailable("no AI provider configured")


def _choice(enum_cls, value, what):
    try:
        return enum_cls((value or "").strip().lower())
    except ValueError:
        raise InvalidInputError(f"invalid {what}: {value}") from None


def map_plan(plan: AdvisorPlan):
    """Turn an advisor tree into store drafts; unknown enum values are rejected."""
    categories = [
        ledger.CategoryDraft(
            title=category.title,
            category_type=_choice(CategoryType, category.type, "category type"),
            items=[
                ledger.ItemDraft(
                    title=item.title,
                    amount_cents=item.amount_cents,
                    priority_color=_choice(PriorityColor, item.priority, "priority"),
                )
                for item in category.items
            ],
        )
        for category in plan.categories
    ]
    notes = [
        ledger.NoteDraft(
            content=note.content,
            note_type=_choice(NoteType, note.type or "ai", "note type"),
        )
        for note in plan.notes
    ]
    return categories, notes


def create_fallback_plan(db, user_id, request: GeneratePlanRequest):
    title = f"Бюджетный план {request.period_start.isoformat()} - {request.period_end.isoformat()}"
    plan = ledger.create_plan(
        db,
        user_id,
        title,
        request.budget_cents,
        request.period_start,
        request.period_end,
        ledger.DEFAULT_BACKGROUND_COLOR,
        False,
    )
    ledger.create_note(db, user_id, plan.id, FALLBACK_NOTE, NoteType.AI)
    logger.warning("ai plan fallback used", plan_id=str(plan.id), user_id=str(user_id))
    return plan


def generate_plan(db, user_id, request: GeneratePlanRequest, advisor: Advisor):
    """Create a plan from the advisor's answer, or a template plan when that fails."""
    if request.period_end < request.period_start:
        raise InvalidInputError("period_end must not be before period_start")
    currency = (request.currency or "").strip() or get_settings().default_currency

    try:
        generated = advisor.generate_plan(request, currency)
        categories, notes = map_plan(generated)
    except (AdvisorUnavailable, InvalidInputError) as exc:
        logger.warning("ai plan generation failed", user_id=str(user_id), error=str(exc))
        return create_fallback_plan(db, user_id, request)

    try:
        plan = ledger.create_plan_with_details(
            db,
            user_id,
            generated.title,
            request.budget_cents,
            request.period_start,
            request.period_end,
            ledger.DEFAULT_BACKGROUND_COLOR,
            True,
            categories,
            notes,
        )
    except (InvalidInputError, BudgetExceededError) as exc:
        logger.warning("ai plan rejected", user_id=str(user_id), error=str(exc))
        return create_fallback_plan(db, user_id, request)

    logger.info("ai plan created", plan_id=str(plan.id), user_id=str(user_id))
    return plan


def spending_snapshot(db, user_id, plan_id, currency):
    snapshot = ledger.get_plan_detail(db, user_id, plan_id)
    return SpendingSnapshot(
        plan_title=snapshot.plan.title,
        budget_cents=snapshot.plan.budget_cents,
        currency=currency,
        categories=[
            CategorySnapshot(
                title=category.title,
                type=category.category_type.value,
                items=[
                    ItemSnapshot(
                        title=item.title,
                        amount_cents=item.amount_cents,
                        priority=item.priority_color.value,
                        is_completed=item.is_completed,
                    )
                    for item in items
                ],
            )
            for category, items in snapshot.categories
        ],
    )


def analyze_spending(db, user_id, plan_id, advisor: Advisor, currency: Optional[str] = None):
    """Replace the plan's AI notes with fresh advice; canned advice on failure."""
    currency = (currency or "").strip() or get_settings().default_currency
    snapshot = spending_snapshot(db, user_id, plan_id, currency)

    try:
        advices = [
            (a.content, NoteType.USER if a.type.strip() == "user" else NoteType.AI)
            for a in advisor.analyze_spending(snapshot)
            if a.content.strip()
        ]
        if not advices:
            raise AdvisorUnavailable("advisor returned no advice")
    except AdvisorUnavailable as exc:
        logger.warning(
            "ai advices fallback used", plan_id=str(plan_id), user_id=str(user_id), error=str(exc)
        )
        advices = [(content, NoteType.AI) for content in FALLBACK_ADVICES]

    return ledger.replace_notes(
        db,
        user_id,
        plan_id,
        NoteType.AI,
        [ledger.NoteDraft(content, note_type) for content, note_type in advices],
    )


def get_advisor(request: Request) -> Advisor:
    return request.app.state.advisor


ai_router = APIRouter()


@ai_router.post("/generate-plan", response_model=PlanDetail, status_code=status.HTTP_201_CREATED)
@ai_limit
def generate_plan_endpoint(
    request: Request,
    body: GeneratePlanRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
    advisor: Advisor = Depends(get_advisor),
):
    plan = generate_plan(db, user_id, body, advisor)
    publish_budget_update(hub, db, user_id, plan.id)
    return PlanDetail.from_snapshot(ledger.get_plan_detail(db, user_id, plan.id))


@ai_router.post("/analyze-spending", response_model=AdvicesResponse)
@ai_limit
def analyze_spending_endpoint(
    request: Request,
    body: AnalyzeSpendingRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
    advisor: Advisor = Depends(get_advisor),
):
    notes = analyze_spending(db, user_id, body.plan_id, advisor, body.currency)
    hub.publish(user_id, ai_advices(body.plan_id, len(notes)))
    return {"advices": [NoteOut.model_validate(note) for note in notes]}


@ai_router.get("/advices/{plan_id}", response_model=AdvicesResponse)
@ai_limit
def get_advices(
    request: Request,
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    notes = ledger.list_notes(db, user_id, plan_id, NoteType.AI)
    return {"advices": [NoteOut.model_validate(note) for note in notes]}
