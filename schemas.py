# schemas.py
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field, constr

from database import CategoryType, NoteType, PriorityColor

HexColor = constr(pattern=r"^#[0-9A-Fa-f]{6}$")


# auth


class RegisterRequest(BaseModel):
    email: EmailStr
    password: constr(min_length=8, max_length=128)
    name: Optional[constr(max_length=100)] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: str


class UserOut(BaseModel):
    id: UUID
    email: str
    name: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(TokenPair):
    user: UserOut


# plans


class PlanCreate(BaseModel):
    title: constr(min_length=1, max_length=200)
    budget_cents: int = Field(gt=0)
    period_start: date
    period_end: date
    background_color: Optional[HexColor] = None
    is_ai_generated: Optional[bool] = None


class PlanUpdate(PlanCreate):
    """Title, budget and period are required; omitted optional fields keep their value."""


class PlanOut(BaseModel):
    id: UUID
    title: str
    budget_cents: int
    period_start: date
    period_end: date
    background_color: str
    is_ai_generated: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PlanSummary(PlanOut):
    spent_cents: int
    remaining_cents: int

    @classmethod
    def from_plan(cls, plan, spent_cents):
        return cls(
            **PlanOut.model_validate(plan).model_dump(),
            spent_cents=spent_cents,
            remaining_cents=plan.budget_cents - spent_cents,
        )


class CategoryCreate(BaseModel):
    title: constr(min_length=1, max_length=100)
    category_type: CategoryType


class CategoryOut(BaseModel):
    id: UUID
    plan_id: UUID
    title: str
    category_type: CategoryType
    sort_order: int
    created_at: datetime

    class Config:
        from_attributes = True


class ItemCreate(BaseModel):
    title: constr(min_length=1, max_length=200)
    amount_cents: int = Field(gt=0)
    priority_color: PriorityColor
    is_completed: Optional[bool] = None


class ItemUpdate(BaseModel):
    title: constr(min_length=1, max_length=200)
    amount_cents: int = Field(gt=0)
    priority_color: PriorityColor


class ItemToggle(BaseModel):
    is_completed: Optional[bool] = None


class ItemColor(BaseModel):
    priority_color: PriorityColor


class ItemOut(BaseModel):
    id: UUID
    category_id: UUID
    title: str
    amount_cents: int
    priority_color: PriorityColor
    is_completed: bool
    sort_order: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CategoryDetail(CategoryOut):
    items: List[ItemOut] = []


class NoteCreate(BaseModel):
    content: constr(min_length=1)
    note_type: NoteType = NoteType.USER


class NoteUpdate(BaseModel):
    content: constr(min_length=1)
    note_type: NoteType


class NoteOut(BaseModel):
    id: UUID
    plan_id: UUID
    content: str
    note_type: NoteType
    sort_order: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PlanDetail(BaseModel):
    plan: PlanSummary
    categories: List[CategoryDetail]
    notes: List[NoteOut]

    @classmethod
    def from_snapshot(cls, snapshot):
        categories = [
            CategoryDetail(
                **CategoryOut.model_validate(category).model_dump(),
                items=[ItemOut.model_validate(item) for item in items],
            )
            for category, items in snapshot.categories
        ]
        return cls(
            plan=PlanSummary.from_plan(snapshot.plan, snapshot.spent_cents),
            categories=categories,
            notes=[NoteOut.model_validate(note) for note in snapshot.notes],
        )


class ReorderRequest(BaseModel):
    ordered_ids: List[UUID]


# stats


class OverviewStats(BaseModel):
    total_plans: int
    active_plans: int
    archived_plans: int
    total_budget_cents: int
    total_spent_cents: int
    remaining_cents: int


class CategorySpending(BaseModel):
    category_id: UUID
    title: str
    category_type: CategoryType
    spent_cents: int


class CategorySpendingResponse(BaseModel):
    plan_id: UUID
    categories: List[CategorySpending]


class MonthlyComparisonItem(BaseModel):
    month: str
    budget_cents: int
    spent_cents: int


class MonthlyComparisonResponse(BaseModel):
    months: List[MonthlyComparisonItem]


# ai


class AIIncomeSource(BaseModel):
    source: str
    amount_cents: int = Field(ge=0)


class AIExpense(BaseModel):
    title: str
    amount_cents: int = Field(ge=0)


class AIUserData(BaseModel):
    period: Optional[str] = None
    income: List[AIIncomeSource] = []
    mandatory_expenses: List[AIExpense] = []
    optional_expenses: List[AIExpense] = []
    assets: List[AIExpense] = []
    debts: List[AIExpense] = []
    additional_notes: Optional[str] = None


class GeneratePlanRequest(BaseModel):
    period_start: date
    period_end: date
    budget_cents: int = Field(gt=0)
    currency: Optional[str] = None
    user_data: AIUserData = AIUserData()


class AnalyzeSpendingRequest(BaseModel):
    plan_id: UUID
    currency: Optional[str] = None


class AdvicesResponse(BaseModel):
    advices: List[NoteOut]
