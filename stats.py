from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import case, func
from sqlalchemy.orm import Session

from auth import get_current_user_id
from database import BudgetPlan, ExpenseCategory, ExpenseItem, get_db
from errors import InvalidInputError, NotFoundError
from schemas import (
    CategorySpendingResponse,
    MonthlyComparisonResponse,
    OverviewStats,
)

MAX_MONTHS = 24

stats_router = APIRouter()

_completed_amount = case(
    (ExpenseItem.is_completed.is_(True), ExpenseItem.amount_cents), else_=0
)


def overview(db, user_id, today):
    plans = db.query(BudgetPlan).filter(BudgetPlan.user_id == user_id).all()
    spent = (
        db.query(func.coalesce(func.sum(_completed_amount), 0))
        .select_from(BudgetPlan)
        .join(ExpenseCategory, ExpenseCategory.plan_id == BudgetPlan.id)
        .join(ExpenseItem, ExpenseItem.category_id == ExpenseCategory.id)
        .filter(BudgetPlan.user_id == user_id)
        .scalar()
    )
    total_budget = sum(p.budget_cents for p in plans)
    active = sum(1 for p in plans if p.period_end >= today)
    return {
        "total_plans": len(plans),
        "active_plans": active,
        "archived_plans": len(plans) - active,
        "total_budget_cents": total_budget,
        "total_spent_cents": int(spent),
        "remaining_cents": total_budget - int(spent),
    }


def spending_by_category(db, user_id, plan_id):
    plan = (
        db.query(BudgetPlan)
        .filter(BudgetPlan.id == plan_id, BudgetPlan.user_id == user_id)
        .first()
    )
    if plan is None:
        raise NotFoundError("plan not found")

    rows = (
        db.query(
            ExpenseCategory.id,
            ExpenseCategory.title,
            ExpenseCategory.category_type,
            func.coalesce(func.sum(_completed_amount), 0).label("spent"),
        )
        .outerjoin(ExpenseItem, ExpenseItem.category_id == ExpenseCategory.id)
        .filter(ExpenseCategory.plan_id == plan.id)
        .group_by(
            ExpenseCategory.id,
            ExpenseCategory.title,
            ExpenseCategory.category_type,
            ExpenseCategory.sort_order,
            ExpenseCategory.created_at,
        )
        .order_by(ExpenseCategory.sort_order, ExpenseCategory.created_at)
        .all()
    )
    return [
        {
            "category_id": row.id,
            "title": row.title,
            "category_type": row.category_type,
            "spent_cents": int(row.spent),
        }
        for row in rows
    ]


def monthly_comparison(db, user_id, months=6):
    """Budget and spent totals per month of ``period_start``, newest first."""
    if months <= 0:
        raise InvalidInputError("months must be positive")

    rows = (
        db.query(
            BudgetPlan.id,
            BudgetPlan.period_start,
            BudgetPlan.budget_cents,
            func.coalesce(func.sum(_completed_amount), 0).label("spent"),
        )
        .outerjoin(ExpenseCategory, ExpenseCategory.plan_id == BudgetPlan.id)
        .outerjoin(ExpenseItem, ExpenseItem.category_id == ExpenseCategory.id)
        .filter(BudgetPlan.user_id == user_id)
        .group_by(BudgetPlan.id, BudgetPlan.period_start, BudgetPlan.budget_cents)
        .all()
    )

    totals = {}
    for row in rows:
        month = row.period_start.strftime("%Y-%m")
        budget_cents, spent_cents = totals.get(month, (0, 0))
        totals[month] = (budget_cents + row.budget_cents, spent_cents + int(row.spent))

    return [
        {"month": month, "budget_cents": b, "spent_cents": s}
        for month, (b, s) in sorted(totals.items(), reverse=True)[:months]
    ]


@stats_router.get("/overview", response_model=OverviewStats)
def get_overview(
    db: Session = Depends(get_db), user_id: UUID = Depends(get_current_user_id)
):
    return overview(db, user_id, date.today())


@stats_router.get("/spending-by-category", response_model=CategorySpendingResponse)
def get_spending_by_category(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return {"plan_id": plan_id, "categories": spending_by_category(db, user_id, plan_id)}


@stats_router.get("/monthly-comparison", response_model=MonthlyComparisonResponse)
def get_monthly_comparison(
    months: int = 6,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return {"months": monthly_comparison(db, user_id, min(months, MAX_MONTHS))}
