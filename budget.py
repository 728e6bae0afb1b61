# budget.py
import structlog
from sqlalchemy import func

from database import BudgetPlan, ExpenseCategory, ExpenseItem
from errors import BudgetExceededError, NotFoundError

logger = structlog.get_logger(__name__)


def lock_plan(db, user_id, plan_id):
    """Load the caller's plan and hold its row lock until the transaction ends.

    Postgres gets ``SELECT ... FOR UPDATE``; SQLite ignores the clause and relies
    on the ``BEGIN IMMEDIATE`` issued by the engine, which already serialises
    writers.
    """
    plan = (
        db.query(BudgetPlan)
        .filter(BudgetPlan.id == plan_id, BudgetPlan.user_id == user_id)
        .with_for_update()
        .first()
    )
    if plan is None:
        raise NotFoundError("plan not found")
    return plan


def total_amount(db, plan_id):
    """Sum of every item amount in the plan, completed or not."""
    total = (
        db.query(func.coalesce(func.sum(ExpenseItem.amount_cents), 0))
        .join(ExpenseCategory, ExpenseItem.category_id == ExpenseCategory.id)
        .filter(ExpenseCategory.plan_id == plan_id)
        .scalar()
    )
    return int(total)


def spent_amount(db, plan_id):
    """Sum of completed item amounts, the figure shown to users as spent."""
    spent = (
        db.query(func.coalesce(func.sum(ExpenseItem.amount_cents), 0))
        .join(ExpenseCategory, ExpenseItem.category_id == ExpenseCategory.id)
        .filter(
            ExpenseCategory.plan_id == plan_id,
            ExpenseItem.is_completed.is_(True),
        )
        .scalar()
    )
    return int(spent)


def ensure_within_budget(db, plan, new_amount, old_amount=0):
    # plan must already be locked by the caller
    current = total_amount(db, plan.id)
    projected = current - old_amount + new_amount
    if projected > plan.budget_cents:
        logger.warning(
            "budget exceeded",
            plan_id=str(plan.id),
            budget_cents=plan.budget_cents,
            projected_cents=projected,
        )
        raise BudgetExceededError(
            f"budget exceeded: {projected} > {plan.budget_cents}"
        )
    return projected
