# ledger.py
"""Owner-scoped persistence for plans and their ordered children.

Every public function takes the request session and the caller's user id.
Anything the caller does not own is reported as missing. Writes run inside
``database.transaction`` so a failure leaves no partial rows behind.
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

import budget
import reorder
from database import (
    BudgetPlan,
    CategoryType,
    ExpenseCategory,
    ExpenseItem,
    Note,
    NoteType,
    PriorityColor,
    User,
    transaction,
)
from errors import BudgetExceededError, ConflictError, InvalidInputError, NotFoundError

logger = structlog.get_logger(__name__)

DEFAULT_BACKGROUND_COLOR = "#FDF7F7"
COPY_PREFIX = "Copy of "
PLAN_TITLE_MAX = 200
CATEGORY_TITLE_MAX = 100
ITEM_TITLE_MAX = 200

DEFAULT_CATEGORIES = [
    ("Жилье", CategoryType.MANDATORY),
    ("Коммунальные услуги", CategoryType.MANDATORY),
    ("Еда", CategoryType.MANDATORY),
    ("Транспорт", CategoryType.MANDATORY),
    ("Развлечения", CategoryType.OPTIONAL),
    ("Другое", CategoryType.OPTIONAL),
]

_HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")


@dataclass
class ItemDraft:
    title: str
    amount_cents: int
    priority_color: PriorityColor
    is_completed: bool = False


@dataclass
class CategoryDraft:
    title: str
    category_type: CategoryType
    items: List[ItemDraft] = field(default_factory=list)


@dataclass
class NoteDraft:
    content: str
    note_type: NoteType = NoteType.AI


@dataclass
class PlanSnapshot:
    plan: BudgetPlan
    spent_cents: int
    categories: list
    notes: list

    @property
    def remaining_cents(self):
        return self.plan.budget_cents - self.spent_cents


# validation helpers


def _text(value, what, max_length=None):
    value = (value or "").strip()
    if not value:
        raise InvalidInputError(f"{what} must not be blank")
    if max_length is not None and len(value) > max_length:
        raise InvalidInputError(f"{what} is longer than {max_length} characters")
    return value


def _check_plan_fields(budget_cents, period_start, period_end, background_color):
    if budget_cents is None or budget_cents <= 0:
        raise InvalidInputError("budget_cents must be positive")
    if period_end < period_start:
        raise InvalidInputError("period_end must not be before period_start")
    if background_color is not None and not _HEX_COLOR.match(background_color):
        raise InvalidInputError("background_color must be #RRGGBB")


def _check_amount(amount_cents):
    if amount_cents is None or amount_cents <= 0:
        raise InvalidInputError("amount_cents must be positive")


def _enum(enum_cls, value, what):
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidInputError(f"unknown {what}: {value}") from None


def _next_position(db, model, parent_column, parent_id):
    current = db.query(func.max(model.sort_order)).filter(parent_column == parent_id).scalar()
    return 0 if current is None else current + 1


# ownership lookups


def _owned_plan(db, user_id, plan_id):
    plan = (
        db.query(BudgetPlan)
        .filter(BudgetPlan.id == plan_id, BudgetPlan.user_id == user_id)
        .first()
    )
    if plan is None:
        raise NotFoundError("plan not found")
    return plan


def _owned_category(db, user_id, category_id):
    category = (
        db.query(ExpenseCategory)
        .join(BudgetPlan, ExpenseCategory.plan_id == BudgetPlan.id)
        .filter(ExpenseCategory.id == category_id, BudgetPlan.user_id == user_id)
        .first()
    )
    if category is None:
        raise NotFoundError("category not found")
    return category


def _owned_item(db, user_id, item_id):
    row = (
        db.query(ExpenseItem, ExpenseCategory.plan_id)
        .join(ExpenseCategory, ExpenseItem.category_id == ExpenseCategory.id)
        .join(BudgetPlan, ExpenseCategory.plan_id == BudgetPlan.id)
        .filter(ExpenseItem.id == item_id, BudgetPlan.user_id == user_id)
        .first()
    )
    if row is None:
        raise NotFoundError("item not found")
    return row[0], row[1]


def _owned_note(db, user_id, note_id):
    note = (
        db.query(Note)
        .join(BudgetPlan, Note.plan_id == BudgetPlan.id)
        .filter(Note.id == note_id, BudgetPlan.user_id == user_id)
        .first()
    )
    if note is None:
        raise NotFoundError("note not found")
    return note


# users


def create_user(db, email, password_hash, name=None):
    try:
        with transaction(db):
            user = User(email=email, password_hash=password_hash, name=name)
            db.add(user)
    except IntegrityError:
        raise ConflictError("email already registered") from None
    return user


def get_user(db, user_id):
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError("user not found")
    return user


def get_user_by_email(db, email):
    return db.query(User).filter(User.email == email).first()


# plans


def create_plan(
    db,
    user_id,
    title,
    budget_cents,
    period_start,
    period_end,
    background_color=None,
    is_ai_generated=None,
):
    """Create a plan seeded with the default category catalogue."""
    title = _text(title, "title", PLAN_TITLE_MAX)
    _check_plan_fields(budget_cents, period_start, period_end, background_color)

    with transaction(db):
        plan = BudgetPlan(
            user_id=user_id,
            title=title,
            budget_cents=budget_cents,
            period_start=period_start,
            period_end=period_end,
            background_color=background_color or DEFAULT_BACKGROUND_COLOR,
            is_ai_generated=True if is_ai_generated is None else is_ai_generated,
        )
        for position, (cat_title, cat_type) in enumerate(DEFAULT_CATEGORIES):
            plan.categories.append(
                ExpenseCategory(title=cat_title, category_type=cat_type, sort_order=position)
            )
        db.add(plan)

    logger.info("plan created", plan_id=str(plan.id), user_id=str(user_id))
    return plan


def create_plan_with_details(
    db,
    user_id,
    title,
    budget_cents,
    period_start,
    period_end,
    background_color,
    is_ai_generated,
    categories,
    notes,
):
    """Create a plan from a full category/item/note tree.

    The whole tree is validated before anything is written, so a rejected
    tree never leaves rows behind.
    """
    title = _text(title, "title", PLAN_TITLE_MAX)
    _check_plan_fields(budget_cents, period_start, period_end, background_color)
    if not categories:
        raise InvalidInputError("at least one category is required")

    total = 0
    for draft in categories:
        _text(draft.title, "category title", CATEGORY_TITLE_MAX)
        _enum(CategoryType, draft.category_type, "category type")
        for item in draft.items:
            _text(item.title, "item title", ITEM_TITLE_MAX)
            _check_amount(item.amount_cents)
            _enum(PriorityColor, item.priority_color, "priority")
            total += item.amount_cents
    for note in notes:
        _text(note.content, "note content")
        _enum(NoteType, note.note_type, "note type")
    if total > budget_cents:
        raise BudgetExceededError(f"budget exceeded: {total} > {budget_cents}")

    with transaction(db):
        plan = BudgetPlan(
            user_id=user_id,
            title=title,
            budget_cents=budget_cents,
            period_start=period_start,
            period_end=period_end,
            background_color=background_color or DEFAULT_BACKGROUND_COLOR,
            is_ai_generated=is_ai_generated,
        )
        for cat_pos, draft in enumerate(categories):
            category = ExpenseCategory(
                title=draft.title.strip(),
                category_type=_enum(CategoryType, draft.category_type, "category type"),
                sort_order=cat_pos,
            )
            for item_pos, item in enumerate(draft.items):
                category.items.append(
                    ExpenseItem(
                        title=item.title.strip(),
                        amount_cents=item.amount_cents,
                        priority_color=_enum(PriorityColor, item.priority_color, "priority"),
                        is_completed=item.is_completed,
                        sort_order=item_pos,
                    )
                )
            plan.categories.append(category)
        for note_pos, note in enumerate(notes):
            plan.notes.append(
                Note(
                    content=note.content.strip(),
                    note_type=_enum(NoteType, note.note_type, "note type"),
                    sort_order=note_pos,
                )
            )
        db.add(plan)

    logger.info(
        "plan created with details",
        plan_id=str(plan.id),
        user_id=str(user_id),
        categories=len(categories),
    )
    return plan


def get_plan(db, user_id, plan_id):
    return _owned_plan(db, user_id, plan_id)


def update_plan(
    db,
    user_id,
    plan_id,
    title,
    budget_cents,
    period_start,
    period_end,
    background_color=None,
    is_ai_generated=None,
):
    """Replace the required fields; ``None`` leaves colour and AI flag as they are."""
    title = _text(title, "title", PLAN_TITLE_MAX)
    _check_plan_fields(budget_cents, period_start, period_end, background_color)

    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        plan.title = title
        plan.budget_cents = budget_cents
        plan.period_start = period_start
        plan.period_end = period_end
        if background_color is not None:
            plan.background_color = background_color
        if is_ai_generated is not None:
            plan.is_ai_generated = is_ai_generated
    return plan


def delete_plan(db, user_id, plan_id):
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        db.delete(plan)


def duplicate_plan(db, user_id, plan_id):
    """Deep copy a plan with fresh ids; only the title changes."""
    with transaction(db):
        source = budget.lock_plan(db, user_id, plan_id)
        copy = BudgetPlan(
            user_id=user_id,
            title=(COPY_PREFIX + source.title)[:PLAN_TITLE_MAX],
            budget_cents=source.budget_cents,
            period_start=source.period_start,
            period_end=source.period_end,
            background_color=source.background_color,
            is_ai_generated=source.is_ai_generated,
        )
        for category in _categories(db, source.id):
            cat_copy = ExpenseCategory(
                title=category.title,
                category_type=category.category_type,
                sort_order=category.sort_order,
            )
            for item in _items(db, category.id):
                cat_copy.items.append(
                    ExpenseItem(
                        title=item.title,
                        amount_cents=item.amount_cents,
                        priority_color=item.priority_color,
                        is_completed=item.is_completed,
                        sort_order=item.sort_order,
                    )
                )
            copy.categories.append(cat_copy)
        for note in _notes(db, source.id):
            copy.notes.append(
                Note(content=note.content, note_type=note.note_type, sort_order=note.sort_order)
            )
        db.add(copy)

    logger.info("plan duplicated", plan_id=str(copy.id), source_id=str(plan_id))
    return copy


def get_spent(db, plan_id):
    return budget.spent_amount(db, plan_id)


def _spent_by_plan(db, plan_ids):
    if not plan_ids:
        return {}
    rows = (
        db.query(ExpenseCategory.plan_id, func.sum(ExpenseItem.amount_cents))
        .join(ExpenseItem, ExpenseItem.category_id == ExpenseCategory.id)
        .filter(ExpenseCategory.plan_id.in_(plan_ids), ExpenseItem.is_completed.is_(True))
        .group_by(ExpenseCategory.plan_id)
        .all()
    )
    return {plan_id: int(spent or 0) for plan_id, spent in rows}


def _with_spent(db, plans):
    spent = _spent_by_plan(db, [p.id for p in plans])
    return [(plan, spent.get(plan.id, 0)) for plan in plans]


def list_active_plans(db, user_id, today):
    plans = (
        db.query(BudgetPlan)
        .filter(BudgetPlan.user_id == user_id, BudgetPlan.period_end >= today)
        .order_by(BudgetPlan.created_at.desc())
        .all()
    )
    return _with_spent(db, plans)


def list_archived_plans(db, user_id, today):
    plans = (
        db.query(BudgetPlan)
        .filter(BudgetPlan.user_id == user_id, BudgetPlan.period_end < today)
        .order_by(BudgetPlan.period_end.desc(), BudgetPlan.created_at.desc())
        .all()
    )
    return _with_spent(db, plans)


def _categories(db, plan_id):
    return (
        db.query(ExpenseCategory)
        .filter(ExpenseCategory.plan_id == plan_id)
        .order_by(ExpenseCategory.sort_order, ExpenseCategory.created_at)
        .all()
    )


def _items(db, category_id):
    return (
        db.query(ExpenseItem)
        .filter(ExpenseItem.category_id == category_id)
        .order_by(ExpenseItem.sort_order, ExpenseItem.created_at)
        .all()
    )


def _notes(db, plan_id, note_type=None):
    query = db.query(Note).filter(Note.plan_id == plan_id)
    if note_type is not None:
        query = query.filter(Note.note_type == _enum(NoteType, note_type, "note type"))
    return query.order_by(Note.sort_order, Note.created_at).all()


def get_plan_detail(db, user_id, plan_id):
    plan = _owned_plan(db, user_id, plan_id)
    categories = [(category, _items(db, category.id)) for category in _categories(db, plan.id)]
    return PlanSnapshot(
        plan=plan,
        spent_cents=budget.spent_amount(db, plan.id),
        categories=categories,
        notes=_notes(db, plan.id),
    )


def list_categories(db, user_id, plan_id):
    plan = _owned_plan(db, user_id, plan_id)
    return [(category, _items(db, category.id)) for category in _categories(db, plan.id)]


# categories


def create_category(db, user_id, plan_id, title, category_type):
    title = _text(title, "category title", CATEGORY_TITLE_MAX)
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        category = ExpenseCategory(
            plan_id=plan.id,
            title=title,
            category_type=_enum(CategoryType, category_type, "category type"),
            sort_order=_next_position(db, ExpenseCategory, ExpenseCategory.plan_id, plan.id),
        )
        db.add(category)
    return category


def update_category(db, user_id, category_id, title, category_type):
    title = _text(title, "category title", CATEGORY_TITLE_MAX)
    with transaction(db):
        category = _owned_category(db, user_id, category_id)
        category.title = title
        category.category_type = _enum(CategoryType, category_type, "category type")
    return category


def delete_category(db, user_id, category_id):
    """Delete a category with its items; returns the owning plan id."""
    with transaction(db):
        category = _owned_category(db, user_id, category_id)
        plan_id = category.plan_id
        budget.lock_plan(db, user_id, plan_id)
        db.delete(category)
    return plan_id


def reorder_plan_categories(db, user_id, plan_id, ordered_ids):
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        reorder.apply_order(db, ExpenseCategory, ExpenseCategory.plan_id, plan.id, ordered_ids)


def reorder_categories(db, user_id, anchor_category_id, ordered_ids):
    with transaction(db):
        anchor = _owned_category(db, user_id, anchor_category_id)
        budget.lock_plan(db, user_id, anchor.plan_id)
        reorder.apply_order(
            db, ExpenseCategory, ExpenseCategory.plan_id, anchor.plan_id, ordered_ids
        )


# items


def get_item_plan_id(db, user_id, item_id):
    _, plan_id = _owned_item(db, user_id, item_id)
    return plan_id


def create_item(
    db, user_id, plan_id, category_id, title, amount_cents, priority_color, is_completed=False
):
    title = _text(title, "item title", ITEM_TITLE_MAX)
    _check_amount(amount_cents)
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        category = (
            db.query(ExpenseCategory)
            .filter(ExpenseCategory.id == category_id, ExpenseCategory.plan_id == plan.id)
            .first()
        )
        if category is None:
            raise NotFoundError("category not found")
        budget.ensure_within_budget(db, plan, amount_cents)
        item = ExpenseItem(
            category_id=category.id,
            title=title,
            amount_cents=amount_cents,
            priority_color=_enum(PriorityColor, priority_color, "priority"),
            is_completed=bool(is_completed),
            sort_order=_next_position(db, ExpenseItem, ExpenseItem.category_id, category.id),
        )
        db.add(item)
    return item


def update_item(db, user_id, item_id, title, amount_cents, priority_color):
    title = _text(title, "item title", ITEM_TITLE_MAX)
    _check_amount(amount_cents)
    with transaction(db):
        item, plan_id = _owned_item(db, user_id, item_id)
        plan = budget.lock_plan(db, user_id, plan_id)
        # old amount must be read under the lock
        db.refresh(item)
        budget.ensure_within_budget(db, plan, amount_cents, old_amount=item.amount_cents)
        item.title = title
        item.amount_cents = amount_cents
        item.priority_color = _enum(PriorityColor, priority_color, "priority")
    return item


def delete_item(db, user_id, item_id):
    """Delete an item; returns the owning plan id."""
    with transaction(db):
        item, plan_id = _owned_item(db, user_id, item_id)
        budget.lock_plan(db, user_id, plan_id)
        db.delete(item)
    return plan_id


def toggle_item(db, user_id, item_id, is_completed: Optional[bool] = None):
    """Set the completed flag, or flip it when no value is given."""
    with transaction(db):
        item, plan_id = _owned_item(db, user_id, item_id)
        budget.lock_plan(db, user_id, plan_id)
        db.refresh(item)
        item.is_completed = (not item.is_completed) if is_completed is None else is_completed
    return item


def update_item_color(db, user_id, item_id, priority_color):
    with transaction(db):
        item, _ = _owned_item(db, user_id, item_id)
        item.priority_color = _enum(PriorityColor, priority_color, "priority")
    return item


def reorder_items(db, user_id, anchor_item_id, ordered_ids):
    with transaction(db):
        anchor, plan_id = _owned_item(db, user_id, anchor_item_id)
        budget.lock_plan(db, user_id, plan_id)
        reorder.apply_order(
            db, ExpenseItem, ExpenseItem.category_id, anchor.category_id, ordered_ids
        )


# notes


def list_notes(db, user_id, plan_id, note_type=None):
    plan = _owned_plan(db, user_id, plan_id)
    return _notes(db, plan.id, note_type)


def create_note(db, user_id, plan_id, content, note_type=NoteType.USER):
    content = _text(content, "content")
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        note = Note(
            plan_id=plan.id,
            content=content,
            note_type=_enum(NoteType, note_type, "note type"),
            sort_order=_next_position(db, Note, Note.plan_id, plan.id),
        )
        db.add(note)
    return note


def update_note(db, user_id, note_id, content, note_type):
    content = _text(content, "content")
    with transaction(db):
        note = _owned_note(db, user_id, note_id)
        note.content = content
        note.note_type = _enum(NoteType, note_type, "note type")
    return note


def delete_note(db, user_id, note_id):
    with transaction(db):
        note = _owned_note(db, user_id, note_id)
        db.delete(note)


def delete_notes_by_type(db, user_id, plan_id, note_type):
    """Remove every note of one type from a plan; returns how many went."""
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        deleted = (
            db.query(Note)
            .filter(Note.plan_id == plan.id, Note.note_type == _enum(NoteType, note_type, "note type"))
            .delete(synchronize_session=False)
        )
    db.expire_all()
    return deleted


def replace_notes(db, user_id, plan_id, note_type, drafts):
    """Swap every note of ``note_type`` for ``drafts`` in one transaction.

    New notes go after the notes that remain, in the order given.
    """
    note_type = _enum(NoteType, note_type, "note type")
    drafts = [
        (_text(draft.content, "content"), _enum(NoteType, draft.note_type, "note type"))
        for draft in drafts
    ]
    with transaction(db):
        plan = budget.lock_plan(db, user_id, plan_id)
        db.query(Note).filter(
            Note.plan_id == plan.id, Note.note_type == note_type
        ).delete(synchronize_session=False)
        position = _next_position(db, Note, Note.plan_id, plan.id)
        notes = [
            Note(plan_id=plan.id, content=content, note_type=kind, sort_order=position + offset)
            for offset, (content, kind) in enumerate(drafts)
        ]
        db.add_all(notes)
    db.expire_all()
    return notes


def reorder_notes(db, user_id, anchor_note_id, ordered_ids):
    with transaction(db):
        anchor = _owned_note(db, user_id, anchor_note_id)
        budget.lock_plan(db, user_id, anchor.plan_id)
        reorder.apply_order(db, Note, Note.plan_id, anchor.plan_id, ordered_ids)
