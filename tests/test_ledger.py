import uuid
from datetime import date

import pytest

import ledger
from database import (
    BudgetPlan,
    CategoryType,
    ExpenseCategory,
    ExpenseItem,
    Note,
    NoteType,
    PriorityColor,
)
from errors import BudgetExceededError, ConflictError, InvalidInputError, NotFoundError

START, END = date(2024, 11, 1), date(2024, 11, 30)


def _count(db, model):
    db.expire_all()
    return db.query(model).count()


class TestCreatePlan:
    def test_bootstraps_default_categories(self, db, owner):
        plan = ledger.create_plan(db, owner.id, "November", 500000, START, END)

        categories = [c for c, _ in ledger.list_categories(db, owner.id, plan.id)]
        assert [c.title for c in categories] == [title for title, _ in ledger.DEFAULT_CATEGORIES]
        assert [c.sort_order for c in categories] == list(range(6))
        assert [c.category_type for c in categories].count(CategoryType.MANDATORY) == 4
        assert plan.background_color == "#FDF7F7"
        assert plan.is_ai_generated is True

    @pytest.mark.parametrize(
        "budget_cents, start, end",
        [(0, START, END), (-5, START, END), (1000, END, START)],
    )
    def test_rejects_bad_ceiling_or_period(self, db, owner, budget_cents, start, end):
        with pytest.raises(InvalidInputError):
            ledger.create_plan(db, owner.id, "Bad", budget_cents, start, end)
        assert _count(db, BudgetPlan) == 0

    def test_rejects_blank_title_and_bad_color(self, db, owner):
        with pytest.raises(InvalidInputError):
            ledger.create_plan(db, owner.id, "   ", 1000, START, END)
        with pytest.raises(InvalidInputError):
            ledger.create_plan(db, owner.id, "Plan", 1000, START, END, "red")

    def test_single_day_period_is_allowed(self, db, owner):
        plan = ledger.create_plan(db, owner.id, "Payday", 1000, START, START)
        assert plan.period_start == plan.period_end


class TestCreatePlanWithDetails:
    def _tree(self, amount=1000):
        return [
            ledger.CategoryDraft(
                "Жилье",
                CategoryType.MANDATORY,
                [ledger.ItemDraft("Аренда", amount, PriorityColor.RED)],
            ),
            ledger.CategoryDraft(
                "Досуг",
                CategoryType.OPTIONAL,
                [
                    ledger.ItemDraft("Кино", 200, PriorityColor.GREEN),
                    ledger.ItemDraft("Книги", 300, PriorityColor.YELLOW),
                ],
            ),
        ]

    def test_writes_whole_tree_in_order(self, db, owner):
        plan = ledger.create_plan_with_details(
            db, owner.id, "AI plan", 5000, START, END, None, True,
            self._tree(), [ledger.NoteDraft("Совет")],
        )

        detail = ledger.get_plan_detail(db, owner.id, plan.id)
        assert [c.title for c, _ in detail.categories] == ["Жилье", "Досуг"]
        assert [i.title for i in detail.categories[1][1]] == ["Кино", "Книги"]
        assert [i.sort_order for i in detail.categories[1][1]] == [0, 1]
        assert detail.notes[0].note_type == NoteType.AI

    def test_over_ceiling_writes_nothing(self, db, owner):
        with pytest.raises(BudgetExceededError):
            ledger.create_plan_with_details(
                db, owner.id, "AI plan", 1000, START, END, None, True, self._tree(), []
            )
        assert _count(db, BudgetPlan) == 0
        assert _count(db, ExpenseCategory) == 0

    @pytest.mark.parametrize(
        "categories",
        [
            [],
            [ledger.CategoryDraft(" ", CategoryType.MANDATORY)],
            [
                ledger.CategoryDraft(
                    "Food", CategoryType.MANDATORY, [ledger.ItemDraft("Milk", 0, PriorityColor.RED)]
                )
            ],
            [
                ledger.CategoryDraft(
                    "Food", CategoryType.MANDATORY, [ledger.ItemDraft("", 10, PriorityColor.RED)]
                )
            ],
            [ledger.CategoryDraft("Food", "weekly")],
        ],
    )
    def test_invalid_tree_writes_nothing(self, db, owner, categories):
        with pytest.raises(InvalidInputError):
            ledger.create_plan_with_details(
                db, owner.id, "AI plan", 1000, START, END, None, True, categories, []
            )
        assert _count(db, BudgetPlan) == 0

    def test_blank_note_is_rejected(self, db, owner):
        with pytest.raises(InvalidInputError):
            ledger.create_plan_with_details(
                db, owner.id, "AI plan", 5000, START, END, None, True,
                self._tree(), [ledger.NoteDraft("  ")],
            )


class TestUpdateAndDelete:
    def test_update_keeps_optional_fields_when_omitted(self, db, owner):
        plan = ledger.create_plan(
            db, owner.id, "Plan", 1000, START, END, "#112233", False
        )

        updated = ledger.update_plan(db, owner.id, plan.id, "Renamed", 2000, START, END)

        assert updated.title == "Renamed"
        assert updated.budget_cents == 2000
        assert updated.background_color == "#112233"
        assert updated.is_ai_generated is False

        updated = ledger.update_plan(
            db, owner.id, plan.id, "Renamed", 2000, START, END, "#445566", True
        )
        assert updated.background_color == "#445566"
        assert updated.is_ai_generated is True

    def test_delete_cascades_to_children(self, db, owner, plan):
        category = ledger.list_categories(db, owner.id, plan.id)[0][0]
        ledger.create_item(db, owner.id, plan.id, category.id, "Rent", 100, PriorityColor.RED)
        ledger.create_note(db, owner.id, plan.id, "remember")

        ledger.delete_plan(db, owner.id, plan.id)

        assert _count(db, BudgetPlan) == 0
        assert _count(db, ExpenseCategory) == 0
        assert _count(db, ExpenseItem) == 0
        assert _count(db, Note) == 0

    def test_foreign_plan_is_not_found(self, db, owner, stranger, plan):
        with pytest.raises(NotFoundError):
            ledger.get_plan_detail(db, stranger.id, plan.id)
        with pytest.raises(NotFoundError):
            ledger.delete_plan(db, stranger.id, plan.id)
        with pytest.raises(NotFoundError):
            ledger.update_plan(db, stranger.id, plan.id, "x", 1, START, END)
        with pytest.raises(NotFoundError):
            ledger.get_plan(db, owner.id, uuid.uuid4())


class TestDuplicatePlan:
    def test_deep_copy_with_fresh_ids(self, db, owner):
        plan = ledger.create_plan_with_details(
            db, owner.id, "Source", 5000, START, END, None, False,
            [
                ledger.CategoryDraft(
                    "Home",
                    CategoryType.MANDATORY,
                    [
                        ledger.ItemDraft("Rent", 1000, PriorityColor.RED, True),
                        ledger.ItemDraft("Power", 200, PriorityColor.YELLOW),
                    ],
                ),
                ledger.CategoryDraft(
                    "Fun",
                    CategoryType.OPTIONAL,
                    [ledger.ItemDraft("Cinema", 300, PriorityColor.GREEN)],
                ),
            ],
            [ledger.NoteDraft("Keep receipts", NoteType.USER)],
        )

        copy = ledger.duplicate_plan(db, owner.id, plan.id)

        source = ledger.get_plan_detail(db, owner.id, plan.id)
        dup = ledger.get_plan_detail(db, owner.id, copy.id)
        assert copy.id != plan.id
        assert copy.title == "Copy of Source"
        assert dup.spent_cents == source.spent_cents == 1000

        def shape(detail):
            return (
                [
                    (
                        c.title,
                        c.category_type,
                        c.sort_order,
                        [(i.title, i.amount_cents, i.priority_color, i.is_completed, i.sort_order) for i in items],
                    )
                    for c, items in detail.categories
                ],
                [(n.content, n.note_type, n.sort_order) for n in detail.notes],
            )

        assert shape(dup) == shape(source)

        def ids(detail):
            found = {detail.plan.id}
            for c, items in detail.categories:
                found.add(c.id)
                found.update(i.id for i in items)
            found.update(n.id for n in detail.notes)
            return found

        assert ids(dup).isdisjoint(ids(source))

    def test_title_truncated_by_characters(self, db, owner):
        title = "Ж" * 200
        plan = ledger.create_plan(db, owner.id, title, 1000, START, END)

        copy = ledger.duplicate_plan(db, owner.id, plan.id)

        assert len(copy.title) == 200
        assert copy.title.startswith("Copy of Ж")


class TestListings:
    def test_active_and_archived_partition(self, db, owner):
        today = date(2024, 11, 15)
        old = ledger.create_plan(db, owner.id, "Old", 1000, date(2024, 9, 1), date(2024, 9, 30))
        older = ledger.create_plan(db, owner.id, "Older", 1000, date(2024, 8, 1), date(2024, 8, 31))
        current = ledger.create_plan(db, owner.id, "Now", 1000, date(2024, 11, 1), today)
        newest = ledger.create_plan(db, owner.id, "Next", 1000, date(2024, 12, 1), date(2024, 12, 31))

        category = ledger.list_categories(db, owner.id, current.id)[0][0]
        ledger.create_item(db, owner.id, current.id, category.id, "Rent", 300, PriorityColor.RED, True)

        active = ledger.list_active_plans(db, owner.id, today)
        archived = ledger.list_archived_plans(db, owner.id, today)

        assert [p.id for p, _ in active] == [newest.id, current.id]
        assert dict((p.id, s) for p, s in active)[current.id] == 300
        assert [p.id for p, _ in archived] == [old.id, older.id]

    def test_listing_is_owner_scoped(self, db, owner, stranger, plan):
        assert ledger.list_active_plans(db, stranger.id, date(2024, 11, 1)) == []


class TestItemsAndNotes:
    def test_items_append_within_category(self, db, owner, plan):
        category = ledger.list_categories(db, owner.id, plan.id)[2][0]
        first = ledger.create_item(db, owner.id, plan.id, category.id, "A", 10, PriorityColor.RED)
        second = ledger.create_item(db, owner.id, plan.id, category.id, "B", 10, PriorityColor.RED)
        assert (first.sort_order, second.sort_order) == (0, 1)

    def test_item_in_category_of_other_plan_is_not_found(self, db, owner, plan):
        other = ledger.create_plan(db, owner.id, "Other", 1000, START, END)
        foreign_category = ledger.list_categories(db, owner.id, other.id)[0][0]
        with pytest.raises(NotFoundError):
            ledger.create_item(
                db, owner.id, plan.id, foreign_category.id, "A", 10, PriorityColor.RED
            )

    def test_update_color_only_changes_priority(self, db, owner, plan):
        category = ledger.list_categories(db, owner.id, plan.id)[0][0]
        item = ledger.create_item(db, owner.id, plan.id, category.id, "A", 10, PriorityColor.RED)

        updated = ledger.update_item_color(db, owner.id, item.id, PriorityColor.GREEN)

        assert updated.priority_color == PriorityColor.GREEN
        assert (updated.title, updated.amount_cents) == ("A", 10)
        with pytest.raises(InvalidInputError):
            ledger.update_item_color(db, owner.id, item.id, "purple")

    def test_notes_filter_and_delete_by_type(self, db, owner, plan):
        ledger.create_note(db, owner.id, plan.id, "mine", NoteType.USER)
        ledger.create_note(db, owner.id, plan.id, "advice 1", NoteType.AI)
        ledger.create_note(db, owner.id, plan.id, "advice 2", NoteType.AI)

        assert len(ledger.list_notes(db, owner.id, plan.id, NoteType.AI)) == 2
        assert ledger.delete_notes_by_type(db, owner.id, plan.id, NoteType.AI) == 2
        assert [n.content for n in ledger.list_notes(db, owner.id, plan.id)] == ["mine"]

    def test_update_and_delete_note(self, db, owner, stranger, plan):
        note = ledger.create_note(db, owner.id, plan.id, "draft")
        updated = ledger.update_note(db, owner.id, note.id, "final", NoteType.AI)
        assert (updated.content, updated.note_type) == ("final", NoteType.AI)

        with pytest.raises(NotFoundError):
            ledger.delete_note(db, stranger.id, note.id)
        ledger.delete_note(db, owner.id, note.id)
        assert ledger.list_notes(db, owner.id, plan.id) == []

    def test_category_crud(self, db, owner, plan):
        category = ledger.create_category(db, owner.id, plan.id, "Pets", CategoryType.OPTIONAL)
        assert category.sort_order == 6

        renamed = ledger.update_category(db, owner.id, category.id, "Cat", CategoryType.MANDATORY)
        assert renamed.title == "Cat"

        ledger.create_item(db, owner.id, plan.id, category.id, "Food", 100, PriorityColor.RED)
        assert ledger.delete_category(db, owner.id, category.id) == plan.id
        assert _count(db, ExpenseItem) == 0


def test_duplicate_email_is_conflict(db, owner):
    with pytest.raises(ConflictError):
        ledger.create_user(db, "owner@example.com", "hash")
