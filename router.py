import csv
from datetime import date
from io import StringIO
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

import ledger
from auth import get_current_user_id
from config import get_settings
from database import NoteType, get_db
from errors import InvalidInputError
from hub import ChannelClosed, NotificationHub, budget_updated, connected, stamp
from schemas import (
    CategoryCreate,
    CategoryDetail,
    CategoryOut,
    ItemColor,
    ItemCreate,
    ItemOut,
    ItemToggle,
    ItemUpdate,
    NoteCreate,
    NoteOut,
    NoteUpdate,
    PlanCreate,
    PlanDetail,
    PlanSummary,
    PlanUpdate,
    ReorderRequest,
)

router = APIRouter()


def get_hub(request: Request) -> NotificationHub:
    return request.app.state.hub


def publish_budget_update(hub, db, user_id, plan_id):
    plan = ledger.get_plan(db, user_id, plan_id)
    spent = ledger.get_spent(db, plan.id)
    hub.publish(user_id, budget_updated(plan.id, spent, plan.budget_cents - spent))


def _detail(db, user_id, plan_id):
    return PlanDetail.from_snapshot(ledger.get_plan_detail(db, user_id, plan_id))


# plans


@router.get("/plans", response_model=List[PlanSummary])
def list_plans(
    db: Session = Depends(get_db), user_id: UUID = Depends(get_current_user_id)
):
    return [
        PlanSummary.from_plan(plan, spent)
        for plan, spent in ledger.list_active_plans(db, user_id, date.today())
    ]


@router.get("/plans/archive", response_model=List[PlanSummary])
def list_archived_plans(
    db: Session = Depends(get_db), user_id: UUID = Depends(get_current_user_id)
):
    return [
        PlanSummary.from_plan(plan, spent)
        for plan, spent in ledger.list_archived_plans(db, user_id, date.today())
    ]


@router.post("/plans", response_model=PlanDetail, status_code=status.HTTP_201_CREATED)
def create_plan(
    body: PlanCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    plan = ledger.create_plan(
        db,
        user_id,
        body.title,
        body.budget_cents,
        body.period_start,
        body.period_end,
        body.background_color,
        body.is_ai_generated,
    )
    publish_budget_update(hub, db, user_id, plan.id)
    return _detail(db, user_id, plan.id)


@router.get("/plans/{plan_id}", response_model=PlanDetail)
def get_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return _detail(db, user_id, plan_id)


@router.put("/plans/{plan_id}", response_model=PlanSummary)
def update_plan(
    plan_id: UUID,
    body: PlanUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    plan = ledger.update_plan(
        db,
        user_id,
        plan_id,
        body.title,
        body.budget_cents,
        body.period_start,
        body.period_end,
        body.background_color,
        body.is_ai_generated,
    )
    publish_budget_update(hub, db, user_id, plan.id)
    return PlanSummary.from_plan(plan, ledger.get_spent(db, plan.id))


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    ledger.delete_plan(db, user_id, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/plans/{plan_id}/duplicate",
    response_model=PlanDetail,
    status_code=status.HTTP_201_CREATED,
)
def duplicate_plan(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    copy = ledger.duplicate_plan(db, user_id, plan_id)
    publish_budget_update(hub, db, user_id, copy.id)
    return _detail(db, user_id, copy.id)


@router.patch("/plans/{plan_id}/reorder", response_model=List[CategoryDetail])
def reorder_plan_categories(
    plan_id: UUID,
    body: ReorderRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    ledger.reorder_plan_categories(db, user_id, plan_id, body.ordered_ids)
    return _detail(db, user_id, plan_id).categories


# exports


@router.get("/plans/{plan_id}/export/json")
def export_plan_json(
    plan_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    detail = _detail(db, user_id, plan_id)
    return JSONResponse(
        content=detail.model_dump(mode="json"),
        headers={"Content-Disposition": f"attachment; filename=plan_{plan_id}.json"},
    )


ITEM_COLUMNS = [
    "plan_id",
    "plan_title",
    "category_id",
    "category_title",
    "category_type",
    "item_id",
    "item_title",
    "amount_cents",
    "priority_color",
    "is_completed",
    "sort_order",
]
NOTE_COLUMNS = [
    "plan_id",
    "plan_title",
    "note_id",
    "content",
    "note_type",
    "sort_order",
    "created_at",
    "updated_at",
]


@router.get("/plans/{plan_id}/export/csv")
def export_plan_csv(
    plan_id: UUID,
    type: str = "items",
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    """Plan as CSV: one row per item (``type=items``) or per note (``type=notes``)."""
    if type not in ("items", "notes"):
        raise InvalidInputError("type must be items or notes")

    snapshot = ledger.get_plan_detail(db, user_id, plan_id)
    plan = snapshot.plan

    csv_data = StringIO()
    writer = csv.writer(csv_data)
    if type == "items":
        writer.writerow(ITEM_COLUMNS)
        for category, items in snapshot.categories:
            for item in items:
                writer.writerow(
                    [
                        plan.id,
                        plan.title,
                        category.id,
                        category.title,
                        category.category_type.value,
                        item.id,
                        item.title,
                        item.amount_cents,
                        item.priority_color.value,
                        str(item.is_completed).lower(),
                        item.sort_order,
                    ]
                )
    else:
        writer.writerow(NOTE_COLUMNS)
        for note in snapshot.notes:
            writer.writerow(
                [
                    plan.id,
                    plan.title,
                    note.id,
                    note.content,
                    note.note_type.value,
                    note.sort_order,
                    note.created_at.isoformat(),
                    note.updated_at.isoformat(),
                ]
            )

    return StreamingResponse(
        iter([csv_data.getvalue()]),
        media_type="text/csv",
        headers={
            "Content-Disposition": f"attachment; filename=plan_{plan_id}_{type}.csv"
        },
    )


# categories


@router.post(
    "/plans/{plan_id}/categories",
    response_model=CategoryOut,
    status_code=status.HTTP_201_CREATED,
)
def create_category(
    plan_id: UUID,
    body: CategoryCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return ledger.create_category(db, user_id, plan_id, body.title, body.category_type)


@router.put("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: UUID,
    body: CategoryCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return ledger.update_category(db, user_id, category_id, body.title, body.category_type)


@router.delete("/categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_category(
    category_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    plan_id = ledger.delete_category(db, user_id, category_id)
    publish_budget_update(hub, db, user_id, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/categories/{category_id}/reorder", status_code=status.HTTP_204_NO_CONTENT)
def reorder_categories(
    category_id: UUID,
    body: ReorderRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    ledger.reorder_categories(db, user_id, category_id, body.ordered_ids)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# items


@router.post(
    "/plans/{plan_id}/categories/{category_id}/items",
    response_model=ItemOut,
    status_code=status.HTTP_201_CREATED,
)
def create_item(
    plan_id: UUID,
    category_id: UUID,
    body: ItemCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    item = ledger.create_item(
        db,
        user_id,
        plan_id,
        category_id,
        body.title,
        body.amount_cents,
        body.priority_color,
        bool(body.is_completed),
    )
    publish_budget_update(hub, db, user_id, plan_id)
    return item


@router.put("/items/{item_id}", response_model=ItemOut)
def update_item(
    item_id: UUID,
    body: ItemUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    item = ledger.update_item(
        db, user_id, item_id, body.title, body.amount_cents, body.priority_color
    )
    publish_budget_update(hub, db, user_id, ledger.get_item_plan_id(db, user_id, item.id))
    return item


@router.delete("/items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_item(
    item_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    plan_id = ledger.delete_item(db, user_id, item_id)
    publish_budget_update(hub, db, user_id, plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/items/{item_id}/toggle", response_model=ItemOut)
def toggle_item(
    item_id: UUID,
    body: Optional[ItemToggle] = None,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    item = ledger.toggle_item(db, user_id, item_id, body.is_completed if body else None)
    publish_budget_update(hub, db, user_id, ledger.get_item_plan_id(db, user_id, item.id))
    return item


@router.patch("/items/{item_id}/color", response_model=ItemOut)
def update_item_color(
    item_id: UUID,
    body: ItemColor,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return ledger.update_item_color(db, user_id, item_id, body.priority_color)


@router.patch("/items/{item_id}/reorder", status_code=status.HTTP_204_NO_CONTENT)
def reorder_items(
    item_id: UUID,
    body: ReorderRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    ledger.reorder_items(db, user_id, item_id, body.ordered_ids)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# notes


@router.get("/plans/{plan_id}/notes", response_model=List[NoteOut])
def list_notes(
    plan_id: UUID,
    type: Optional[NoteType] = None,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return ledger.list_notes(db, user_id, plan_id, type)


@router.post(
    "/plans/{plan_id}/notes",
    response_model=NoteOut,
    status_code=status.HTTP_201_CREATED,
)
def create_note(
    plan_id: UUID,
    body: NoteCreate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return ledger.create_note(db, user_id, plan_id, body.content, body.note_type)


@router.put("/notes/{note_id}", response_model=NoteOut)
def update_note(
    note_id: UUID,
    body: NoteUpdate,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    return ledger.update_note(db, user_id, note_id, body.content, body.note_type)


@router.delete("/notes/{note_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_note(
    note_id: UUID,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    ledger.delete_note(db, user_id, note_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.patch("/notes/{note_id}/reorder", status_code=status.HTTP_204_NO_CONTENT)
def reorder_notes(
    note_id: UUID,
    body: ReorderRequest,
    db: Session = Depends(get_db),
    user_id: UUID = Depends(get_current_user_id),
):
    ledger.reorder_notes(db, user_id, note_id, body.ordered_ids)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# notifications


async def event_stream(user_id, channel, unsubscribe, keepalive, is_disconnected):
    """Render hub events as text/event-stream records until the client leaves."""
    try:
        yield stamp(connected(user_id)).to_sse()
        while not await is_disconnected():
            try:
                event = await channel.receive(keepalive)
            except ChannelClosed:
                break
            if event is None:
                yield ": keep-alive\n\n"
            else:
                yield event.to_sse()
    finally:
        unsubscribe()


@router.get("/notifications/stream")
async def stream_notifications(
    request: Request,
    user_id: UUID = Depends(get_current_user_id),
    hub: NotificationHub = Depends(get_hub),
):
    channel, unsubscribe = hub.subscribe(user_id)
    return StreamingResponse(
        event_stream(
            user_id,
            channel,
            unsubscribe,
            get_settings().stream_keepalive_seconds,
            request.is_disconnected,
        ),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
