# reorder.py
from sqlalchemy import case, func, update

from errors import InvalidInputError


def apply_order(db, model, parent_column, parent_id, ordered_ids):
    """Rewrite ``sort_order`` of every child of one parent to its index in ``ordered_ids``.

    The caller resolves and authorises the parent and locks the owning plan.
    The list must name each live child of the parent exactly once. Everything
    runs in the caller's transaction, so a failure here leaves old positions
    in place once the caller rolls back.
    """
    if not ordered_ids:
        raise InvalidInputError("ordered ids must not be empty")
    if len(set(ordered_ids)) != len(ordered_ids):
        raise InvalidInputError("ordered ids contain duplicates")

    matched = (
        db.query(func.count(model.id))
        .filter(model.id.in_(ordered_ids), parent_column == parent_id)
        .scalar()
    )
    if matched != len(ordered_ids):
        raise InvalidInputError("ordered ids do not belong to the collection")

    live = db.query(func.count(model.id)).filter(parent_column == parent_id).scalar()
    if live != len(ordered_ids):
        raise InvalidInputError("ordered ids must list every item of the collection")

    positions = case(
        *[(model.id == child_id, pos) for pos, child_id in enumerate(ordered_ids)],
        else_=model.sort_order,
    )
    result = db.execute(
        update(model)
        .where(model.id.in_(ordered_ids), parent_column == parent_id)
        .values(sort_order=positions)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(ordered_ids):
        raise InvalidInputError("collection changed during reorder")
    # bulk update bypassed the identity map
    db.expire_all()
