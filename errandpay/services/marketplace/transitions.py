"""Guarded status writes shared by the trip, request and payment services.

A transition is one UPDATE whose WHERE clause repeats the status (and
optionally the version) the caller read. Zero matched rows means another
writer got there first; the caller decides whether that is a conflict or a
business outcome.
"""

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from errandpay.common.events import utcnow
from errandpay.common.outbox import enqueue_status_change
from errandpay.services.marketplace.models import OutboxEvent


ENTITY_TYPES = {"trips": "trip", "delivery_requests": "delivery_request", "payments": "payment"}


def guarded_transition(db, model, row, new_status: str, check_version: bool = True, where=(), **values) -> bool:
    """Move `row` to `new_status` only if it is still in the status we read.

    `where` adds conditions the row must also still satisfy.

    On success the in-session object is refreshed without being marked dirty,
    and a status-change event is queued in the same transaction.
    """

    from_status = row.status
    current_version = row.state_version
    criteria = [model.id == row.id, model.status == from_status, *where]
    if check_version:
        criteria.append(model.state_version == current_version)

    now = utcnow()
    result = db.execute(
        update(model)
        .where(*criteria)
        .values(status=_plain(new_status), state_version=model.state_version + 1, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    set_committed_value(row, "status", _plain(new_status))
    if check_version:
        set_committed_value(row, "state_version", current_version + 1)
    else:
        version = db.execute(select(model.state_version).where(model.id == row.id)).scalar_one()
        set_committed_value(row, "state_version", version)
    set_committed_value(row, "updated_at", now)
    for key, value in values.items():
        set_committed_value(row, key, value)
    enqueue_status_change(db, OutboxEvent, ENTITY_TYPES[model.__tablename__], row.id, from_status, new_status)
    return True


def _plain(status) -> str:
    return getattr(status, "value", status)
