# Overview: Gap-free reference numbers per transaction kind.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import DocumentSequence
from ..models.transactions import (
    KIND_PURCHASE,
    KIND_RETURN_OF_PURCHASE,
    KIND_RETURN_OF_SALE,
    KIND_SALE,
)


DOCUMENT_PREFIXES = {
    KIND_SALE: "SI",
    KIND_PURCHASE: "PI",
    KIND_RETURN_OF_SALE: "SR",
    KIND_RETURN_OF_PURCHASE: "PR",
}


def _bump(document_type: str) -> int | None:
    stmt = (
        update(DocumentSequence)
        .where(DocumentSequence.document_type == document_type)
        .values(next_number=DocumentSequence.next_number + 1)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(DocumentSequence.next_number)
        .filter_by(document_type=document_type)
        .scalar()
    )
    return current - 1


def next_document_number(uow, *, kind: str, pad: int = 6) -> str:
    """
    Allocate the next reference number for a transaction kind ("SI-000001").

    Runs inside the caller's unit of work: the increment commits or rolls
    back with the document it numbers, so numbers never skip. The UPDATE
    takes the row lock; a lost race creating the first row is absorbed by a
    savepoint and the UPDATE is retried.
    """
    uow.require_active()
    prefix = DOCUMENT_PREFIXES[kind]

    next_num = _bump(prefix)
    if next_num is None:
        try:
            with db.session.begin_nested():
                db.session.add(DocumentSequence(document_type=prefix, next_number=2))
            next_num = 1
        except IntegrityError:
            next_num = _bump(prefix)
            if next_num is None:
                raise

    return f"{prefix}-{next_num:0{pad}d}"
