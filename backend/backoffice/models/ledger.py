from __future__ import annotations

from ..extensions import db
from ..time_utils import to_iso_date, to_utc_z


class LedgerEntry(db.Model):
    """
    One side of a double-entry posting.

    INVARIANTS:
    - exactly one of debit / credit is non-zero, neither is negative
    - all entries sharing a batch_id balance: SUM(debit) == SUM(credit)
    - append-only: rows are never updated or deleted (see immutability.py);
      corrections are new reversing batches
    """
    __tablename__ = "ledger_entries"
    __table_args__ = (
        db.Index("ix_ledger_entries_account_date", "account_code", "entry_date"),
        db.Index("ix_ledger_entries_reference", "reference_type", "reference_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.String(36), nullable=False, index=True)

    account_code = db.Column(db.String(32), db.ForeignKey("accounts.code"), nullable=False)
    entry_date = db.Column(db.Date, nullable=False)
    description = db.Column(db.String(500), nullable=False)

    debit = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    credit = db.Column(db.Numeric(14, 2), nullable=False, default=0)

    reference_type = db.Column(db.String(32), nullable=False)
    reference_id = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry id={self.id} account={self.account_code} "
            f"debit={self.debit} credit={self.credit} ref={self.reference_type}:{self.reference_id}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "account_code": self.account_code,
            "date": to_iso_date(self.entry_date),
            "description": self.description,
            "debit": str(self.debit),
            "credit": str(self.credit),
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "created_at": to_utc_z(self.created_at),
        }
