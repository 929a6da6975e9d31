"""
Human-facing document numbers (RES-2025-000001, CTR-2025-000001).

Sequential per prefix and year. Each pair has a counter row that is read
FOR UPDATE, so concurrent transactions queue on it instead of racing to the
same number. The unique column constraint is the final guard.
"""
import re
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.models import DocumentSequence
from .time_rules import utcnow


def next_number(db: Session, column, prefix: str, year: Optional[int] = None, width: int = 6) -> str:
    """
    Reserve the next number for this prefix and year.

    `column` is the document's number column; it seeds a missing counter from
    numbers issued before the counter existed.
    """
    year = year or utcnow().year
    stem = f"{prefix}-{year}-"
    sequence = _locked_sequence(db, column, prefix, year, stem)
    sequence.last_value += 1
    db.flush()
    return f"{stem}{sequence.last_value:0{width}d}"


def _locked_sequence(db: Session, column, prefix: str, year: int, stem: str) -> DocumentSequence:
    sequence = _select_for_update(db, prefix, year)
    if sequence is not None:
        return sequence

    try:
        with db.begin_nested():
            db.add(DocumentSequence(prefix=prefix, year=year, last_value=_highest_issued(db, column, stem)))
    except IntegrityError:
        # Another transaction created the counter first; queue on its row
        pass
    return _select_for_update(db, prefix, year)


def _select_for_update(db: Session, prefix: str, year: int) -> Optional[DocumentSequence]:
    return (
        db.query(DocumentSequence)
        .filter(DocumentSequence.prefix == prefix, DocumentSequence.year == year)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _highest_issued(db: Session, column, stem: str) -> int:
    # Numeric max, so numbers wider than the padding still sort correctly
    pattern = re.compile(re.escape(stem) + r"(\d+)$")
    highest = 0
    for (value,) in db.query(column).filter(column.like(f"{stem}%")):
        match = pattern.match(value or "")
        if match:
            highest = max(highest, int(match.group(1)))
    return highest
