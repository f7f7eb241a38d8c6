from datetime import date

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models import NumberSequence


def _bump(db: Session, series: str, year: int) -> int:
    return db.query(NumberSequence).filter(
        NumberSequence.sequence_name == series,
        NumberSequence.year == year
    ).update(
        {NumberSequence.current_number: NumberSequence.current_number + 1},
        synchronize_session=False
    )


def next_document_number(db: Session, series: str, prefix: str, document_date: date) -> str:
    """
    Next number of a yearly document series, e.g. ``ORD/2025/000042``.

    Each (series, year) pair has its own counter row, so a back-dated
    document is numbered in its own year. The row is incremented before it
    is read and stays write-locked until the caller's transaction ends. The
    prefix is stored when the row is created and used from then on.
    """
    year = document_date.year

    if not _bump(db, series, year):
        try:
            with db.begin_nested():
                db.add(NumberSequence(
                    sequence_name=series,
                    prefix=prefix,
                    year=year,
                    current_number=1,
                    padding=6,
                ))
        except IntegrityError:
            # Opened concurrently by another transaction
            _bump(db, series, year)

    seq = db.query(NumberSequence).filter(
        NumberSequence.sequence_name == series,
        NumberSequence.year == year
    ).populate_existing().one()
    return f"{seq.prefix}/{seq.year}/{str(seq.current_number).zfill(seq.padding)}"
