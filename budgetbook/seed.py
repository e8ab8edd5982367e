from __future__ import annotations

from sqlalchemy.orm import Session

from .core.database import SessionLocal
from .models import Category, CategoryType


TRANSFER_CATEGORY_NAME = "Transfer"

# (name, type, children)
SYSTEM_CATEGORIES: list[tuple[str, CategoryType, tuple[str, ...]]] = [
    ("Salary", CategoryType.INCOME, ()),
    ("Freelance", CategoryType.INCOME, ()),
    ("Investment Income", CategoryType.INCOME, ("Dividends", "Interest")),
    ("Other Income", CategoryType.INCOME, ()),
    ("Housing", CategoryType.EXPENSE, ("Rent", "Maintenance")),
    ("Food & Dining", CategoryType.EXPENSE, ("Groceries", "Restaurants")),
    ("Transportation", CategoryType.EXPENSE, ("Fuel", "Public Transit")),
    ("Bills & Utilities", CategoryType.EXPENSE, ("Electricity", "Internet", "Phone")),
    ("Healthcare", CategoryType.EXPENSE, ()),
    ("Entertainment", CategoryType.EXPENSE, ()),
    ("Shopping", CategoryType.EXPENSE, ()),
    ("Savings", CategoryType.EXPENSE, ()),
    ("Other Expenses", CategoryType.EXPENSE, ()),
    (TRANSFER_CATEGORY_NAME, CategoryType.TRANSFER, ()),
]


def _get_or_create_system(
    db: Session,
    name: str,
    type_: CategoryType,
    parent_id: int | None = None,
    sort_order: int | None = None,
) -> Category:
    row = (
        db.query(Category)
        .filter(
            Category.user_id.is_(None),
            Category.name == name,
            Category.type == type_,
        )
        .first()
    )
    if row:
        return row
    row = Category(user_id=None, name=name, type=type_, parent_id=parent_id, sort_order=sort_order)
    db.add(row)
    db.flush()
    return row


def ensure_system_categories(db: Session) -> list[Category]:
    """Create the shared categories if missing. Idempotent by (name, type).

    Flushes only; the caller owns the commit.
    """
    rows: list[Category] = []
    for position, (name, type_, children) in enumerate(SYSTEM_CATEGORIES):
        parent = _get_or_create_system(db, name, type_, sort_order=position)
        rows.append(parent)
        for child_position, child in enumerate(children):
            rows.append(_get_or_create_system(db, child, type_, parent_id=parent.id, sort_order=child_position))
    return rows


def get_transfer_category(db: Session) -> Category:
    return _get_or_create_system(db, TRANSFER_CATEGORY_NAME, CategoryType.TRANSFER)


def get_system_category(db: Session, name: str, type_: CategoryType) -> Category:
    return _get_or_create_system(db, name, type_)


def seed() -> None:
    db: Session = SessionLocal()
    try:
        ensure_system_categories(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed()
