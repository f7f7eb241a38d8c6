
"""One-time bootstrap script for the master data the ledger references.

Creates the four item categories, a starter item list, and optionally a
customer, a supplier and a transporter. Existing rows (matched by name) are
left alone, so the script can be re-run.

Usage:
  python scripts/seed_masters.py
  python scripts/seed_masters.py --customer "Shree Castings" --customer-state Gujarat
Or provide the database via env: DATABASE_URL
"""
import argparse
from decimal import Decimal

from steelmelt_core.app.config import Settings
from steelmelt_core.app.db import Database
from steelmelt_core.app import models

STARTER_ITEMS = [
    ("MS Scrap", models.CategoryName.RAW_MATERIAL, Decimal("18")),
    ("CARBON", models.CategoryName.MINERALS, Decimal("18")),
    ("MANGANESE", models.CategoryName.MINERALS, Decimal("18")),
    ("SILICON", models.CategoryName.MINERALS, Decimal("18")),
    ("ALUMINIUM", models.CategoryName.MINERALS, Decimal("18")),
    ("CALCIUM", models.CategoryName.MINERALS, Decimal("18")),
    ("Liquid Metal", models.CategoryName.WIP, Decimal("18")),
    ("Steel Shot S-170", models.CategoryName.FINISHED_PRODUCT, Decimal("18")),
    ("Steel Shot S-230", models.CategoryName.FINISHED_PRODUCT, Decimal("18")),
    ("Steel Grit G-25", models.CategoryName.FINISHED_PRODUCT, Decimal("18")),
]


def get_or_create(db, model, defaults=None, **lookup):
    row = db.query(model).filter_by(**lookup).first()
    if row:
        return row, False
    row = model(**lookup, **(defaults or {}))
    db.add(row)
    db.flush()
    return row, True


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument('--customer')
    parser.add_argument('--customer-state')
    parser.add_argument('--supplier')
    parser.add_argument('--supplier-state')
    parser.add_argument('--transporter')
    args = parser.parse_args()

    settings = Settings.from_env()
    database = Database(settings.DATABASE_URL)
    database.create_all()
    db = database.session()
    try:
        categories = {}
        for name in models.CategoryName:
            categories[name], created = get_or_create(db, models.Category, name=name.value)
            if created:
                print('Created category:', name.value)

        for item_name, category, gst_rate in STARTER_ITEMS:
            _, created = get_or_create(
                db, models.Item,
                defaults={'uom': 'KG', 'gst_rate': gst_rate},
                name=item_name, category_id=categories[category].id,
            )
            if created:
                print('Created item:', item_name)

        if args.customer:
            get_or_create(db, models.Customer, defaults={'state': args.customer_state or settings.COMPANY_STATE}, name=args.customer)
            print('Customer ready:', args.customer)
        if args.supplier:
            get_or_create(db, models.Supplier, defaults={'state': args.supplier_state or settings.COMPANY_STATE}, name=args.supplier)
            print('Supplier ready:', args.supplier)
        if args.transporter:
            get_or_create(db, models.Transporter, name=args.transporter)
            print('Transporter ready:', args.transporter)

        db.commit()
        wip = db.query(models.Item).filter(models.Item.name == 'Liquid Metal').first()
        print(f'WIP item id: {wip.id} (set WIP_ITEM_ID to enable WIP movements)')
    finally:
        db.close()
        database.dispose()


if __name__ == '__main__':
    main()
