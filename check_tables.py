from sqlalchemy import inspect

from steelmelt_core.app.config import Settings
from steelmelt_core.app.db import Database

database = Database(Settings.from_env().DATABASE_URL)
tables = sorted(inspect(database.engine).get_table_names())
print("Database Tables:")
for t in tables:
    print(f"  - {t}")
print(f"\nTotal: {len(tables)} tables")
database.dispose()
