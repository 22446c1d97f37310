from sqlalchemy import create_engine, func, select, text
from sqlalchemy.exc import SQLAlchemyError

from table_billing.config import settings
from table_billing.models import VenueTable


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            table_count = conn.execute(select(func.count()).select_from(VenueTable)).scalar_one()
        print(f"DB connection OK ({table_count} venue tables)")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
