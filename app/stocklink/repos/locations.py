from sqlalchemy import select

from app.stocklink.db.models import Location


class LocationRepository:
    def __init__(self, db):
        self.db = db

    def get_by_id(self, location_id) -> Location | None:
        return self.db.execute(select(Location).where(Location.id == location_id)).scalars().first()

    def names_by_id(self, location_ids) -> dict[str, str]:
        ids = sorted({str(location_id) for location_id in location_ids if location_id})
        if not ids:
            return {}
        rows = self.db.execute(select(Location.id, Location.name).where(Location.id.in_(ids))).all()
        return {str(row.id): row.name for row in rows}
