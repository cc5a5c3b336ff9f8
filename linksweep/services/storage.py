from __future__ import annotations

from collections.abc import Iterable, Mapping

from linksweep.extensions import db
from linksweep.models import StoredValue


class SnapshotStorage:
    """Key/value storage over the ``stored_values`` table."""

    def get(self, keys: Iterable[str]) -> dict:
        keys = list(keys)
        if not keys:
            return {}
        rows = StoredValue.query.filter(StoredValue.key.in_(keys)).all()
        return {row.key: row.value for row in rows}

    def set(self, values: Mapping) -> None:
        try:
            for key, value in values.items():
                row = db.session.get(StoredValue, key)
                if row is None:
                    row = StoredValue(key=key)
                    db.session.add(row)
                row.value = value
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
