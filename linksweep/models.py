from datetime import datetime, timezone

from linksweep.extensions import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookmarkNode(db.Model):
    __tablename__ = "bookmark_nodes"

    id = db.Column(db.Integer, primary_key=True)
    parent_id = db.Column(
        db.Integer, db.ForeignKey("bookmark_nodes.id"), nullable=True, index=True
    )
    title = db.Column(db.String(512), nullable=False, default="")
    url = db.Column(db.Text, nullable=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    root_key = db.Column(db.String(32), nullable=True, unique=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    children = db.relationship(
        "BookmarkNode",
        backref=db.backref("parent", remote_side=[id]),
        order_by="BookmarkNode.position",
    )

    __table_args__ = (db.Index("ix_bookmark_node_parent_position", "parent_id", "position"),)

    @property
    def is_folder(self) -> bool:
        return self.url is None

    def as_dict(self):
        payload = {
            "id": self.id,
            "parent_id": self.parent_id,
            "title": self.title,
            "position": self.position,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        if self.is_folder:
            payload["root_key"] = self.root_key
        else:
            payload["url"] = self.url
        return payload


class StoredValue(db.Model):
    __tablename__ = "stored_values"

    key = db.Column(db.String(120), primary_key=True)
    value = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
