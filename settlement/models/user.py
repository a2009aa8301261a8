from __future__ import annotations

from settlement.models import db
from settlement.utils.money import utcnow


class User(db.Model):
    """Comprador / dueño de cuenta. El login vive fuera de este servicio."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)

    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    name = db.Column(db.String(120), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_admin = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    orders = db.relationship("Order", back_populates="buyer", lazy="select")

    @staticmethod
    def normalize_email(email: str) -> str:
        return (email or "").strip().lower()

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email}>"
