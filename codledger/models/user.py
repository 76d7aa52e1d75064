"""Operator accounts.

Back-office users who review dead letters, resolve task conflicts and
settle COD. Only ``is_admin`` operators pass ``operator_required``;
scripts authenticate with the Bearer API key instead.
"""

import uuid

from flask_login import UserMixin

from codledger.extensions import db
from codledger.utils import isoformat


class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    last_login_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_admin": bool(self.is_admin),
            "last_login_at": isoformat(self.last_login_at),
        }

    def __repr__(self):
        return f"<Operator {self.email}>"
