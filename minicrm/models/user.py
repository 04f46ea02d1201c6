# user.py
from minicrm.billing.utils import utcnow
from minicrm.extensions import db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    role = db.Column(db.String(20), nullable=False, default="user")

    # Mirror of the active subscription's plan, read by entitlement checks
    plan = db.Column(db.String(20), nullable=False, default="free")

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "plan": self.plan,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email}>"
