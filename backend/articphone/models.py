from articphone import db, bcrypt
from flask_login import UserMixin
import secrets
import time
import uuid


class Identity(UserMixin, db.Model):
    """Anonymous player identity.

    The ``uid`` is the stable player id used in every room; the token lets a
    client log back in as the same player after losing its session cookie.
    """
    __tablename__ = 'identity'
    id = db.Column(db.Integer, primary_key=True)
    uid = db.Column(db.String(64), unique=True, nullable=False, index=True)
    token_hash = db.Column(db.String(128), nullable=False)
    created_at = db.Column(db.Float, nullable=False, default=time.time)

    @classmethod
    def issue(cls):
        """Create an identity and return it with its plain-text token."""
        token = secrets.token_urlsafe(24)
        identity = cls(uid=uuid.uuid4().hex)
        identity.set_token(token)
        return identity, token

    def set_token(self, token):
        self.token_hash = bcrypt.generate_password_hash(token).decode('utf-8')

    def check_token(self, token):
        return bcrypt.check_password_hash(self.token_hash, token)

    def to_dict(self):
        return {
            'uid': self.uid,
            'created_at': self.created_at,
        }


class StateEntry(db.Model):
    """One written path of the shared state tree, value JSON-encoded."""
    __tablename__ = 'state_entry'
    path = db.Column(db.String(255), primary_key=True)
    value = db.Column(db.Text, nullable=False)
