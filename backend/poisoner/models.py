from poisoner import db
from datetime import datetime, timezone
import uuid


def _utcnow():
    return datetime.now(timezone.utc)


def generate_game_id():
    """Generate an opaque ticket number for a new game."""
    return uuid.uuid4().hex


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.String(32), primary_key=True, default=generate_game_id)
    phase = db.Column(db.String(16), nullable=False, default='LOBBY')  # LOBBY, SELECTING, ACTIVE, COMPLETED
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    # Bumped on every write so readers can order full-row snapshots
    revision = db.Column(db.Integer, nullable=False, default=0)
    participants = db.relationship('Participant', back_populates='game', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'phase': self.phase,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'revision': self.revision or 0,
        }

    def __repr__(self):
        return f"Game(id={self.id!r}, phase={self.phase!r}, revision={self.revision!r})"


class Participant(db.Model):
    __tablename__ = 'participant'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(32), db.ForeignKey('game.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    is_host = db.Column(db.Boolean, nullable=False, default=False)
    is_poisoner = db.Column(db.Boolean, nullable=True)
    acknowledged = db.Column(db.Boolean, nullable=False, default=False)
    revision = db.Column(db.Integer, nullable=False, default=0)
    game = db.relationship('Game', back_populates='participants')

    __table_args__ = (
        db.UniqueConstraint('game_id', 'name', name='uq_participant_game_name'),
        # Ids of deleted participants must never be handed out again
        {'sqlite_autoincrement': True},
    )

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'name': self.name,
            'is_host': bool(self.is_host),
            'is_poisoner': self.is_poisoner,
            'acknowledged': bool(self.acknowledged),
            'revision': self.revision or 0,
        }

    def __repr__(self):
        return f"Participant(id={self.id!r}, game_id={self.game_id!r}, name={self.name!r})"
