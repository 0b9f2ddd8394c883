"""
Shared dedup/lock state for the database sync guard
"""
from datetime import datetime
from ..extensions import db


class TriggerExecution(db.Model):
    """A trigger execution id that has already been processed"""
    __tablename__ = 'trigger_executions'

    execution_id = db.Column(db.String(255), primary_key=True)
    first_seen_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'execution_id': self.execution_id,
            'first_seen_at': self.first_seen_at.isoformat() if self.first_seen_at else None,
        }


class SyncLock(db.Model):
    """A logical unit of work currently in flight"""
    __tablename__ = 'sync_locks'

    sync_id = db.Column(db.String(255), primary_key=True)
    # Acquisition time, moved forward by every heartbeat of the holder
    acquired_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    # Per-acquisition token, host:pid:random
    owner = db.Column(db.String(128))

    def to_dict(self):
        return {
            'sync_id': self.sync_id,
            'acquired_at': self.acquired_at.isoformat() if self.acquired_at else None,
            'owner': self.owner,
        }
