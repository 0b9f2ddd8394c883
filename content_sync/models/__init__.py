"""
Database models
"""
from .sync_state import TriggerExecution, SyncLock

__all__ = ['TriggerExecution', 'SyncLock']
