"""
Services
"""
from .sync_service import SyncService, SyncResult, build_sync_service, get_sync_service

__all__ = ['SyncService', 'SyncResult', 'build_sync_service', 'get_sync_service']
