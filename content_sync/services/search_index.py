"""
Search Index Client - Algolia REST API over the shared session pool
"""
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

import requests

from ..utils.logger import get_logger
from .sync.errors import SearchIndexError

logger = get_logger('search_index')


class SearchIndexClient:
    """Writes, deletes and browses one search index.

    Example:
        >>> index = SearchIndexClient(app_id, api_key, 'site_content')
        >>> index.save_objects([{'objectID': 'cms_1', 'title': 'Hello'}])
        >>> index.browse_all_ids('type:"cms-item"')
    """

    WRITE_BATCH_SIZE = 1000
    BROWSE_PAGE_SIZE = 1000
    MAX_ATTEMPTS = 3
    BACKOFF_BASE = 1.0
    BACKOFF_CAP = 10.0

    def __init__(
        self,
        app_id: str,
        api_key: str,
        index_name: str,
        session=None,
        timeout: float = 30,
        sleep: Callable[[float], None] = time.sleep
    ):
        if session is None:
            from .sync.session_pool import get_request_session_pool
            session = get_request_session_pool()

        self.app_id = app_id
        self.api_key = api_key
        self.index_name = index_name
        self.session = session
        self.timeout = timeout
        self._sleep = sleep
        self.base_url = f'https://{app_id}.algolia.net/1/indexes/{index_name}'

    def _headers(self) -> Dict[str, str]:
        return {
            'X-Algolia-Application-Id': self.app_id or '',
            'X-Algolia-API-Key': self.api_key or '',
            'Content-Type': 'application/json',
        }

    def _post(self, path: str, payload: Dict) -> Dict:
        """POST with retries on network errors and 5xx. 4xx fails at once."""
        url = f'{self.base_url}{path}'
        last_error = None

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                response = self.session.request(
                    'POST', url, json=payload, headers=self._headers(), timeout=self.timeout
                )
            except requests.RequestException as e:
                last_error = SearchIndexError(f'{path}: {e}')
            else:
                if response.status_code < 300:
                    return response.json() if response.content else {}
                last_error = SearchIndexError(
                    f'{path}: HTTP {response.status_code} {response.text[:200]}',
                    status=response.status_code,
                )
                if response.status_code < 500 and response.status_code != 429:
                    raise last_error

            if attempt < self.MAX_ATTEMPTS:
                delay = min(self.BACKOFF_BASE * (2 ** (attempt - 1)), self.BACKOFF_CAP)
                logger.warning(
                    f"[SearchIndex] {path} failed (attempt {attempt}): {last_error}, "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)

        logger.error(f"[SearchIndex] {path} failed after {self.MAX_ATTEMPTS} attempts: {last_error}")
        raise last_error

    def _batch(self, requests_body: List[Dict]) -> int:
        sent = 0
        for start in range(0, len(requests_body), self.WRITE_BATCH_SIZE):
            chunk = requests_body[start:start + self.WRITE_BATCH_SIZE]
            self._post('/batch', {'requests': chunk})
            sent += len(chunk)
        return sent

    def save_objects(self, objects: Iterable[Dict]) -> int:
        """Upsert records by objectID.

        Returns:
            Number of records sent
        """
        body = [{'action': 'updateObject', 'body': obj} for obj in objects]
        if not body:
            return 0
        sent = self._batch(body)
        logger.info(f"[SearchIndex] Saved {sent} objects to {self.index_name}")
        return sent

    def delete_objects(self, object_ids: Iterable[str]) -> int:
        body = [{'action': 'deleteObject', 'body': {'objectID': oid}} for oid in object_ids]
        if not body:
            return 0
        sent = self._batch(body)
        logger.info(f"[SearchIndex] Deleted {sent} objects from {self.index_name}")
        return sent

    def browse_all_ids(self, filters: Optional[str] = None) -> Set[str]:
        """Every objectID matching ``filters``, following the browse cursor."""
        payload = {
            'attributesToRetrieve': ['objectID'],
            'hitsPerPage': self.BROWSE_PAGE_SIZE,
        }
        if filters:
            payload['filters'] = filters

        ids = set()
        while True:
            page = self._post('/browse', payload)
            ids.update(hit['objectID'] for hit in page.get('hits', []) if 'objectID' in hit)
            cursor = page.get('cursor')
            if not cursor:
                break
            payload = {'cursor': cursor}

        logger.debug(f"[SearchIndex] Browsed {len(ids)} ids (filters={filters})")
        return ids
