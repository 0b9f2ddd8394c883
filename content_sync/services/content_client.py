"""
Content Client - Paginated access to the hosted CMS API

Every outbound call goes through the RequestScheduler so all callers share
one view of the upstream quota. Pagination fans in: the first page reveals the
total, the remaining pages are enqueued at once and gathered together.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import requests

from ..utils.logger import get_logger
from .sync.errors import (
    PermanentRequestError,
    RateLimitedError,
    RequestFailedError,
    TransientRequestError,
)
from .sync.rate_limit import RateLimitTracker
from .sync.scheduler import RequestScheduler

logger = get_logger('content_client')

DEFAULT_BATCH_SIZE = 100

# Priorities used by the scheduler, higher is served first
PRIORITY_BULK = 1
PRIORITY_SINGLE_ITEM = 2


@dataclass(frozen=True)
class RequestTarget:
    """Opaque description of one outbound call."""
    method: str
    path: str
    params: Tuple[Tuple[str, Any], ...] = ()

    def __str__(self):
        if self.params:
            return f"{self.method} {self.path}?{urlencode(self.params)}"
        return f"{self.method} {self.path}"


@dataclass
class ContentResponse:
    status: int
    data: Dict
    headers: Mapping[str, str]


@dataclass
class PaginatedResult:
    """All records of a paginated listing plus the pages that could not be fetched."""
    records: List[Dict] = field(default_factory=list)
    total: int = 0
    failed_offsets: List[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed_offsets


def _parse_retry_after(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


class ContentClient:
    """Client for the content API.

    Example:
        >>> client = ContentClient(api_token, site_id)
        >>> result = client.fetch_all_items('col-news')
        >>> result.complete, len(result.records)
    """

    def __init__(
        self,
        api_token: str,
        site_id: Optional[str] = None,
        base_url: str = 'https://api.webflow.com/v2',
        timeout: float = 30,
        session=None,
        tracker: Optional[RateLimitTracker] = None,
        **scheduler_options
    ):
        """Initialize the client.

        Args:
            api_token: Bearer token for the content API
            site_id: Site whose static pages are listed
            base_url: API root without trailing slash
            timeout: Per-request timeout in seconds
            session: Object with a requests-compatible ``request()``, defaults
                to the shared session pool
            tracker: Rate limit state, shared with the scheduler
            **scheduler_options: Passed to RequestScheduler
        """
        if session is None:
            from .sync.session_pool import get_request_session_pool
            session = get_request_session_pool()

        self.api_token = api_token
        self.site_id = site_id
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session
        self.scheduler = RequestScheduler(self.execute, tracker=tracker, **scheduler_options)

    @property
    def tracker(self) -> RateLimitTracker:
        return self.scheduler.tracker

    def _headers(self) -> Dict[str, str]:
        return {
            'Authorization': f'Bearer {self.api_token}',
            'Accept': 'application/json',
        }

    def execute(self, target: RequestTarget) -> ContentResponse:
        """Perform one call and classify its failure.

        Raises:
            RateLimitedError: HTTP 429
            TransientRequestError: Timeout, connection error, 408 or 5xx
            PermanentRequestError: Any other 4xx or an unreadable body
        """
        url = f"{self.base_url}{target.path}"
        try:
            response = self.session.request(
                target.method,
                url,
                params=dict(target.params) or None,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientRequestError(f"{target}: {e}") from e
        except requests.RequestException as e:
            raise PermanentRequestError(f"{target}: {e}") from e

        status = response.status_code
        headers = response.headers

        if status == 429:
            raise RateLimitedError(
                f"{target}: rate limited",
                retry_after=_parse_retry_after(headers.get('Retry-After')),
                headers=headers,
            )
        if status == 408 or status >= 500:
            raise TransientRequestError(f"{target}: HTTP {status}", status=status, headers=headers)
        if status >= 400:
            raise PermanentRequestError(
                f"{target}: HTTP {status} {response.text[:200]}", status=status, headers=headers
            )

        try:
            data = response.json() if response.content else {}
        except ValueError as e:
            raise PermanentRequestError(f"{target}: invalid JSON body", status=status, headers=headers) from e

        return ContentResponse(status=status, data=data, headers=headers)

    def request(self, target: RequestTarget, priority: int = PRIORITY_BULK) -> ContentResponse:
        """Enqueue one call, drain, and return its response.

        Raises:
            RequestFailedError: When the call failed terminally
        """
        future = self.scheduler.enqueue(target, priority=priority)
        self.scheduler.wait_all([future])
        return future.result()

    def _fetch_all(
        self,
        path: str,
        records_key: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
        priority: int = PRIORITY_BULK
    ) -> PaginatedResult:
        """Fetch every page of a listing.

        A failure of the first page raises, since the total is unknown without
        it. Later page failures are reported in ``failed_offsets``.
        """
        first = self.request(
            RequestTarget('GET', path, (('offset', 0), ('limit', batch_size))),
            priority=priority,
        )
        result = PaginatedResult()
        result.records.extend(first.data.get(records_key) or [])
        pagination = first.data.get('pagination') or {}
        result.total = int(pagination.get('total') or len(result.records))

        offsets = list(range(batch_size, result.total, batch_size))
        if not offsets:
            return result

        logger.info(
            f"[ContentClient] {path}: {result.total} records, "
            f"enqueueing {len(offsets)} more page(s)"
        )
        futures = [
            (offset, self.scheduler.enqueue(
                RequestTarget('GET', path, (('offset', offset), ('limit', batch_size))),
                priority=priority,
            ))
            for offset in offsets
        ]
        self.scheduler.wait_all([future for _, future in futures])

        for offset, future in futures:
            try:
                page = future.result()
            except RequestFailedError as e:
                logger.error(f"[ContentClient] Page at offset {offset} of {path} failed: {e}")
                result.failed_offsets.append(offset)
                continue
            result.records.extend(page.data.get(records_key) or [])

        return result

    def fetch_all_items(self, collection_id: str, batch_size: int = DEFAULT_BATCH_SIZE) -> PaginatedResult:
        return self._fetch_all(f'/collections/{collection_id}/items', 'items', batch_size)

    def fetch_all_pages(self, batch_size: int = DEFAULT_BATCH_SIZE) -> PaginatedResult:
        return self._fetch_all(f'/sites/{self.site_id}/pages', 'pages', batch_size)

    def get_item(self, collection_id: str, item_id: str, priority: int = PRIORITY_SINGLE_ITEM) -> Dict:
        """Fetch a single item, ahead of any queued bulk pages."""
        response = self.request(
            RequestTarget('GET', f'/collections/{collection_id}/items/{item_id}'),
            priority=priority,
        )
        return response.data

    def get_site(self) -> Dict:
        return self.request(RequestTarget('GET', f'/sites/{self.site_id}')).data
