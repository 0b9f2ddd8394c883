"""
Collection configuration parsed from CONTENT_COLLECTIONS
"""
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from ..utils.logger import get_logger

logger = get_logger('collections')


@dataclass(frozen=True)
class CollectionConfig:
    slug: str
    collection_id: str
    region: str
    # Kept current by webhooks, skipped by scheduled syncs
    webhook_managed: bool = False

    def to_dict(self) -> Dict:
        return asdict(self)


def parse_collections(value: Optional[str]) -> List[CollectionConfig]:
    """Parse ``slug:collection_id:region[:webhook]`` entries, comma separated.

    Malformed entries are logged and skipped; a repeated slug keeps the first.

    Example:
        >>> parse_collections('news:col-1:americas,blog:col-2:emea:webhook')
        [CollectionConfig(slug='news', ...), CollectionConfig(slug='blog', ..., webhook_managed=True)]
    """
    collections = []
    seen = set()

    for entry in (value or '').split(','):
        entry = entry.strip()
        if not entry:
            continue

        parts = [part.strip() for part in entry.split(':')]
        if len(parts) not in (3, 4) or not all(parts[:3]):
            logger.warning(f"[Collections] Ignoring malformed collection entry: {entry!r}")
            continue
        if len(parts) == 4 and parts[3].lower() != 'webhook':
            logger.warning(f"[Collections] Unknown flag {parts[3]!r} in entry {entry!r}")
            continue

        slug, collection_id, region = parts[:3]
        if slug in seen:
            logger.warning(f"[Collections] Duplicate collection slug ignored: {slug}")
            continue
        seen.add(slug)

        collections.append(CollectionConfig(
            slug=slug,
            collection_id=collection_id,
            region=region,
            webhook_managed=len(parts) == 4,
        ))

    return collections
