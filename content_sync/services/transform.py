"""
Transform - Map content API records to search records

Deliberately mechanical: no regional business rules, no relevance tuning.
"""
from typing import Dict

TYPE_CMS_ITEM = 'cms-item'
TYPE_STATIC_PAGE = 'static-page'

MAX_TEXT_LENGTH = 5000


def cms_object_id(item_id: str) -> str:
    return f'cms_{item_id}'


def page_object_id(page_id: str) -> str:
    return f'page_{page_id}'


def is_unpublished(record: Dict) -> bool:
    """Drafts and archived records are never indexed."""
    return bool(
        record.get('isDraft') or record.get('isArchived')
        or record.get('draft') or record.get('archived')
    )


def _text(value) -> str:
    if value is None:
        return ''
    return str(value).strip()[:MAX_TEXT_LENGTH]


def transform_cms_item(item: Dict, collection) -> Dict:
    """Build the search record of a CMS item.

    Args:
        item: Item as returned by the content API
        collection: CollectionConfig the item belongs to

    Raises:
        ValueError: The item has no id
    """
    item_id = item.get('id')
    if not item_id:
        raise ValueError('CMS item has no id')

    fields = item.get('fieldData') or {}
    slug = _text(fields.get('slug')) or item_id

    return {
        'objectID': cms_object_id(item_id),
        'type': TYPE_CMS_ITEM,
        'collectionSlug': collection.slug,
        'region': collection.region,
        'slug': slug,
        'title': _text(fields.get('name') or fields.get('title')) or 'Untitled',
        'summary': _text(fields.get('summary') or fields.get('excerpt')),
        'url': f'/{collection.slug}/{slug}',
        'lastUpdated': item.get('lastUpdated') or item.get('lastPublished'),
    }


def transform_static_page(page: Dict) -> Dict:
    """Build the search record of a static page.

    Raises:
        ValueError: The page has no id
    """
    page_id = page.get('id')
    if not page_id:
        raise ValueError('Static page has no id')

    seo = (page.get('seo') or {})
    slug = _text(page.get('slug'))

    return {
        'objectID': page_object_id(page_id),
        'type': TYPE_STATIC_PAGE,
        'slug': slug,
        'title': _text(page.get('title')) or slug or 'Untitled',
        'seoTitle': _text(seo.get('title')),
        'seoDescription': _text(seo.get('description')),
        'url': page.get('publishedPath') or f'/{slug}',
        'lastUpdated': page.get('lastUpdated'),
    }
