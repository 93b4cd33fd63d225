"""
Network API classifier for search discovery.

This module inspects JSON responses captured while a search interaction or a
page load was intercepted, matches them against known search-engine response
shapes, and describes where the results and their fields live so that
``api_request`` extraction steps can be synthesized.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

from core.browser import CapturedExchange
from core.models import ApiDescriptor

INPUT_MARKER = "$INPUT"

# Keys that, exactly, name a result's title/url/image across the sites we onboard
TITLE_EXACT = ('title', 'name', 'label', 'text', 'display', 'naslov', 'naziv', 'titulo', 'titre',
               'headline', 'value', 'query')
TITLE_CONTAINS = ('title', 'name')
URL_EXACT = ('url', 'href', 'link', 'uri', 'path', 'slug', 'permalink')
URL_CONTAINS = ('url', 'href', 'link')
IMAGE_EXACT = ('image', 'img', 'cover', 'thumbnail', 'thumb', 'picture', 'photo', 'avatar', 'poster', 'slika')
IMAGE_CONTAINS = ('image', 'img', 'cover', 'thumb', 'picture', 'photo', 'avatar', 'poster')
SUBTITLE_KEYS = ('subtitle', 'dizajner', 'designer', 'brand', 'author', 'artist', 'year')

# Conventional keys holding result arrays in generic JSON APIs
GENERIC_ARRAY_KEYS = ('results', 'items', 'data', 'records', 'entries', 'products', 'hits')

SEARCH_URL_HINTS = ('algolia', 'typesense', 'elasticsearch', 'search', 'autocomplete', 'query')
LOAD_SEARCH_URL_HINTS = ('algolia', 'typesense', 'elasticsearch', '/search', '/query', '/autocomplete')
ENDPOINT_HINTS = ('search', 'autocomplete', 'typeahead', 'suggest', 'query')

_INDEX = re.compile(r'\[(\d+)\]')


@dataclass
class ArrayMatch:
    """An array in a payload that looks like autocomplete results."""
    items_path: str
    structure: str
    sample: Any
    title_path: Optional[str] = None
    url_path: Optional[str] = None
    image_path: Optional[str] = None

    @property
    def json_path(self) -> str:
        return "[$i]" if self.items_path == "root" else f"{self.items_path}[$i]"


@dataclass
class ShapeMatch:
    """A payload classified against a known search-engine response shape."""
    shape: str
    json_path: str
    results: List[Any]


def get_nested_value(obj: Any, path: Optional[str]) -> Any:
    """Resolve a dotted path with ``[n]`` indices, returning None when absent."""
    if not path:
        return obj
    current = obj
    for key in _INDEX.sub(r'.\1', path).split('.'):
        if key == '':
            continue
        if isinstance(current, list):
            try:
                current = current[int(key)]
            except (ValueError, IndexError):
                return None
        elif isinstance(current, dict):
            current = current.get(key)
        else:
            return None
    return current


def _match_key(key: str, exact: Tuple[str, ...], contains: Tuple[str, ...], substring: bool) -> bool:
    lower = key.lower()
    if substring:
        return any(fragment in lower for fragment in contains)
    return lower in exact


def find_field_paths(item: Any, base_path: str = "") -> Dict[str, Optional[str]]:
    """
    Locate title, url and image fields in a sample result item.

    Exact key names win over substring matches. String arrays are addressed
    through their first element (``key[0]``) and nested objects are searched
    recursively.
    """
    fields: Dict[str, Optional[str]] = {'title': None, 'url': None, 'image': None}
    for substring in (False, True):
        found = _scan_fields(item, base_path, substring)
        for name, path in found.items():
            if fields[name] is None and path is not None:
                fields[name] = path
    return fields


def _scan_fields(item: Any, base_path: str, substring: bool) -> Dict[str, Optional[str]]:
    fields: Dict[str, Optional[str]] = {'title': None, 'url': None, 'image': None}
    if not isinstance(item, dict):
        return fields

    for key, value in item.items():
        full_path = f"{base_path}.{key}" if base_path else key

        if isinstance(value, str):
            if fields['title'] is None and _match_key(key, TITLE_EXACT, TITLE_CONTAINS, substring):
                fields['title'] = full_path
            if fields['url'] is None and _match_key(key, URL_EXACT, URL_CONTAINS, substring):
                fields['url'] = full_path
            if fields['image'] is None and _match_key(key, IMAGE_EXACT, IMAGE_CONTAINS, substring):
                fields['image'] = full_path
        elif isinstance(value, list) and value and isinstance(value[0], str):
            array_path = f"{full_path}[0]"
            if fields['url'] is None and _match_key(key, URL_EXACT, URL_CONTAINS, substring):
                fields['url'] = array_path
            if fields['image'] is None and _match_key(key, IMAGE_EXACT, IMAGE_CONTAINS, substring):
                fields['image'] = array_path
        elif isinstance(value, dict):
            nested = _scan_fields(value, full_path, substring)
            for name, path in nested.items():
                if fields[name] is None:
                    fields[name] = path

    return fields


def find_arrays(obj: Any, path: str = "") -> List[Tuple[str, list]]:
    """Every non-empty array in a payload with its dotted path."""
    arrays: List[Tuple[str, list]] = []
    if isinstance(obj, list):
        arrays.append((path or 'root', obj))
    if isinstance(obj, dict):
        for key, value in obj.items():
            new_path = f"{path}.{key}" if path else key
            if isinstance(value, list) and value:
                arrays.append((new_path, value))
            elif isinstance(value, dict):
                arrays.extend(find_arrays(value, new_path))
    return arrays


def _has_title(sample: Any, keys: Iterable[str] = ('title', 'name')) -> bool:
    return isinstance(sample, dict) and any(sample.get(k) for k in keys)


def substitute_query(text: str, query: str) -> str:
    """Replace the encoded and raw query in ``text`` with the input marker."""
    return text.replace(quote(query, safe=''), INPUT_MARKER).replace(query, INPUT_MARKER)


def body_template(post_data: str, query: str) -> str:
    """Case-insensitive query substitution for a request body."""
    template = re.sub(re.escape(query), INPUT_MARKER, post_data, flags=re.IGNORECASE)
    return re.sub(re.escape(quote(query, safe='')), INPUT_MARKER, template, flags=re.IGNORECASE)


class NetworkApiClassifier:
    """
    Classifies captured JSON exchanges against known search API shapes.

    The shape cascade is: Algolia, Typesense, Elasticsearch, generic named
    array, top-level array. The first matching rule wins; candidates are never
    merged.
    """

    def __init__(self):
        self.logger = logging.getLogger("NetworkApiClassifier")

    def classify_payload(self, data: Any) -> Optional[ShapeMatch]:
        """
        Match a payload against the known response shapes.

        Args:
            data: Decoded JSON payload

        Returns:
            ShapeMatch with the result array's path hint, or None
        """
        if isinstance(data, dict):
            first_result = None
            results = data.get('results')
            if isinstance(results, list) and results and isinstance(results[0], dict):
                first_result = results[0]
            hits = first_result.get('hits') if first_result else None
            if isinstance(hits, list) and hits and _has_title(hits[0], ('title', 'name', 'naslov', 'headline')):
                return ShapeMatch('algolia', 'results[0].hits[$i]', hits)

            hits = data.get('hits')
            if isinstance(hits, list) and 'found' in data:
                documents = [h.get('document', h) if isinstance(h, dict) else h for h in hits]
                if documents and _has_title(documents[0]):
                    return ShapeMatch('typesense', 'hits[$i].document', documents)

            if isinstance(hits, dict) and isinstance(hits.get('hits'), list):
                sources = [h.get('_source', h) if isinstance(h, dict) else h for h in hits['hits']]
                if sources and _has_title(sources[0]):
                    return ShapeMatch('elasticsearch', 'hits.hits[$i]._source', sources)

            for key in GENERIC_ARRAY_KEYS:
                value = data.get(key)
                if isinstance(value, list) and value and _has_title(value[0]):
                    return ShapeMatch('generic', f'{key}[$i]', value)

        if isinstance(data, list) and data and _has_title(data[0]):
            return ShapeMatch('generic_array', '[$i]', data)

        return None

    def analyze_autocomplete_response(self, data: Any, query: str) -> Optional[ArrayMatch]:
        """
        Decide whether a payload is an autocomplete/search response for ``query``.

        String arrays qualify when any entry contains the query; object arrays
        qualify when a title field exists and either some title contains the
        query or the array has at least three items.
        """
        needle = query.lower()
        for path, array in find_arrays(data):
            if not array:
                continue
            first = array[0]
            if isinstance(first, str):
                if any(isinstance(entry, str) and needle in entry.lower() for entry in array):
                    return ArrayMatch(items_path=path, structure='string_array', sample=first, title_path='')
            elif isinstance(first, dict):
                fields = find_field_paths(first)
                if not fields['title']:
                    continue
                has_match = any(
                    needle in str(get_nested_value(item, fields['title']) or '').lower()
                    for item in array
                )
                if has_match or len(array) >= 3:
                    return ArrayMatch(
                        items_path=path,
                        structure='object_array',
                        sample=first,
                        title_path=fields['title'],
                        url_path=fields['url'],
                        image_path=fields['image'],
                    )
        return None

    @staticmethod
    def priority(exchange: CapturedExchange) -> int:
        url = exchange.url
        if 'algolia' in url:
            return 0
        if 'typesense' in url:
            return 1
        if 'elasticsearch' in url:
            return 2
        if exchange.method == 'POST' and exchange.post_data:
            return 3
        if 'search' in url:
            return 4
        return 999

    def select_best_exchange(self, exchanges: List[CapturedExchange], query: str) -> Optional[ApiDescriptor]:
        """Describe the highest-priority exchange whose payload answers ``query``."""
        for exchange in sorted(exchanges, key=self.priority):
            match = self.analyze_autocomplete_response(exchange.json, query)
            if match is None:
                continue

            url_pattern = exchange.url
            if exchange.method != 'POST' or not exchange.post_data:
                url_pattern = substitute_query(exchange.url, query)

            descriptor = ApiDescriptor(
                url=exchange.url,
                method=exchange.method or 'GET',
                headers=dict(exchange.headers),
                body_template=body_template(exchange.post_data, query) if exchange.post_data else None,
                url_pattern=url_pattern,
                json_path=match.json_path,
                fields={
                    'title': match.title_path,
                    'subtitle': None,
                    'url': match.url_path,
                    'image': match.image_path,
                },
                response_structure=match.structure,
                sample=match.sample,
                source='typed_search',
            )
            self.logger.info(f"Autocomplete API found: {exchange.url[:80]} ({match.structure})")
            return descriptor
        return None

    def fallback_endpoint(self, exchanges: List[CapturedExchange], query: str) -> Optional[ApiDescriptor]:
        """Any JSON exchange whose URL merely looks like a search endpoint."""
        for exchange in exchanges:
            lower = exchange.url.lower()
            if any(hint in lower for hint in ENDPOINT_HINTS):
                self.logger.info(f"Falling back to search-like endpoint {exchange.url[:80]}")
                return ApiDescriptor(
                    url=exchange.url,
                    method=exchange.method or 'GET',
                    headers=dict(exchange.headers),
                    body_template=body_template(exchange.post_data, query) if exchange.post_data else None,
                    url_pattern=substitute_query(exchange.url, query),
                    response_structure='search_endpoint',
                    sample=exchange.json,
                    source='typed_search',
                )
        return None

    @staticmethod
    def is_search_response(exchange: CapturedExchange, query: str) -> bool:
        """Whether an exchange captured during results-page load is worth classifying."""
        lower = exchange.url.lower()
        if any(hint in lower for hint in SEARCH_URL_HINTS):
            return True
        return bool(exchange.post_data and query and query in exchange.post_data)

    @staticmethod
    def is_load_search_api(url: str) -> bool:
        return any(hint in url for hint in LOAD_SEARCH_URL_HINTS)

    def describe_shape(self, exchange: CapturedExchange, match: ShapeMatch) -> ApiDescriptor:
        """Build a descriptor for a shape-classified exchange."""
        return self.normalize_descriptor(ApiDescriptor(
            url=exchange.url,
            method=exchange.method or 'GET',
            headers=dict(exchange.headers),
            body_template=exchange.post_data,
            url_pattern=exchange.url,
            json_path=match.json_path,
            response_structure=match.shape,
            sample=match.results[0] if match.results else None,
            source='page_load',
        ))

    def normalize_descriptor(self, descriptor: ApiDescriptor) -> ApiDescriptor:
        """Fill in title/subtitle/url/image field paths from the sample item."""
        sample = descriptor.sample if isinstance(descriptor.sample, dict) else {}
        detected = find_field_paths(sample)
        fields = dict(descriptor.fields)

        fields['title'] = fields.get('title') or detected['title'] or 'title'
        if not fields.get('subtitle'):
            fields['subtitle'] = next((k for k in SUBTITLE_KEYS if sample.get(k)), 'subtitle')
        if not fields.get('url'):
            url_value = sample.get('url')
            if isinstance(url_value, dict) and isinstance(url_value.get('EN'), list):
                fields['url'] = 'url.EN[0]'
            else:
                fields['url'] = detected['url'] or 'link'
        fields['image'] = fields.get('image') or detected['image'] or 'cover'

        descriptor.fields = fields
        return descriptor

    @staticmethod
    def request_url_template(descriptor: ApiDescriptor) -> str:
        """API URL with the query parameter replaced by the input marker."""
        if descriptor.url_pattern and INPUT_MARKER in descriptor.url_pattern:
            return descriptor.url_pattern
        return re.sub(r'=[^&]+', f'={INPUT_MARKER}', descriptor.url, count=1)

    def build_api_steps(self, descriptor: Optional[ApiDescriptor]) -> List[Dict[str, Any]]:
        """
        Synthesize ``api_request`` + looped ``json_store_text`` steps.

        Args:
            descriptor: Normalized API descriptor

        Returns:
            List of recipe steps, empty when there is no descriptor
        """
        if descriptor is None:
            return []
        string_array = descriptor.response_structure == 'string_array'
        if not string_array and not descriptor.fields.get('title'):
            descriptor = self.normalize_descriptor(descriptor)

        api_step: Dict[str, Any] = {
            'command': 'api_request',
            'url': self.request_url_template(descriptor),
            'config': {'method': descriptor.method or 'GET'},
            'output': {'name': 'API_RESPONSE'},
            'description': 'Fetch search results from API',
        }
        if descriptor.headers:
            api_step['config']['headers'] = descriptor.headers
        if descriptor.body_template:
            api_step['config']['body'] = descriptor.body_template

        steps = [api_step]
        prefix = descriptor.item_prefix
        extraction = [
            ('title', 'TITLE$i', 'Extract titles from API response'),
            ('subtitle', 'SUBTITLE$i', 'Extract subtitles from API response'),
            ('url', 'URL$i', 'Extract URLs from API response'),
            ('image', 'COVER$i', 'Extract images from API response'),
        ]
        if string_array:
            # Suggestion lists carry nothing but the title text
            extraction = extraction[:1]
        for field_name, output, description in extraction:
            field_path = descriptor.fields.get(field_name)
            locator = prefix if not field_path else f"{prefix}.{field_path}"
            steps.append({
                'command': 'json_store_text',
                'input': 'API_RESPONSE',
                'locator': locator,
                'output': {'name': output},
                'config': {'loop': {'index': 'i', 'from': 0, 'to': 9, 'step': 1}},
                'description': description,
            })
        return steps
