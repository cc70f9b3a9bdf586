# sync/provider.py
import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import aiohttp
import structlog

from .config import HTTP_TIMEOUT, PROVIDER_PAGE_CAP
from .errors import ProviderStatusError, TransientProviderError

log = structlog.get_logger()

NEARBY_SEARCH_URL = 'https://maps.googleapis.com/maps/api/place/nearbysearch/json'
OK_STATUSES = ('OK', 'ZERO_RESULTS')

# Places API (New) field mask for searchNearby
NEARBY_FIELD_MASK = (
    'places.id,places.displayName,places.location,'
    'places.primaryType,places.types'
)


@dataclass(frozen=True)
class ProviderPlace:
    external_id: str
    name: str
    lat: float
    lng: float
    categories: Tuple[str, ...] = field(default_factory=tuple)
    address: str = ''
    rating: Optional[float] = None
    review_count: Optional[int] = None


def parse_results(data: dict) -> List[ProviderPlace]:
    """
    Normalize a Nearby Search response body.
    Raises ProviderStatusError for any status besides OK / ZERO_RESULTS.
    """
    status = data.get('status', '')
    if status not in OK_STATUSES:
        raise ProviderStatusError(status, data.get('error_message', ''))

    places = []
    for r in data.get('results', []):
        place_id = r.get('place_id')
        location = (r.get('geometry') or {}).get('location')
        if not place_id or not location:
            continue
        places.append(ProviderPlace(
            external_id=place_id,
            name=r.get('name') or 'Unknown',
            lat=float(location['lat']),
            lng=float(location['lng']),
            categories=tuple(r.get('types') or ()),
            address=r.get('vicinity') or '',
            rating=r.get('rating'),
            review_count=r.get('user_ratings_total'),
        ))
    return places


class PlaceSearchClient:
    """
    Google Places Nearby Search over aiohttp.
    One response page per call, so at most PROVIDER_PAGE_CAP places.
    """

    def __init__(self, api_key: str, session: aiohttp.ClientSession = None,
                 timeout: float = HTTP_TIMEOUT, url: str = NEARBY_SEARCH_URL):
        self.api_key = api_key
        self.timeout = timeout
        self.url = url
        self._session = session
        self._owns_session = session is None

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def nearby_search(
        self,
        lat: float,
        lng: float,
        radius_m: int,
        place_type: str = None,
        keyword: str = None,
    ) -> List[ProviderPlace]:
        params = {
            'location': f"{lat},{lng}",
            'radius': str(radius_m),
            'key': self.api_key,
        }
        if place_type:
            params['type'] = place_type
        if keyword:
            params['keyword'] = keyword

        session = await self.get_session()
        loop = asyncio.get_running_loop()
        start = loop.time()

        try:
            async with session.get(self.url, params=params) as resp:
                if resp.status != 200:
                    raise TransientProviderError(f"Places API HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            log.error("provider.error", method="timeout", lat=lat, lng=lng)
            raise TransientProviderError("Places API timeout") from e
        except aiohttp.ClientError as e:
            log.error("provider.error", method="client", lat=lat, lng=lng, error=str(e))
            raise TransientProviderError(f"Places API request failed: {e}") from e

        try:
            places = parse_results(data)
        except ProviderStatusError as e:
            log.error("provider.error", method="status", status=e.status, lat=lat, lng=lng)
            raise

        log.info("provider.search",
                 lat=round(lat, 5),
                 lng=round(lng, 5),
                 radius_m=radius_m,
                 found=len(places),
                 elapsed=f"{loop.time() - start:.2f}")
        return places


def build_nearby_search_requests(
    cells: Sequence,
    included_types: Sequence[str] = None,
    excluded_types: Sequence[str] = None,
    max_result_count: int = PROVIDER_PAGE_CAP,
) -> List[dict]:
    """
    Places API (New) `searchNearby` request bodies, one per cell,
    restricted to the cell's query circle.
    """
    requests = []
    for cell in cells:
        body = {
            'locationRestriction': {
                'circle': {
                    'center': {
                        'latitude': cell.center_lat,
                        'longitude': cell.center_lng,
                    },
                    'radius': cell.query_radius_m,
                },
            },
            'maxResultCount': max_result_count,
        }
        if included_types:
            body['includedTypes'] = list(included_types)
        if excluded_types:
            body['excludedTypes'] = list(excluded_types)

        requests.append({
            'cell_id': cell.cell_id,
            'request_body': body,
            'field_mask': NEARBY_FIELD_MASK,
        })
    return requests
