"""In-memory stand-ins for the partner API used across the sync tests."""

from delivery_locations.core.errors import PartnerRequestError
from delivery_locations.services.partner_fetcher import PartnerLocationFetcher


class FakePartnerTransport:
    """Serves canned ``citys``/``regions`` payloads and records every call."""

    def __init__(self, cities, regions_by_city=None, *, partner="alwaseet", failing_cities=()):
        self.partner = partner
        self.cities = cities
        self.regions_by_city = regions_by_city or {}
        self.failing_cities = set(failing_cities)
        self.calls = []
        self.closed = False

    async def invoke(self, endpoint, method, token, payload=None, query_params=None):
        self.calls.append((endpoint, dict(query_params or {})))
        if endpoint == "citys":
            return self.cities
        city_id = (query_params or {}).get("city_id")
        if city_id in self.failing_cities:
            raise PartnerRequestError("regions endpoint timed out", endpoint=endpoint)
        return {"status": True, "data": self.regions_by_city.get(city_id, [])}

    async def aclose(self):
        self.closed = True


def fetcher_factory_for(transport):
    def factory(partner):
        return PartnerLocationFetcher(transport)

    return factory


BAGHDAD_CITIES = [
    {"id": 1, "city_name": "بغداد"},
    {"id": "2", "city_name": "البصرة"},
    {"id": 3, "city_name": "أربيل"},
]

BAGHDAD_REGIONS = {
    1: [
        {"id": 101, "region_name": "الكرادة"},
        {"id": 102, "region_name": "المنصور"},
        {"id": 103, "region_name": "الأعظمية"},
    ],
    2: [
        {"id": 201, "region_name": "العشار"},
        {"id": 202, "region_name": "الجزائر"},
    ],
    3: [
        {"id": 301, "region_name": "عينكاوة"},
    ],
}
