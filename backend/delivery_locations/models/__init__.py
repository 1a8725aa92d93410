"""ORM model exports for convenient imports elsewhere in the service."""

from delivery_locations.models.base import Base
from delivery_locations.models.city import CityDeliveryMapping, CityMaster
from delivery_locations.models.city_alias import CityAlias
from delivery_locations.models.learning_pattern import LocationLearningPattern
from delivery_locations.models.region import RegionDeliveryMapping, RegionMaster
from delivery_locations.models.region_alias import RegionAlias
from delivery_locations.models.sync_log import CitiesRegionsSyncLog
from delivery_locations.models.sync_progress import BackgroundSyncProgress, SyncStatus

__all__ = [
    "Base",
    "CityMaster",
    "CityDeliveryMapping",
    "CityAlias",
    "RegionMaster",
    "RegionDeliveryMapping",
    "RegionAlias",
    "LocationLearningPattern",
    "CitiesRegionsSyncLog",
    "BackgroundSyncProgress",
    "SyncStatus",
]
