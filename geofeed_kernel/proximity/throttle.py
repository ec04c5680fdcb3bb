"""
Recenter Throttle — bounds subscription churn for a moving user.

The throttle separates the live position from the query center. Only when
the user has moved at least ``threshold_m`` away from the current query
center does the center snap to the new position, tearing down every range
subscription before the new set is opened. The visible result set is
correct for the query center, which lags the true position by at most the
threshold distance.
"""

from typing import Callable, List, Optional

from geofeed_kernel.geo.ranges import distance_meters
from geofeed_kernel.logging import get_logger
from geofeed_kernel.models.geo import GeoPoint, IndexedDocument
from geofeed_kernel.models.proximity import ProximityQuery, ThrottleConfig
from geofeed_kernel.proximity.merger import LiveQueryMerger, ResultCallback
from geofeed_kernel.store.base import DocumentStore
from geofeed_kernel.utils.time import Clock

logger = get_logger("throttle")


class RecenterThrottle:
    """Wraps a LiveQueryMerger and re-centers it only after real displacement."""

    def __init__(
        self,
        store: DocumentStore,
        collection: str,
        radius_m: float,
        config: Optional[ThrottleConfig] = None,
        ttl_field: Optional[str] = None,
        lifetime_seconds: Optional[float] = None,
        on_change: Optional[ResultCallback] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.collection = collection
        self.radius_m = radius_m
        self.config = config or ThrottleConfig()
        self.ttl_field = ttl_field
        self.lifetime_seconds = lifetime_seconds
        self._on_change = on_change
        self._clock = clock

        self._current: Optional[GeoPoint] = None
        self._query_center: Optional[GeoPoint] = None
        self._merger: Optional[LiveQueryMerger] = None
        self.recenter_count = 0

    @property
    def current_position(self) -> Optional[GeoPoint]:
        return self._current

    @property
    def query_center(self) -> Optional[GeoPoint]:
        return self._query_center

    @property
    def merger(self) -> Optional[LiveQueryMerger]:
        return self._merger

    @property
    def results(self) -> List[IndexedDocument]:
        return self._merger.results if self._merger else []

    def update_position(self, position: Optional[GeoPoint]) -> bool:
        """
        Feed a new position. Returns True if this update re-centered the query.
        A missing position tears the query down and empties the view.
        """
        self._current = position

        if position is None:
            if self._merger is not None:
                logger.info("Position lost; closing %s query", self.collection)
                self.close()
                if self._on_change is not None:
                    self._on_change([])
            return False

        if self._query_center is not None:
            moved = distance_meters(position, self._query_center)
            if moved < self.config.threshold_m:
                return False
            logger.info(
                "Moved %.0fm from query center; re-centering %s query",
                moved, self.collection,
            )

        self._recenter(position)
        return True

    def close(self) -> None:
        """Stop the live query. The next position re-establishes it."""
        if self._merger is not None:
            self._merger.stop()
        self._merger = None
        self._query_center = None

    def _recenter(self, position: GeoPoint) -> None:
        # Old subscriptions must be gone before the new ones deliver.
        if self._merger is not None:
            self._merger.stop()

        self._query_center = position
        self._merger = LiveQueryMerger(
            self.store,
            ProximityQuery(
                collection=self.collection,
                center=position,
                radius_m=self.radius_m,
                ttl_field=self.ttl_field,
                lifetime_seconds=self.lifetime_seconds,
            ),
            on_change=self._on_change,
            clock=self._clock,
        )
        self._merger.start()
        self.recenter_count += 1
