"""Performance metrics gateway.

Reads recent performance observations of a family from the store and, on the
explicit ingest path, records new ones. Observations are immutable once
written; the gateway never updates or deletes them.

Example:
    >>> gateway = MetricsGateway(store, source=prometheus_source)
    >>> gateway.sync("content_performance")
    42
    >>> recent = gateway.recent("content_performance", timedelta(days=7))
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta

from modelcycle.exceptions import ConfigurationError
from modelcycle.lifecycle.domain import Observation
from modelcycle.lifecycle.interfaces import MetricsSource
from modelcycle.storage.database.models import PerformanceObservation
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)


class MetricsGateway:
    """Read access to performance observations plus an explicit ingest path."""

    def __init__(
        self,
        store: LifecycleStore,
        source: MetricsSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.source = source
        self.clock = clock

    def recent(
        self, family_id: str, window: timedelta, now: datetime | None = None
    ) -> list[Observation]:
        """Observations in ``[now - window, now]``, oldest first."""
        until = ensure_utc(now or self.clock())
        since = until - window

        def work(uow: UnitOfWork) -> list[Observation]:
            return [
                Observation(timestamp=row.observed_at, score=row.score, version_id=row.version_id)
                for row in uow.observations.recent(family_id, since, until)
            ]

        return self.store.read(work)

    def ingest(self, family_id: str, observations: Iterable[Observation]) -> int:
        """Record observations for a family.

        Returns:
            Number of observations written

        Raises:
            RecordNotFoundError: If the family is not registered
        """
        items = list(observations)

        def work(uow: UnitOfWork) -> int:
            uow.families.require(family_id)
            return uow.observations.add_many(
                PerformanceObservation(
                    family_id=family_id,
                    version_id=o.version_id,
                    observed_at=ensure_utc(o.timestamp),
                    score=float(o.score),
                )
                for o in items
            )

        written = self.store.run(work)
        logger.debug("observations_ingested", family_id=family_id, count=written)
        return written

    def sync(self, family_id: str, since: datetime | None = None) -> int:
        """Pull new observations from the metrics source.

        Only observations strictly newer than the latest stored one are
        written, so repeated syncs do not duplicate data.

        Args:
            family_id: Family to sync
            since: Lower bound passed to the source (default: latest stored
                observation, or the start of time for an empty family)

        Returns:
            Number of observations written
        """
        if self.source is None:
            raise ConfigurationError(
                "No metrics source configured", setting="metrics_source", expected="MetricsSource"
            )

        latest = self.store.read(lambda uow: uow.observations.latest_timestamp(family_id))
        lower = since or latest or datetime.min.replace(tzinfo=UTC)

        fetched = self.source.get_observations(family_id, lower)
        fresh = [
            o for o in fetched if latest is None or ensure_utc(o.timestamp) > latest
        ]

        if not fresh:
            logger.debug("metrics_sync_no_new_data", family_id=family_id, fetched=len(fetched))
            return 0

        written = self.ingest(family_id, fresh)
        logger.info(
            "metrics_synced",
            family_id=family_id,
            fetched=len(fetched),
            written=written,
        )
        return written
