"""Delta filter: keeps projections modified after the previous watermark."""

from datetime import datetime

import structlog

from catalog_delta_sync.models.catalog import Projection, ensure_utc

log = structlog.stdlib.get_logger()


class DeltaFilter:
    """Accepts a projection only if it changed strictly after the watermark.

    A projection modified exactly at the watermark was already covered by the
    run that committed it.
    """

    def accept(self, projection: Projection, watermark: datetime) -> bool:
        accepted = ensure_utc(projection.last_modified_at) > ensure_utc(watermark)

        if not accepted:
            log.debug(
                "projection_not_newer_than_watermark",
                product_id=projection.id,
                store_key=projection.store_key,
                last_modified_at=projection.last_modified_at,
                watermark=watermark,
            )

        return accepted
