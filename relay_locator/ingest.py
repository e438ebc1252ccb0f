# relay_locator/ingest.py
"""One-shot job: load the relay feed into the location store.

Usage: python -m relay_locator.ingest
"""

import asyncio
import logging
import sys

from relay_locator.errors import RelayServiceError
from relay_locator.services.catalog_service import close_http_client, create_http_client
from relay_locator.services.ingest_service import IngestService, load_city_coordinates
from relay_locator.settings import settings

logger = logging.getLogger("relay_locator.ingest")


async def main() -> int:
    await create_http_client()
    try:
        city_coordinates = load_city_coordinates(settings.city_coordinates_path)
        batch = await IngestService().run(city_coordinates)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read city coordinates from {settings.city_coordinates_path}: {e}")
        return 1
    except RelayServiceError as e:
        logger.error(f"Ingestion failed: {e}")
        return 1
    finally:
        await close_http_client()

    logger.info(
        f"Ingestion complete: {len(batch.locations)} locations, {len(batch.servers)} servers"
    )
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stdout,
    )
    sys.exit(asyncio.run(main()))
