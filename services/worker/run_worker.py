import logging
import sys

from services.common.db import ensure_schema
from services.common.errors import IngestError
from services.common.ingest import run_ingest_cycle

logger = logging.getLogger("worker")


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-8s] %(levelname)-5s %(message)s",
    )
    logger.info("Starting worker cycle...")
    ensure_schema()
    try:
        summary = run_ingest_cycle()
    except IngestError as exc:
        logger.error("Worker cycle failed: %s", exc)
        return 1
    logger.info("Worker cycle completed: %s", summary.to_dict())
    return 0


if __name__ == "__main__":
    sys.exit(main())
