#!/usr/bin/env python3
"""
Job Runner — one Queue Processor batch or one assignment pass, for cron.

Usage:
    python scripts/run_job.py queue
    python scripts/run_job.py assign --segment sales
    python scripts/run_job.py queue --config /etc/dispatch/settings.yaml

Prints the run summary as JSON. Exit codes:
    0  run completed, or another assignment run holds the lock
    1  the data store could not be reached
"""
import argparse
import asyncio
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dotenv import load_dotenv
import structlog

logger = structlog.get_logger()


async def run_job(job: str, segment: str = None, config_path: str = None) -> int:
    from config.settings import load_settings
    settings = load_settings(config_path)

    from utils.logging import configure_logging
    configure_logging(settings.logging.level, settings.logging.json)

    from database.session import close_db
    from database.store_factory import create_store
    from models.errors import DataStoreUnavailableError

    store = create_store({
        "store_backend": settings.database.store_backend,
        "lease_ttl_seconds": settings.assignment.lease_ttl_seconds,
    })
    client = None
    try:
        if job == "queue":
            from channels.whatsapp_adapter import WhatsAppCloudClient
            from job_queue.classifier import OutcomeClassifier
            from job_queue.processor import OutboundQueueProcessor

            client = WhatsAppCloudClient(settings.whatsapp)
            processor = OutboundQueueProcessor(
                store, client, settings.queue,
                classifier=OutcomeClassifier.from_config(settings.whatsapp),
            )
            summary = await processor.run_once()
        else:
            from assignment.scheduler import RoundRobinScheduler
            summary = await RoundRobinScheduler(store, settings.assignment).run_once(segment=segment)

        print(summary.model_dump_json(indent=2))
        return 0
    except DataStoreUnavailableError as e:
        logger.error("job_aborted_store_unavailable", job=job, error=str(e))
        return 1
    finally:
        if client is not None:
            await client.close()
        await store.close()
        if settings.database.store_backend == "sql":
            await close_db()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one dispatch job")
    parser.add_argument("job", choices=["queue", "assign"], help="Job to run")
    parser.add_argument("--segment", default=None, help="Only assign conversations of this segment")
    parser.add_argument("--config", default=None, help="Path to settings.yaml")
    args = parser.parse_args(argv)

    load_dotenv()
    return asyncio.run(run_job(args.job, segment=args.segment, config_path=args.config))


if __name__ == "__main__":
    sys.exit(main())
