"""
Run one ingestion job from the command line

Usage:
    python scripts/run_etl.py request.json
    python scripts/run_etl.py --bulk-fast --orders 100000 --customers 1000
"""

import argparse
import asyncio
import json
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from pydantic import ValidationError

from core.config import settings
from core.database import async_session_maker, engine
from core.exceptions import ETLException
from core.logging import setup_logging
from ingestion.bulk_fast import BulkFastRunner
from ingestion.checkpoint import CheckpointStore
from ingestion.failures import FailureLog
from ingestion.runner import StreamingETLRunner
from schemas.etl import BulkFastRequest, StreamingEtlRequest

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run a streaming or fast-bulk ingestion job")
    parser.add_argument("request", nargs="?", help="Path to a StreamingEtlRequest JSON file")
    parser.add_argument("--bulk-fast", action="store_true", help="Run the synthetic staging-table load")
    parser.add_argument("--orders", type=int, default=10_000)
    parser.add_argument("--customers", type=int, default=500)
    parser.add_argument("--lines-per-order", type=int, default=5)
    parser.add_argument("--job-id")
    args = parser.parse_args(argv)
    if not args.bulk_fast and not args.request:
        parser.error("a request file is required unless --bulk-fast is given")
    return args


async def run_etl(args) -> int:
    """Run the requested job and print its result as JSON"""
    try:
        if args.bulk_fast:
            request = BulkFastRequest(
                job_id=args.job_id,
                total_orders=args.orders,
                customers=args.customers,
                lines_per_order=args.lines_per_order,
            )
            result = await BulkFastRunner().run(request)
        else:
            with open(args.request, encoding="utf-8") as f:
                payload = json.load(f)
            if args.job_id:
                payload["jobId"] = args.job_id
            runner = StreamingETLRunner(
                checkpoints=CheckpointStore(async_session_maker),
                failures=FailureLog(async_session_maker),
                dead_letter_dir=settings.ETL_DEAD_LETTER_DIR,
            )
            result = await runner.run(StreamingEtlRequest.model_validate(payload))

        print(json.dumps(result.model_dump(by_alias=True, mode="json"), indent=2))
        return 0

    except (OSError, json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Invalid request: {e}")
        return 2
    except ETLException as e:
        logger.error(f"ETL failed ({e.reason}): {e.message}")
        if e.partial_result is not None:
            print(json.dumps(e.partial_result, indent=2, default=str))
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_etl(parse_args())))
