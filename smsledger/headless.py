"""Headless SMS task — runs one incoming SMS through the pipeline with no UI.

Invoked by the platform's background receiver, which may fire while the
foreground service isn't running at all. Nothing here assumes in-memory state:
the token comes from the durable token store and dedup state from the JSON
store.

Usage:
    python -m smsledger.headless '{"originatingAddress": "HDFCBK", "body": "...", "timestamp": 1704067200000}'
    echo '{...}' | python -m smsledger.headless -
"""

import argparse
import asyncio
import json
import logging
import sys

from smsledger.models import IngestionResult, RawMessage
from smsledger.pipeline import IngestionPipeline
from smsledger.tools.ledger import transaction_id

logger = logging.getLogger(__name__)


async def run_headless(task_data: dict, pipeline: IngestionPipeline) -> IngestionResult:
    """Handle one platform payload: originatingAddress, body, timestamp (ms), optional _id."""
    message = RawMessage.from_platform_event(task_data)
    logger.info("Headless task started for SMS from %s", message.sender)
    result = await pipeline.handle_raw_message(message)
    logger.info("Headless task finished: %s", result.outcome.value)
    return result


def _read_payload(arg: str) -> dict:
    raw = sys.stdin.read() if arg == "-" else arg
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("payload must be a JSON object")
    return data


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(description="Process one incoming SMS in the background.")
    parser.add_argument("payload", help="SMS event as JSON, or - to read from stdin")
    args = parser.parse_args(argv)

    try:
        task_data = _read_payload(args.payload)
    except ValueError as e:
        logger.error("Invalid headless payload: %s", e)
        return 2

    from smsledger.runtime import build_headless

    components = build_headless()
    result = asyncio.run(run_headless(task_data, components.pipeline))
    print(json.dumps({
        "outcome": result.outcome.value,
        "fingerprint": result.fingerprint,
        "transaction_id": transaction_id(result.transaction),
    }))
    return 0


if __name__ == "__main__":
    sys.exit(main())
