"""
Script to run the configured REST sync once or on its cron schedule.

The checkpoint and OAuth token state are persisted to CHECKPOINT_FILE so
each run resumes where the last one stopped.

Usage:
    python scripts/run_sync.py              # one pass from the saved checkpoint
    python scripts/run_sync.py --full       # ignore the checkpoint
    python scripts/run_sync.py --schedule   # run on SYNC_SCHEDULE until interrupted
    python scripts/run_sync.py --log-level DEBUG
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from typing import Any, Dict

# Add current directory to path to allow imports from core, integrations, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.exceptions import ConfigurationError
from core.logging import setup_logging
from integrations.auth import ApiKeyAuthProvider, AuthProvider, NoAuthProvider, OAuth2Provider
from integrations.connectors.base import ConnectorContext
from integrations.connectors.rest_api import RestApiConnector
from integrations.ingest import HttpIngestClient
from integrations.scheduler import create_scheduler, describe_cron_schedule
from integrations.transport.rest import RestTransport
from schemas.sync import SyncParams, SyncResult
from schemas.transport import PaginationConfig, PaginationStyle

logger = logging.getLogger(__name__)


# ============================================================================
# State persistence
# ============================================================================

def load_state(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except ValueError as e:
        logger.warning(f"Ignoring unreadable state file {path}: {e}")
        return {}


def save_state(path: str, state: Dict[str, Any]) -> None:
    tmp_path = f"{path}.tmp"
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2, default=str)
    os.replace(tmp_path, path)


# ============================================================================
# Wiring
# ============================================================================

def build_auth(state: Dict[str, Any]) -> AuthProvider:
    if settings.OAUTH_TOKEN_URL and settings.OAUTH_CLIENT_ID and settings.OAUTH_CLIENT_SECRET:
        provider = OAuth2Provider(
            token_url=settings.OAUTH_TOKEN_URL,
            client_id=settings.OAUTH_CLIENT_ID,
            client_secret=settings.OAUTH_CLIENT_SECRET,
            scopes=settings.OAUTH_SCOPES.split() or None
        )
        if state.get("token_state"):
            provider.set_token_state(state["token_state"])
        return provider
    if settings.SYNC_API_KEY:
        return ApiKeyAuthProvider(settings.SYNC_API_KEY)
    return NoAuthProvider()


def build_connector(auth: AuthProvider) -> RestApiConnector:
    if not settings.SYNC_BASE_URL:
        raise ConfigurationError("SYNC_BASE_URL is required")

    transport = RestTransport(settings.SYNC_BASE_URL, auth=auth)
    return RestApiConnector(
        name=settings.SYNC_SOURCE_NAME,
        transport=transport,
        endpoint=settings.SYNC_ENDPOINT,
        pagination=PaginationConfig(
            style=PaginationStyle(settings.SYNC_PAGINATION_STYLE),
            page_size=settings.SYNC_PAGE_SIZE,
            items_path=settings.SYNC_DATA_PATH or None
        ),
        id_field=settings.SYNC_ID_FIELD,
        timestamp_field=settings.SYNC_TIMESTAMP_FIELD
    )


async def run_once(connector: RestApiConnector, auth: AuthProvider, state_path: str, full_sync: bool = False) -> SyncResult:
    """Run one pass from the saved checkpoint and persist the new one."""
    state = load_state(state_path)
    params = SyncParams(
        since=None if full_sync else state.get("checkpoint"),
        full_sync=full_sync,
        trace_id=str(uuid.uuid4())
    )

    result = await connector.pull(params)

    state["checkpoint"] = result.checkpoint or state.get("checkpoint")
    state["token_state"] = auth.get_token_state().model_dump(mode="json")
    state["last_result"] = {
        "status": result.status.value,
        "documents_processed": result.documents_processed,
        "documents_uploaded": result.documents_uploaded,
        "errors": len(result.errors),
    }
    save_state(state_path, state)

    logger.info(
        f"Sync completed for {connector.name}: "
        f"Processed={result.documents_processed}, "
        f"Uploaded={result.documents_uploaded}, "
        f"Errors={len(result.errors)}"
    )
    return result


async def run_sync(full_sync: bool = False, schedule: bool = False) -> None:
    """Run the configured sync"""
    state_path = settings.CHECKPOINT_FILE
    auth = build_auth(load_state(state_path))
    connector = build_connector(auth)
    ingest_client = HttpIngestClient()

    try:
        await connector.initialize(ConnectorContext(ingest_client=ingest_client))

        if not schedule:
            await run_once(connector, auth, state_path, full_sync)
            return

        async def tick():
            await run_once(connector, auth, state_path)

        scheduler = create_scheduler(settings.SYNC_SCHEDULE, tick, timezone=settings.SCHEDULER_TIMEZONE)
        scheduler.start()
        logger.info(
            f"Sync scheduled {describe_cron_schedule(settings.SYNC_SCHEDULE).lower()}; "
            f"next run at {scheduler.next_run_time()}"
        )
        try:
            await asyncio.Event().wait()
        finally:
            scheduler.stop()
            await scheduler.wait_idle()

    finally:
        await connector.disconnect()
        await ingest_client.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the configured REST sync")
    parser.add_argument("--full", action="store_true", help="Ignore the saved checkpoint")
    parser.add_argument("--schedule", action="store_true", help="Run on SYNC_SCHEDULE until interrupted")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL (DEBUG, INFO, ...)")
    args = parser.parse_args()

    setup_logging(args.log_level)
    try:
        asyncio.run(run_sync(full_sync=args.full, schedule=args.schedule))
    except KeyboardInterrupt:
        logger.info("Sync interrupted")
    except Exception as e:
        logger.error(f"Sync pipeline error: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
