"""Main entry point for meshlink.

This module initializes and runs the FastAPI application with:
- The Meshtastic session client
- Node and message persistence
- REST API and real-time WebSocket updates
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .config import config
from .database import db
from .errors import MeshLinkError
from .mesh.client import MeshClient
from .web.api import (
    api_router,
    broadcast_candidates,
    broadcast_message,
    broadcast_message_status,
    broadcast_node_removed,
    broadcast_node_update,
    broadcast_status,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class AppState:
    """Global application state."""
    def __init__(self):
        self.client: Optional[MeshClient] = None
        self.running = False


app_state = AppState()


async def save_record(record) -> None:
    try:
        await db.save_record(record)
    except Exception as e:
        logger.error(f"Error saving {type(record).__name__}: {e}", exc_info=True)


async def delete_node(node_id: int) -> None:
    try:
        await db.delete_node(node_id)
    except Exception as e:
        logger.error(f"Error deleting node {node_id}: {e}")


def wire_client(client: MeshClient) -> None:
    """Connect client callbacks to persistence and WebSocket pushes."""
    client.on_save(save_record)
    client.on_node_removed(delete_node)
    client.on_status_change(broadcast_status)
    client.on_message(broadcast_message)
    client.on_message_status(broadcast_message_status)
    client.on_node_update(broadcast_node_update)
    client.on_node_removed(broadcast_node_removed)
    client.selector.on_candidates(lambda c: asyncio.ensure_future(broadcast_candidates(c)))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("meshlink starting...")

    logger.info("Initializing database...")
    await db.initialize()

    client = MeshClient()
    client.load(
        await db.get_nodes(),
        await db.get_messages(limit=config.database.history_limit),
    )
    wire_client(client)
    app_state.client = client

    if config.mesh.auto_connect:
        logger.info(f"Auto-connecting via {config.mesh.transport}...")
        try:
            await client.connect(config.mesh.transport, config.mesh.address)
            logger.info(f"Connected to mesh as !{client.my_node_num:x}")
        except MeshLinkError as e:
            logger.warning(f"Failed to connect to mesh - running in offline mode ({e})")

    app_state.running = True
    logger.info(f"meshlink ready on http://{config.web.host}:{config.web.port}")

    yield

    logger.info("Shutting down...")
    app_state.running = False
    await client.disconnect()
    await db.close()
    logger.info("Goodbye!")


# Create FastAPI app
app = FastAPI(
    title="meshlink",
    description="Meshtastic session client with automatic reconnection",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(api_router)


def main():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "meshlink.main:app",
        host=config.web.host,
        port=config.web.port,
        reload=False,
        log_level="info"
    )


if __name__ == "__main__":
    main()
