import asyncio
import sys
from pathlib import Path

# Allow running as `python scripts/ensure_schema.py` from repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from chatstore.config import settings  # noqa: E402
from chatstore.logging_setup import configure_logging  # noqa: E402
from chatstore.services.conversation_store import ConversationStore  # noqa: E402


async def _main() -> str:
    store = ConversationStore(settings, logger=configure_logging(settings))
    try:
        await store.ensure_ready()
        return store.schema_status or "schema ok"
    finally:
        await store.close()


if __name__ == "__main__":
    print(asyncio.run(_main()))
