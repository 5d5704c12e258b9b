#!/usr/bin/env python3
"""
Maintenance script to reset bulk import state and, optionally, the sync queue.
Run it while the service is stopped; the next sync cycle re-imports from scratch.
"""

import argparse
import asyncio

from tasksync.core.config import get_settings
from tasksync.core.context import build_context
from tasksync.core.database import init_db
from tasksync.services import sync_state as keys


async def main(clear_queue: bool, kind: str | None):
    settings = get_settings()
    context = build_context(settings)
    await init_db(context.engine)

    kinds = [kind] if kind else list(context.repositories)
    async with context.session_maker() as session:
        for name in kinds:
            await context.state.clear(session, *keys.import_keys(name))
            print(f"Reset import state for {name}")
        if clear_queue:
            if kind:
                cleared = await context.outbox.clear_by_type(session, kind)
            else:
                cleared = await context.outbox.clear_all(session)
            print(f"Cleared {cleared} queued changes")
        await session.commit()

        state = await context.state.snapshot(session)
        print(f"\nRemaining sync state keys: {sorted(state) or 'none'}")

    await context.close()
    print("\nDone! Import will restart on the next sync cycle.")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--clear-queue", action="store_true", help="also discard pending local changes")
    parser.add_argument("--kind", help="only reset this entity kind")
    args = parser.parse_args()
    asyncio.run(main(args.clear_queue, args.kind))
