"""
agora.__main__ — Entry point for ``python -m agora``
====================================================

Wiring:
1. Load .env (secrets).
2. Load config.yaml (soft settings).
3. Create the SQLAlchemy engine and ensure tables + change triggers exist.
4. Start the PG LISTEN/NOTIFY background listener.
5. Open the requested view and print it again after every refetch.

Run with::

    python -m agora init-db
    python -m agora watch-post <post-id> [--viewer <user-id>]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from agora.config import AgoraConfig, load_config
from agora.database.engine import create_db_engine, init_db
from agora.engine.changefeed import ChangeFeed
from agora.engine.threads import flatten
from agora.services.context import ClientContext
from agora.services.notifier import Notifier
from agora.services.post_view import PostView

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("agora")


def render_post(view: PostView) -> None:
    post = view.post
    print(f"\n── {post.author_name or post.author_id}: {post.content}")
    if view.is_group_post:
        votes = view.votes
        print(f"   ▲ {votes.upvote_count}  ▼ {votes.downvote_count}  (score {votes.score})")
    else:
        print(f"   ♥ {view.likes.count}")
    print(f"   {view.comment_count} comment(s)")
    for node in flatten(view.thread):
        rec = node.record
        print(f"   {'  ' * node.depth}└ {rec.author_name or rec.author_id}: {rec.body}")


async def watch_post(cfg: AgoraConfig, post_id: str, viewer_id: str | None) -> None:
    engine = create_db_engine()
    feed = ChangeFeed(engine, channel=cfg.notify_channel, debounce=cfg.refresh_debounce_seconds)
    notifier = Notifier(cfg.toast_capacity, cfg.toast_duration_seconds)
    ctx = ClientContext(engine=engine, feed=feed, notifier=notifier, viewer_id=viewer_id)

    feed.start_listener()
    try:
        async with PostView(ctx, post_id) as view:
            render_post(view)
            view.on_refresh(render_post)
            logger.info("Watching post %s — Ctrl+C to stop", post_id)
            await asyncio.Event().wait()
    finally:
        feed.close()
        engine.dispose()


def main(argv: list[str] | None = None) -> None:
    """Bootstrap and run the requested command."""
    parser = argparse.ArgumentParser(prog="agora", description=__doc__.splitlines()[1])
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("init-db", help="Create tables and install change triggers")
    watch = sub.add_parser("watch-post", help="Print a post's thread live")
    watch.add_argument("post_id")
    watch.add_argument("--viewer", default=None, help="Viewer user id")
    args = parser.parse_args(argv)

    # 1. Environment variables (secrets).
    load_dotenv()

    # 2. Soft configuration.
    cfg = load_config(args.config)
    logging.getLogger().setLevel(cfg.log_level)
    logger.info("Config loaded — Community: %s", cfg.community_name)

    if args.command == "init-db":
        init_db(create_db_engine())
        return

    try:
        asyncio.run(watch_post(cfg, args.post_id, args.viewer))
    except LookupError as exc:
        logger.critical("%s", exc)
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully…")


if __name__ == "__main__":
    main()
