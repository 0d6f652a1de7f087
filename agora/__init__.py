"""
Agora — Social Interaction State Engine
========================================
The client-side core of a community platform (feed, groups, grievances):
threaded comments, reaction counts, optimistic mutations with rollback,
change-feed driven refreshes, and the membership and grievance lifecycles.

Package layout::

    agora/
    ├── config.py          # YAML → typed Python config
    ├── __main__.py        # ``python -m agora`` live thread watcher
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # ORM models (posts, comments, reactions, groups, grievances)
    ├── engine/
    │   ├── threads.py     # Flat comments → reply forest
    │   ├── reactions.py   # Likes / votes / stances → counts + "my reaction"
    │   ├── optimistic.py  # Apply / confirm / rollback coordinator
    │   ├── changefeed.py  # PG LISTEN/NOTIFY subscriptions
    │   ├── membership.py  # Group join-request state machine
    │   └── grievance.py   # Grievance lifecycle state machine
    └── services/
        ├── store.py       # Remote store queries + mutations
        ├── notifier.py    # User-visible toasts
        ├── context.py     # ClientContext + EntityView lifecycle
        ├── feed_view.py   # Public feed: paged posts + per-post likes
        ├── post_view.py   # Post detail view state
        ├── group_view.py  # Group detail view state
        ├── profile_view.py    # Follow toggle
        └── grievance_view.py  # Grievance detail view state
"""

__version__ = "0.1.0"
