"""
pterogate
=========
One client for several game-server control panels.

Architecture:
    panel_store.py        -> Named panel credentials + active panel (JSON, legacy migration)
    backend_client.py     -> Tier-aware REST client for one panel credential
    connection_router.py  -> Server id -> owning panel index and cross-panel dispatch
    console_events.py     -> Console websocket event envelope and decoder
    console_session.py    -> Console websocket handshake, read loop and commands
    session.py            -> Top-level session owning the active client and console
    session_feed.py       -> Session event feed streamed to the gateway
    main.py, router_*.py  -> FastAPI gateway
"""
