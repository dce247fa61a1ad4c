"""
connectors — OAuth connection & asset synchronization engine.

Handles, for Meta, Google, TikTok and Shopify:
  • OAuth2 authorize-URL generation with signed state
  • Callback handling (code → token exchange → account identity)
  • Asset fetch + normalization + dedup per granted scope
  • Idempotent connection upsert, supersede, repair/backfill
  • Token refresh, validity probe, disconnect
  • Fernet encryption of tokens at rest

Each platform is a subclass of BaseConnector.
"""
