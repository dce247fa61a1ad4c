"""
auth — admin bearer-token verification.

Provides:
  • signed token creation & verification
  • ``get_current_admin_id`` FastAPI dependency
"""
