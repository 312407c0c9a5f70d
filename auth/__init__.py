"""
auth — caller identity and connector auth tokens.

Provides:
  • HS256 connector auth-token issuance
  • Session token creation & verification
  • ``get_current_user_id`` FastAPI dependency
"""
