"""
auth — identity seam for the connector API.

Provides:
  • Signed session token creation & verification
  • ``CurrentUser`` (user id, organization id, role)
  • ``get_current_user`` FastAPI dependency (Bearer header or ``session`` cookie)
"""
