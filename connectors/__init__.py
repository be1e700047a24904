"""
connectors — linking and reading third-party calendar / file accounts.

Provides:
  • A provider adapter per service, selected by ``Provider`` tag
  • Signed CSRF cookie pair for the OAuth redirect
  • AES-256-GCM credential vault with per-record salt
  • Token refresh before expiry, with rotated tokens re-encrypted
  • Link / unlink / calendar opt-in via ``ConnectionManager``
"""
