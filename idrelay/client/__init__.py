"""Blocking HTTP transport used to reach image hosts and upstream APIs.

Security notes:
- Treat remote responses as untrusted input.
- Avoid logging raw image bytes or credentials.
"""
