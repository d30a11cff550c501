"""HTTP control server for ShiftDeck deployments.

Exposes deployment status and operator abort over HTTP.
"""

__all__: list[str] = []
