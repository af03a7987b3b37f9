"""Autonomous operations package.

Work that runs on a timer rather than in response to a request.

Modules:
    - decay: Lead score decay for inactive contacts
    - orchestrator: Background task coordination
"""
