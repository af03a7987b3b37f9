"""Nexus Lifecycle Engine.

Lead scoring and lifecycle automation for the Nexus CRM.

Layers:
    - core: Configuration, logging, exceptions, clock, background tasks
    - db: SQLite persistence and data models
    - integrations: Outbound send and external action providers
    - engine: Scoring, workflows, sequences, event bus, notifications
    - autonomous: Decay scan and the scheduler service
"""

__version__ = "0.1.0"
