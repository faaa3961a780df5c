"""
Chime - single-leader reminder scheduling for replicated bot processes.

Subpackages:
- chime.core: errors, logging, settings, clock
- chime.leasing: coordination store clients and the lease manager
- chime.reminders: scheduled items, durable store, repository
- chime.scheduling: tick backend, delivery sinks, reminder dispatcher
"""

__version__ = "0.1.0"
