"""Print request lifecycle controller.

Stages uploaded documents, gates durable storage migration on payment,
runs paid jobs through a bounded print queue and notifies owners of
status changes.
"""

__version__ = "0.1.0"
