"""Hotel operations core: ticket lifecycle, SLA timing and claim-based work queues."""

__version__ = "0.1.0"
