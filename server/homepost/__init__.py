"""HomePost hub: live audio ingestion, alerting and device control."""

__version__ = "1.0.0"
