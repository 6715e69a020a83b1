"""RFID tunnel: realtime tag ingestion and case reconciliation."""

__version__ = "0.1.0"
