"""Xero CRM sync service: resumable Xero import and invoice enrichment."""

__version__ = "0.1.0"
