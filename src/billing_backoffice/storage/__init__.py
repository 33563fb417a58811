"""Persistence adapters for invoices, settings, deferred jobs and expenses."""
